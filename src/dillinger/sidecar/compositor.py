"""Headless Sway compositor: config, launch, socket discovery and introspection."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import aiofiles  # type: ignore[import-untyped]

from dillinger.shared.exceptions import SidecarError, SidecarStartupError, StartupTimeoutError
from dillinger.sidecar.processes import ManagedProcess
from dillinger.sidecar.settings import SidecarSettings

logger = logging.getLogger(__name__)

SOCKET_POLL_INTERVAL = 0.5


def render_sway_config(settings: SidecarSettings) -> str:
    """Generated config for profiles without a custom file."""
    return f"""# Dillinger streaming sidecar - Sway configuration
# Profile: {settings.sway_config_name}
# Generated automatically

xwayland disable

output HEADLESS-1 {{
    resolution {settings.resolution}@{settings.refresh_rate}Hz
    position 0 0
    bg #000000 solid_color
}}

default_border none
default_floating_border none
titlebar_border_thickness 0
titlebar_padding 0
gaps inner 0
gaps outer 0

focus_on_window_activation focus
for_window [class=".*"] fullscreen enable
for_window [app_id=".*"] fullscreen enable

include {settings.sway_config_dir}/include.d/*.conf
"""


def find_wayland_socket(runtime_dir: str | Path) -> Path | None:
    """Return the first ``wayland-*`` socket in ``runtime_dir``, if any."""
    root = Path(runtime_dir)
    if not root.is_dir():
        return None
    for candidate in sorted(root.glob("wayland-*")):
        if candidate.suffix == ".lock":
            continue
        if candidate.is_socket():
            return candidate
    return None


async def discover_socket(
    runtime_dir: str | Path,
    *,
    timeout: float,
    interval: float = SOCKET_POLL_INTERVAL,
    process: ManagedProcess | None = None,
) -> Path:
    """Wait for the compositor to create its Wayland socket.

    Raises:
        SidecarStartupError: If ``process`` exits before the socket appears.
        StartupTimeoutError: If no socket appears within ``timeout`` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        socket = find_wayland_socket(runtime_dir)
        if socket is not None:
            return socket
        if process is not None and process.returncode is not None:
            raise SidecarStartupError(f"{process.name} exited with code {process.returncode} before creating a socket")
        if loop.time() >= deadline:
            raise StartupTimeoutError(f"no wayland socket in {runtime_dir} after {timeout:.0f}s")
        await asyncio.sleep(interval)


def link_socket(socket: Path, well_known: str | Path) -> None:
    """Expose ``socket`` at the well-known path sibling containers connect to."""
    target = Path(well_known)
    if target == socket:
        return
    if target.is_symlink() or target.exists():
        target.unlink()
    target.parent.mkdir(parents=True, exist_ok=True)
    os.symlink(socket, target)
    logger.info("linked %s -> %s", target, socket)


def count_clients(tree: dict[str, Any]) -> int:
    """Count client windows in a ``swaymsg -t get_tree`` document."""
    count = 0
    stack = [tree]
    while stack:
        node = stack.pop()
        props = node.get("window_properties") or {}
        if node.get("app_id") or props.get("class"):
            count += 1
        stack.extend(node.get("nodes") or ())
        stack.extend(node.get("floating_nodes") or ())
    return count


class Compositor:
    """Owns the Sway process and the sockets it exposes."""

    def __init__(self, settings: SidecarSettings, *, extra_groups: list[int] | None = None) -> None:
        self._settings = settings
        self._extra_groups = extra_groups
        self.process: ManagedProcess | None = None
        self.socket: Path | None = None

    @property
    def config_path(self) -> Path:
        return Path(self._settings.config_home) / "sway" / "config"

    @property
    def env(self) -> dict[str, str]:
        env = {
            "XDG_RUNTIME_DIR": self._settings.xdg_runtime_dir,
            "XDG_CONFIG_HOME": self._settings.config_home,
        }
        if self.socket is not None:
            env["WAYLAND_DISPLAY"] = self.socket.name
        return env

    async def write_config(self) -> Path:
        """Copy the profile's custom config, or generate one from the resolution."""
        custom = Path(self._settings.sway_config_dir) / f"{self._settings.sway_config_name}.conf"
        if custom.is_file():
            logger.info("using custom sway config %s", custom)
            async with aiofiles.open(custom) as f:
                content = await f.read()
        else:
            logger.info(
                "generating sway config %s@%dHz", self._settings.resolution, self._settings.refresh_rate
            )
            content = render_sway_config(self._settings)

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.config_path, "w") as f:
            await f.write(content)
        return self.config_path

    async def start(self) -> ManagedProcess:
        """Write config, launch sway headless, wait for its socket and link it."""
        config_path = await self.write_config()
        self.process = ManagedProcess(
            "sway",
            ["sway", "--config", str(config_path)],
            env={
                **self.env,
                "WLR_BACKENDS": "headless",
                "WLR_LIBINPUT_NO_DEVICES": "1",
                "WLR_XWAYLAND": "",
                "XDG_SESSION_TYPE": "wayland",
                "XDG_CURRENT_DESKTOP": "sway",
            },
            user=self._settings.puid,
            group=self._settings.pgid,
            extra_groups=self._extra_groups,
        )
        await self.process.start()
        self.socket = await discover_socket(
            self._settings.xdg_runtime_dir,
            timeout=self._settings.socket_wait_seconds,
            process=self.process,
        )
        logger.info("sway started (socket: %s)", self.socket)
        link_socket(self.socket, self._settings.wayland_socket_path)
        return self.process

    def _ipc_socket(self) -> str | None:
        runtime = Path(self._settings.xdg_runtime_dir)
        found = sorted(runtime.glob("sway-ipc.*.sock")) if runtime.is_dir() else []
        return str(found[0]) if found else None

    async def client_count(self) -> int:
        """Number of client windows according to the compositor.

        Raises:
            SidecarError: If the tree could not be read.
        """
        env = {**os.environ, **self.env}
        ipc = self._ipc_socket()
        if ipc:
            env["SWAYSOCK"] = ipc
        try:
            proc = await asyncio.create_subprocess_exec(
                "swaymsg",
                "-t",
                "get_tree",
                "--raw",
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=5)
        except (asyncio.TimeoutError, FileNotFoundError) as exc:
            raise SidecarError(f"swaymsg failed: {exc!r}") from exc
        if proc.returncode != 0:
            raise SidecarError(f"swaymsg failed (rc={proc.returncode}): {stderr.decode(errors='replace')}")
        try:
            return count_clients(json.loads(stdout))
        except (json.JSONDecodeError, AttributeError) as exc:
            raise SidecarError(f"unparseable sway tree: {exc}") from exc

    def cleanup(self) -> None:
        """Remove the well-known socket link and its lock file."""
        for path in (
            Path(self._settings.wayland_socket_path),
            Path(f"{self._settings.wayland_socket_path}.lock"),
        ):
            if path.is_symlink() or path.exists():
                try:
                    path.unlink()
                except OSError as exc:
                    logger.warning("could not remove %s: %s", path, exc)
