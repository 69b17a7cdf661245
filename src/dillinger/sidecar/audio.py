"""PulseAudio backend with a null sink that the streaming server captures."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import aiofiles  # type: ignore[import-untyped]

from dillinger.shared.exceptions import SidecarStartupError, StartupTimeoutError
from dillinger.sidecar.processes import ManagedProcess
from dillinger.sidecar.settings import SidecarSettings

logger = logging.getLogger(__name__)

NULL_SINK = "game_audio"


def render_default_pa(pulse_socket_path: str) -> str:
    return (
        "#!/usr/bin/pulseaudio -nF\n"
        "\n"
        f"load-module module-native-protocol-unix auth-anonymous=1 socket={pulse_socket_path}\n"
        "\n"
        "# Null sink for capturing game audio\n"
        f'load-module module-null-sink sink_name={NULL_SINK} sink_properties=device.description="Game_Audio_Capture"\n'
        "\n"
        f"set-default-sink {NULL_SINK}\n"
        f"set-default-source {NULL_SINK}.monitor\n"
    )


async def wait_for_path(
    path: str,
    *,
    timeout: float,
    interval: float = 0.5,
    what: str = "socket",
    process: ManagedProcess | None = None,
) -> None:
    """Poll until ``path`` exists.

    Raises:
        SidecarStartupError: If ``process`` exits before the path appears.
        StartupTimeoutError: If it does not appear within ``timeout`` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not os.path.exists(path):
        if process is not None and process.returncode is not None:
            raise SidecarStartupError(f"{process.name} exited with code {process.returncode} before creating {what}")
        if loop.time() >= deadline:
            raise StartupTimeoutError(f"{what} {path} did not appear within {timeout:.0f}s")
        await asyncio.sleep(interval)


async def start_audio(settings: SidecarSettings, *, extra_groups: list[int] | None = None) -> ManagedProcess:
    """Write ``default.pa`` and run PulseAudio in the foreground as the game user."""
    config_dir = Path(settings.config_home) / "pulse"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "default.pa"
    async with aiofiles.open(config_path, "w") as f:
        await f.write(render_default_pa(settings.pulse_socket_path))

    process = ManagedProcess(
        "pulseaudio",
        [
            "pulseaudio",
            "--daemonize=no",
            "--exit-idle-time=-1",
            "--log-target=stderr",
            "--log-level=warning",
            "-nF",
            str(config_path),
        ],
        env={"XDG_RUNTIME_DIR": settings.xdg_runtime_dir, "PULSE_CONFIG_PATH": str(config_dir)},
        user=settings.puid,
        group=settings.pgid,
        extra_groups=extra_groups,
    )
    await process.start()
    await wait_for_path(
        settings.pulse_socket_path, timeout=settings.socket_wait_seconds, what="pulse socket", process=process
    )
    logger.info("pulseaudio ready at %s", settings.pulse_socket_path)
    return process
