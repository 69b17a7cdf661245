"""Host-side management of the shared streaming sidecar container."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable

import httpx

from dillinger.config import Settings
from dillinger.engine.interfaces import ContainerEngine
from dillinger.engine.spec import DeviceMapping, JobSpec, Mount, PortMapping
from dillinger.shared.enums import SidecarMode
from dillinger.shared.exceptions import SidecarNotReadyError

logger = logging.getLogger(__name__)

# Shared runtime volume mount point in sidecar and game containers
RUNTIME_DIR = "/run/dillinger"
WAYLAND_SOCKET_NAME = "wayland-dillinger"
PULSE_SOCKET_NAME = "pulse-socket"
WOLF_CFG_FOLDER = "/data/wolf"
SWAY_CONFIG_DIR = "/config/sway-configs"

MOONLIGHT_PORTS: tuple[tuple[int, str], ...] = (
    (47984, "tcp"),
    (47989, "tcp"),
    (48010, "tcp"),
    (47999, "udp"),
    (48100, "udp"),
    (48200, "udp"),
)


def build_sidecar_job(
    settings: Settings,
    *,
    mode: SidecarMode = SidecarMode.GAME,
    profile: str | None = None,
    device_exists: Callable[[str], bool] = os.path.exists,
) -> JobSpec:
    """Build the sidecar container request from daemon settings."""
    environment = {
        "SIDECAR_MODE": mode.value,
        "SWAY_CONFIG_NAME": profile or settings.sidecar_profile,
        "IDLE_TIMEOUT_MINUTES": str(settings.sidecar_idle_timeout_minutes if mode == SidecarMode.GAME else 0),
        "GPU_TYPE": settings.sidecar_gpu_type.value,
        "RESOLUTION_WIDTH": str(settings.sidecar_width),
        "RESOLUTION_HEIGHT": str(settings.sidecar_height),
        "REFRESH_RATE": str(settings.sidecar_refresh_rate),
        "PUID": str(settings.puid),
        "PGID": str(settings.pgid),
        "UNAME": "gameuser",
        "WOLF_CFG_FOLDER": WOLF_CFG_FOLDER,
        "WAYLAND_SOCKET_PATH": f"{RUNTIME_DIR}/{WAYLAND_SOCKET_NAME}",
        "CONTROL_PORT": str(settings.sidecar_control_port),
        "TEST_MODE": "1" if mode == SidecarMode.TEST_STREAM else "0",
    }
    mounts = [
        Mount(source=settings.sidecar_runtime_volume, target=RUNTIME_DIR),
        Mount(source=settings.sidecar_wolf_volume, target=WOLF_CFG_FOLDER),
        Mount(source=f"{settings.root.rstrip('/')}/sway-configs", target=SWAY_CONFIG_DIR, readonly=True),
    ]
    devices = [
        DeviceMapping(host_path=path)
        for path in (settings.gpu_device, settings.sidecar_uinput_device)
        if device_exists(path)
    ]
    ports = [PortMapping(container_port=port, host_port=port, protocol=proto) for port, proto in MOONLIGHT_PORTS]
    ports.append(
        PortMapping(
            container_port=settings.sidecar_control_port,
            host_port=settings.sidecar_control_port,
            host_ip="127.0.0.1",
        )
    )
    return JobSpec(
        image=settings.sidecar_image,
        name=settings.sidecar_container_name,
        environment=environment,
        mounts=tuple(mounts),
        ports=tuple(ports),
        devices=tuple(devices),
        labels={"dillinger.type": "streaming-sidecar", "dillinger.sidecar-mode": mode.value},
        network_mode=settings.network or None,
    )


class SidecarLauncher:
    """Make sure the streaming sidecar container is up and answering readiness."""

    def __init__(
        self,
        engine: ContainerEngine,
        settings: Settings,
        *,
        poll_interval: float = 1.0,
        device_exists: Callable[[str], bool] = os.path.exists,
    ) -> None:
        self._engine = engine
        self._settings = settings
        self._poll_interval = poll_interval
        self._device_exists = device_exists
        self._lock = asyncio.Lock()

    async def ensure_running(self) -> str:
        """Return the id of a running sidecar, creating and starting one if needed."""
        async with self._lock:
            name = self._settings.sidecar_container_name
            container_id = await self._engine.find_by_name(name)
            if container_id is not None:
                state = await self._engine.inspect(container_id)
                if state is not None and state.running:
                    return container_id
                logger.info("replacing stopped sidecar %s", container_id[:12])
                await self._engine.remove(container_id, force=True)

            spec = build_sidecar_job(self._settings, device_exists=self._device_exists)
            container_id = await self._engine.create(spec)
            await self._engine.start(container_id)
            logger.info("started streaming sidecar %s", container_id[:12])
            return container_id

    async def wait_ready(self, timeout: float) -> bool:
        """Poll the control API ``/readyz`` until it answers 200 or ``timeout`` elapses."""
        url = f"{self._settings.sidecar_control_url}/readyz"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with httpx.AsyncClient(timeout=2.0) as client:
            while True:
                try:
                    resp = await client.get(url)
                    if resp.status_code == 200:
                        return True
                    logger.debug("sidecar not ready yet: %s", resp.text[:200])
                except httpx.HTTPError as exc:
                    logger.debug("sidecar readiness check failed: %r", exc)
                if loop.time() + self._poll_interval > deadline:
                    return False
                await asyncio.sleep(self._poll_interval)

    async def ensure_ready(self) -> str:
        """Start the sidecar if needed and wait for readiness.

        Raises:
            SidecarNotReadyError: If the sidecar is not ready within the configured budget.
            EngineError: If the container could not be created or started.
        """
        container_id = await self.ensure_running()
        timeout = self._settings.sidecar_ready_timeout_seconds
        if not await self.wait_ready(timeout):
            raise SidecarNotReadyError(f"streaming sidecar not ready after {timeout}s")
        return container_id
