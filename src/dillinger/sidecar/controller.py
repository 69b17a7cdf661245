"""Streaming sidecar supervisor.

Brings the sidecar's children up in a fixed order, waits for the first of a
stop request or an unexpected child exit, then tears everything down once.

Startup order:
    1. game user, device groups and runtime directories
    2. PulseAudio with the capture null sink
    3. ``test-x11``: test pattern to the host display
       ``game`` / ``test-stream``: Sway, Wolf config, Wolf, optional test client
    4. idle monitor (game mode only)
    5. loopback control API
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from collections.abc import Iterator

import uvicorn
from pydantic import ValidationError

from dillinger.shared.enums import SidecarMode
from dillinger.shared.exceptions import SidecarError, SidecarStartupError
from dillinger.shared.models import PairedClientStatus, SidecarResolution, SidecarStatus
from dillinger.sidecar.audio import start_audio
from dillinger.sidecar.compositor import Compositor
from dillinger.sidecar.control_api import create_control_app
from dillinger.sidecar.idle import IdleMonitor
from dillinger.sidecar.processes import ManagedProcess
from dillinger.sidecar.settings import SidecarSettings, get_sidecar_settings
from dillinger.sidecar.test_pattern import TestPattern
from dillinger.sidecar.users import setup_user
from dillinger.sidecar.wolf import WolfApiClient, generate_config, read_paired_clients, start_wolf

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
API_START_TIMEOUT = 5.0


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the controller."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class SidecarController:
    """Owns every child process of one sidecar container."""

    def __init__(self, settings: SidecarSettings) -> None:
        self.settings = settings
        self.extra_groups: list[int] = []
        self.audio: ManagedProcess | None = None
        self.compositor: Compositor | None = None
        self.wolf_process: ManagedProcess | None = None
        self.wolf: WolfApiClient | None = None
        self.test_pattern = TestPattern(settings)
        self.idle: IdleMonitor | None = None
        self._stop = asyncio.Event()
        self._stop_reason = ""
        self._api_server: _EmbeddedServer | None = None
        self._api_task: asyncio.Task[None] | None = None
        self._shut_down = False

    # ── Stop requests ───────────────────────────────────────────

    def request_stop(self, reason: str = "stop requested") -> None:
        if not self._stop.is_set():
            logger.info("%s, shutting down", reason)
            self._stop_reason = reason
            self._stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop, f"received {sig.name}")

    # ── Startup ─────────────────────────────────────────────────

    async def startup(self) -> None:
        s = self.settings
        logger.info(
            "dillinger streaming sidecar: mode=%s profile=%s resolution=%s@%dHz gpu=%s idle=%dm",
            s.sidecar_mode.value,
            s.sway_config_name,
            s.resolution,
            s.refresh_rate,
            s.gpu_type.value,
            s.idle_timeout_minutes,
        )
        self.extra_groups = await setup_user(s)
        self.test_pattern = TestPattern(s, extra_groups=self.extra_groups)
        self.audio = await start_audio(s, extra_groups=self.extra_groups)

        if s.sidecar_mode == SidecarMode.TEST_X11:
            logger.info("x11 test mode, compositor not started")
            await self.test_pattern.start_x11()
        else:
            await self._start_streaming()

        await self._start_control_api()
        logger.info(
            "sidecar ready: wayland=%s pulse=%s control=http://%s:%d",
            s.wayland_socket_path,
            s.pulse_socket_path,
            s.control_host,
            s.control_port,
        )

    async def _start_streaming(self) -> None:
        s = self.settings
        self.compositor = Compositor(s, extra_groups=self.extra_groups)
        await self.compositor.start()
        await generate_config(s)
        self.wolf_process = await start_wolf(s, self.compositor.env, extra_groups=self.extra_groups)
        self.wolf = WolfApiClient(s.wolf_socket_path)

        if s.sidecar_mode == SidecarMode.TEST_STREAM:
            await self.test_pattern.start_stream(self.compositor.env)
        elif s.sidecar_mode == SidecarMode.GAME:
            self.idle = IdleMonitor(
                self.compositor.client_count,
                lambda: self.request_stop("idle timeout reached"),
                minutes=s.idle_timeout_minutes,
                interval=s.idle_check_interval_seconds,
            )
            self.idle.start()

    async def _start_control_api(self) -> None:
        config = uvicorn.Config(
            create_control_app(self),
            host=self.settings.control_host,
            port=self.settings.control_port,
            log_level="warning",
        )
        self._api_server = _EmbeddedServer(config)
        self._api_task = asyncio.create_task(self._serve_api(self._api_server), name="control-api")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + API_START_TIMEOUT
        while not self._api_server.started:
            if self._api_task.done() or loop.time() >= deadline:
                raise SidecarStartupError(f"control API failed to listen on port {self.settings.control_port}")
            await asyncio.sleep(0.05)
        logger.info("control API listening on port %d", self.settings.control_port)

    # ── Status ──────────────────────────────────────────────────

    def readiness(self) -> dict[str, bool]:
        if self.settings.sidecar_mode == SidecarMode.TEST_X11:
            process = self.test_pattern.process
            return {"testPattern": process is not None and process.running}
        compositor = self.compositor
        return {
            "compositor": compositor is not None
            and compositor.socket is not None
            and compositor.process is not None
            and compositor.process.running,
            "streamingServer": self.wolf_process is not None and self.wolf_process.running,
        }

    async def status(self) -> SidecarStatus:
        s = self.settings
        paired = await read_paired_clients(s.wolf_cfg_folder) if s.streams else []
        compositor_process = self.compositor.process if self.compositor else None
        return SidecarStatus(
            mode=s.sidecar_mode,
            profile=s.sway_config_name,
            resolution=SidecarResolution(
                width=s.resolution_width, height=s.resolution_height, refresh_rate=s.refresh_rate
            ),
            gpu=s.gpu_type,
            compositor_pid=compositor_process.pid if compositor_process else None,
            streaming_server_pid=self.wolf_process.pid if self.wolf_process else None,
            test_pattern_pid=self.test_pattern.process.pid if self.test_pattern.process else None,
            paired_clients=tuple(
                PairedClientStatus(client_id=c.client_id, app_state_folder=c.app_state_folder) for c in paired
            ),
        )

    # ── Main loop ───────────────────────────────────────────────

    def _watched(self) -> list[ManagedProcess]:
        candidates = [
            self.compositor.process if self.compositor else None,
            self.wolf_process,
            self.test_pattern.process,
        ]
        return [p for p in candidates if p is not None]

    async def wait_first_exit(self) -> int:
        """Block until a stop request or a critical child exit; return the exit code."""
        stop_task = asyncio.create_task(self._stop.wait(), name="stop-request")
        children = {asyncio.create_task(p.wait(), name=p.name): p for p in self._watched()}
        done, pending = await asyncio.wait({stop_task, *children}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if stop_task in done:
            return EXIT_OK
        for task in done:
            process = children[task]
            logger.warning("%s exited unexpectedly with code %s, shutting down", process.name, process.returncode)
        return EXIT_FAILURE

    async def shutdown(self) -> None:
        """Stop everything in reverse dependency order. Runs at most once."""
        if self._shut_down:
            return
        self._shut_down = True
        grace = self.settings.terminate_grace_seconds

        if self.idle is not None:
            await self.idle.cancel()
        await self._stop_control_api()

        await self.test_pattern.terminate(grace)
        if self.wolf_process is not None:
            await self.wolf_process.terminate(grace)
        if self.compositor is not None and self.compositor.process is not None:
            await self.compositor.process.terminate(grace)
        if self.audio is not None:
            await self.audio.terminate(grace)

        if self.compositor is not None:
            self.compositor.cleanup()
        try:
            os.unlink(self.settings.pulse_socket_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("could not remove %s: %s", self.settings.pulse_socket_path, exc)
        logger.info("sidecar stopped")

    async def _serve_api(self, server: _EmbeddedServer) -> None:
        try:
            await server.serve()
        except SystemExit as exc:
            raise SidecarStartupError(f"control API server exited with code {exc.code}") from exc

    async def _stop_control_api(self) -> None:
        if self._api_server is None or self._api_task is None:
            return
        self._api_server.should_exit = True
        try:
            await asyncio.wait_for(self._api_task, timeout=API_START_TIMEOUT)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            self._api_task.cancel()
        except SidecarError as exc:
            logger.warning("control API stopped with an error: %s", exc)

    async def run(self) -> int:
        self._install_signal_handlers()
        try:
            await self.startup()
        except (SidecarError, OSError) as exc:
            logger.error("sidecar startup failed: %s", exc)
            await self.shutdown()
            return EXIT_FAILURE
        code = await self.wait_first_exit()
        await self.shutdown()
        return code


def main() -> None:
    """Entry point for the ``dillinger-sidecar`` console script."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        settings = get_sidecar_settings()
    except ValidationError as exc:
        logger.error("invalid sidecar environment: %s", exc)
        sys.exit(EXIT_FAILURE)
    sys.exit(asyncio.run(SidecarController(settings).run()))


if __name__ == "__main__":
    main()
