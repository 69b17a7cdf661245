"""Stop the sidecar after a period with no compositor clients."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from dillinger.shared.exceptions import SidecarError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 10.0


class IdleTracker:
    """Accumulates idle time from periodic client-count samples."""

    def __init__(self, timeout_seconds: float, interval: float = DEFAULT_INTERVAL) -> None:
        self.timeout_seconds = timeout_seconds
        self.interval = interval
        self.idle_seconds = 0.0

    @property
    def remaining(self) -> float:
        return max(self.timeout_seconds - self.idle_seconds, 0.0)

    def observe(self, client_count: int) -> bool:
        """Record one sample; True once the idle timeout has been reached."""
        if client_count > 0:
            if self.idle_seconds:
                logger.info("client connected, resetting idle timer")
            self.idle_seconds = 0.0
            return False
        self.idle_seconds += self.interval
        return self.idle_seconds >= self.timeout_seconds


class IdleMonitor:
    """Periodically sample ``count_clients`` and call ``on_idle`` once the timeout expires."""

    def __init__(
        self,
        count_clients: Callable[[], Awaitable[int]],
        on_idle: Callable[[], None],
        *,
        minutes: int,
        interval: float = DEFAULT_INTERVAL,
    ) -> None:
        self._count_clients = count_clients
        self._on_idle = on_idle
        self.tracker = IdleTracker(minutes * 60, interval)
        self._task: asyncio.Task[None] | None = None

    @property
    def enabled(self) -> bool:
        return self.tracker.timeout_seconds > 0

    def start(self) -> asyncio.Task[None] | None:
        if not self.enabled:
            logger.info("idle timeout disabled")
            return None
        logger.info("idle monitor started (timeout: %.0fm)", self.tracker.timeout_seconds / 60)
        self._task = asyncio.create_task(self.run(), name="idle-monitor")
        return self._task

    async def sample(self) -> int:
        try:
            return await self._count_clients()
        except (SidecarError, OSError) as exc:
            logger.debug("client count failed, treating as idle: %s", exc)
            return 0

    async def run(self) -> None:
        tracker = self.tracker
        while True:
            await asyncio.sleep(tracker.interval)
            if tracker.observe(await self.sample()):
                logger.warning("idle timeout reached, shutting down")
                self._on_idle()
                return
            if tracker.idle_seconds and tracker.idle_seconds % 60 < tracker.interval:
                logger.info("no clients connected, auto-stop in %.0fs", tracker.remaining)

    async def cancel(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
