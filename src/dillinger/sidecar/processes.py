"""Owned handles for child processes supervised by the sidecar."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Mapping, Sequence

from dillinger.shared.exceptions import SidecarStartupError

logger = logging.getLogger(__name__)


class ManagedProcess:
    """One supervised child process.

    Uses ``asyncio.create_subprocess_exec``; stdout and stderr are inherited so
    child output lands in the container log.
    """

    def __init__(
        self,
        name: str,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        user: int | None = None,
        group: int | None = None,
        extra_groups: Sequence[int] | None = None,
    ) -> None:
        self.name = name
        self.argv = list(argv)
        self._env = dict(env) if env is not None else None
        self._cwd = cwd
        self._user = user
        self._group = group
        self._extra_groups = list(extra_groups) if extra_groups else None
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    async def start(self) -> None:
        """Spawn the process.

        Raises:
            SidecarStartupError: If the binary is missing or cannot be executed.
        """
        kwargs: dict[str, object] = {}
        if self._user is not None:
            kwargs["user"] = self._user
        if self._group is not None:
            kwargs["group"] = self._group
        if self._extra_groups:
            kwargs["extra_groups"] = self._extra_groups
        env = {**os.environ, **self._env} if self._env is not None else None

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                env=env,
                cwd=self._cwd,
                stdin=asyncio.subprocess.DEVNULL,
                **kwargs,  # type: ignore[arg-type]
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise SidecarStartupError(f"{self.name}: cannot execute {self.argv[0]}: {exc}") from exc
        logger.info("started %s (pid %d)", self.name, self._proc.pid)

    async def wait(self) -> int:
        if self._proc is None:
            raise RuntimeError(f"{self.name} was never started")
        return await self._proc.wait()

    async def terminate(self, grace: float = 10.0) -> int | None:
        """SIGTERM, then SIGKILL after ``grace`` seconds. Safe to call repeatedly."""
        proc = self._proc
        if proc is None:
            return None
        if proc.returncode is not None:
            return proc.returncode

        logger.info("stopping %s (pid %d)", self.name, proc.pid)
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return await proc.wait()
        try:
            return await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("%s did not exit within %.0fs, killing", self.name, grace)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            return await proc.wait()
