"""Tests for ManagedProcess using real short-lived children."""

from __future__ import annotations

import asyncio

import pytest

from dillinger.shared.exceptions import SidecarStartupError
from dillinger.sidecar.processes import ManagedProcess


async def test_exit_code_reported() -> None:
    process = ManagedProcess("sh", ["/bin/sh", "-c", "exit 3"])
    await process.start()

    assert process.pid is not None
    assert await process.wait() == 3
    assert process.running is False
    assert process.returncode == 3


async def test_env_is_merged() -> None:
    process = ManagedProcess("sh", ["/bin/sh", "-c", 'test "$DILLINGER_CHECK" = yes'], env={"DILLINGER_CHECK": "yes"})
    await process.start()
    assert await process.wait() == 0


async def test_missing_binary() -> None:
    process = ManagedProcess("wolf", ["/nonexistent/wolf"])
    with pytest.raises(SidecarStartupError, match="cannot execute /nonexistent/wolf"):
        await process.start()
    assert process.pid is None


async def test_terminate_running_and_repeat() -> None:
    process = ManagedProcess("sleeper", ["/bin/sh", "-c", "exec sleep 30"])
    await process.start()
    assert process.running

    code = await process.terminate(grace=5)

    assert code == -15
    assert await process.terminate(grace=5) == -15


async def test_kill_after_grace() -> None:
    process = ManagedProcess("stubborn", ["/bin/sh", "-c", "trap '' TERM; sleep 30 & wait"])
    await process.start()
    # let the shell install its trap
    await asyncio.sleep(0.3)

    assert await process.terminate(grace=0.2) == -9


async def test_never_started() -> None:
    process = ManagedProcess("idle", ["true"])

    assert await process.terminate() is None
    with pytest.raises(RuntimeError):
        await process.wait()
