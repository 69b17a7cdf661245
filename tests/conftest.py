"""Shared pytest fixtures for the Dillinger test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from dillinger.config import Settings
from dillinger.engine.spec import ContainerState
from dillinger.shared.enums import DisplayMethod
from dillinger.shared.models import Game, Platform
from dillinger.sidecar.settings import SidecarSettings


async def aiter_of(items: Iterable[str]) -> AsyncIterator[str]:
    for item in items:
        yield item


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Return daemon Settings rooted in a temp directory."""
    return Settings(
        root=str(tmp_path),
        monitor_poll_seconds=0.01,
        sidecar_ready_timeout_seconds=1,
        stop_timeout_seconds=1,
    )


@pytest.fixture()
def sidecar_settings(tmp_path: Path) -> SidecarSettings:
    return SidecarSettings(
        puid=1000,
        pgid=1000,
        wolf_cfg_folder=str(tmp_path / "wolf"),
        wolf_template_path=str(tmp_path / "missing-template.toml"),
        wolf_socket_path=str(tmp_path / "wolf.sock"),
        wayland_socket_path=str(tmp_path / "shared" / "wayland-dillinger"),
        pulse_socket_path=str(tmp_path / "shared" / "pulse-socket"),
        config_home=str(tmp_path / "config"),
        settle_seconds=0,
        socket_wait_seconds=1,
        terminate_grace_seconds=1,
    )


@pytest.fixture()
def sample_game() -> Game:
    return Game(
        id="game-001",
        title="Test Game",
        slug="test-game",
        default_platform_id="linux-native",
        file_path="/games/test-game/start.sh",
        launch_command=("/game/start.sh",),
        environment={"EXTRA": "1"},
    )


@pytest.fixture()
def sample_platform() -> Platform:
    return Platform(
        id="linux-native",
        name="Linux Native",
        type="linux",
        container_image="ghcr.io/thrane20/dillinger/runner-linux-native:latest",
        display_method=DisplayMethod.X11,
    )


@pytest.fixture()
def mock_engine() -> AsyncMock:
    """Mock container engine whose containers run until told otherwise."""
    engine = AsyncMock()
    engine.create = AsyncMock(return_value="c0ffee000000aaaa")
    engine.start = AsyncMock()
    engine.stop = AsyncMock()
    engine.remove = AsyncMock()
    engine.inspect = AsyncMock(return_value=ContainerState(running=True, exit_code=None, started_at=None))
    engine.find_by_name = AsyncMock(return_value=None)
    engine.exec = AsyncMock(return_value=(0, "{}"))
    engine.logs = MagicMock(side_effect=lambda *args, **kwargs: aiter_of(["boot\n", "crash\n"]))
    return engine
