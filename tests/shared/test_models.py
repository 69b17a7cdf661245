"""Tests for frozen Pydantic domain models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from dillinger.shared.enums import DisplayMethod, GpuType, SessionStatus, SidecarMode
from dillinger.shared.models import (
    Game,
    GameSession,
    PendingPairing,
    SidecarResolution,
    SidecarStatus,
)


class TestGameSession:
    def test_create_with_defaults(self) -> None:
        session = GameSession(id="s1", game_id="g1", platform_id="p1")
        assert session.status == SessionStatus.STARTING
        assert session.container_id is None
        assert session.errors == ()
        assert session.display.method == DisplayMethod.X11

    def test_frozen_raises_on_mutation(self) -> None:
        session = GameSession(id="s1", game_id="g1", platform_id="p1")
        with pytest.raises(ValidationError):
            session.status = SessionStatus.RUNNING  # type: ignore[misc]

    def test_with_error_appends(self) -> None:
        session = GameSession(id="s1", game_id="g1", platform_id="p1")
        first = session.with_error("boom")
        second = first.with_error("again")
        assert [e.message for e in second.errors] == ["boom", "again"]
        assert session.errors == ()

    def test_entity_is_camel_case(self) -> None:
        session = GameSession(id="s1", game_id="g1", platform_id="p1", container_id="abc")
        data = session.to_entity()
        assert data["gameId"] == "g1"
        assert data["containerId"] == "abc"
        assert data["status"] == "starting"
        assert "startTime" in data["performance"]

    def test_entity_round_trip(self) -> None:
        session = GameSession(id="s1", game_id="g1", platform_id="p1").with_error("x")
        assert GameSession.model_validate(session.to_entity()) == session


class TestGame:
    def test_identifier_prefers_slug(self) -> None:
        assert Game(id="g1", title="T", slug="doom").identifier == "doom"
        assert Game(id="g1", title="T").identifier == "g1"

    def test_accepts_camel_case_record(self) -> None:
        game = Game.model_validate({"id": "g1", "title": "T", "defaultPlatformId": "wine"})
        assert game.default_platform_id == "wine"


class TestPendingPairing:
    def test_ignores_unknown_fields(self) -> None:
        pending = PendingPairing.model_validate({"pair_secret": "abc", "client_ip": "10.0.0.2", "extra": 1})
        assert pending.pair_secret == "abc"
        assert pending.client_ip == "10.0.0.2"


def test_sidecar_status_entity() -> None:
    status = SidecarStatus(
        mode=SidecarMode.GAME,
        profile="default",
        resolution=SidecarResolution(width=1920, height=1080, refresh_rate=60),
        gpu=GpuType.AMD,
        compositor_pid=42,
    )
    data = status.to_entity()
    assert data["resolution"] == {"width": 1920, "height": 1080, "refreshRate": 60}
    assert data["compositorPid"] == 42
    assert data["pairedClients"] == []
