"""Tests for shared enum definitions."""

from __future__ import annotations

from dillinger.shared.enums import MediaType, SessionStatus, SidecarMode, ValidationStatus


class TestSessionStatus:
    def test_all_states_present(self) -> None:
        expected = {"starting", "running", "stopping", "stopped", "error"}
        assert {s.value for s in SessionStatus} == expected

    def test_terminal_states(self) -> None:
        assert {s for s in SessionStatus if s.is_terminal} == {SessionStatus.STOPPED, SessionStatus.ERROR}

    def test_string_value(self) -> None:
        assert SessionStatus.RUNNING == "running"


class TestSidecarMode:
    def test_values_match_environment_contract(self) -> None:
        assert {m.value for m in SidecarMode} == {"game", "test-stream", "test-x11"}


def test_media_types() -> None:
    assert MediaType("video/raw") is MediaType.VIDEO_RAW
    assert MediaType.INPUT_EVENTS.value == "input/events"


def test_validation_status_values() -> None:
    assert {s.value for s in ValidationStatus} == {"ok", "warning", "blocking", "unknown"}
