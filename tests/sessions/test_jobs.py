"""Tests for game and installer job construction."""

from __future__ import annotations

from dillinger.config import Settings
from dillinger.sessions.jobs import build_game_job, build_install_job, container_name
from dillinger.shared.enums import LaunchMode, SessionKind
from dillinger.shared.models import Game, GameSession, Platform


def _session(mode: LaunchMode = LaunchMode.LOCAL, kind: SessionKind = SessionKind.LAUNCH) -> GameSession:
    return GameSession(id="sess-1", game_id="game-001", platform_id="linux-native", mode=mode, kind=kind)


def _targets(spec) -> dict[str, tuple[str, bool]]:
    return {m.target: (m.source, m.readonly) for m in spec.mounts}


class TestGameJob:
    def test_local_job(self, settings: Settings, sample_game: Game, sample_platform: Platform) -> None:
        spec = build_game_job(settings, _session(), sample_game, sample_platform, device_exists=lambda _: True)

        assert spec.image == sample_platform.container_image
        assert spec.name == "dillinger-session-sess-1"
        assert spec.command == ("/game/start.sh",)
        assert spec.ipc_mode == "host"
        assert spec.tty is True
        assert spec.environment["DISPLAY"] == ":0"
        assert spec.environment["GAME_FILE"] == "/game/start.sh"
        assert spec.environment["EXTRA"] == "1"
        assert spec.labels["dillinger.session-id"] == "sess-1"
        assert spec.labels["dillinger.mode"] == "local"

        mounts = _targets(spec)
        assert mounts["/game"] == ("/games/test-game", True)
        assert mounts["/data"] == (settings.root, False)
        assert "/tmp/.X11-unix" in mounts
        assert {d.host_path for d in spec.devices} == {"/dev/dri", "/dev/snd", "/dev/input", "/dev/uinput"}

    def test_missing_devices_are_skipped(
        self, settings: Settings, sample_game: Game, sample_platform: Platform
    ) -> None:
        spec = build_game_job(settings, _session(), sample_game, sample_platform, device_exists=lambda _: False)
        assert spec.devices == ()

    def test_streaming_job_uses_sidecar_sockets(
        self, settings: Settings, sample_game: Game, sample_platform: Platform
    ) -> None:
        session = _session(LaunchMode.STREAMING)
        spec = build_game_job(settings, session, sample_game, sample_platform, device_exists=lambda _: True)

        assert spec.environment["WAYLAND_DISPLAY"] == "wayland-dillinger"
        assert spec.environment["XDG_RUNTIME_DIR"] == "/run/dillinger"
        assert spec.environment["PULSE_SERVER"] == "unix:/run/dillinger/pulse-socket"
        assert "DISPLAY" not in spec.environment
        assert spec.ipc_mode is None
        assert _targets(spec)["/run/dillinger"] == (settings.sidecar_runtime_volume, False)
        assert {d.host_path for d in spec.devices} == {"/dev/dri"}

    def test_container_name_unique_per_session(self, settings: Settings) -> None:
        a = GameSession(id="a", game_id="g", platform_id="p")
        b = GameSession(id="b", game_id="g", platform_id="p")
        assert container_name(settings, a) != container_name(settings, b)


class TestInstallJob:
    def test_install_job(self, settings: Settings, sample_game: Game, sample_platform: Platform) -> None:
        spec = build_install_job(
            settings,
            _session(kind=SessionKind.INSTALL),
            sample_game,
            sample_platform,
            "/downloads/setup.exe",
            "/games/test-game",
            device_exists=lambda _: False,
        )

        assert spec.environment["INSTALLER_PATH"] == "/installer/setup.exe"
        assert spec.environment["INSTALL_DIR"] == "/install"
        assert spec.environment["DILLINGER_INSTALL"] == "1"
        assert spec.command == ()
        mounts = _targets(spec)
        assert mounts["/installer"] == ("/downloads", True)
        assert mounts["/install"] == ("/games/test-game", False)
        assert spec.labels["dillinger.kind"] == "install"
