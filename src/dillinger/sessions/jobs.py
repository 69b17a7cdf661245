"""Build container launch requests for game and installer sessions."""

from __future__ import annotations

import os
from collections.abc import Callable

from dillinger.config import Settings
from dillinger.engine.spec import DeviceMapping, JobSpec, Mount
from dillinger.shared.enums import LaunchMode
from dillinger.shared.models import Game, GameSession, Platform
from dillinger.streaming.sidecar import PULSE_SOCKET_NAME, RUNTIME_DIR, WAYLAND_SOCKET_NAME

DeviceExists = Callable[[str], bool]

HOME_DIR = "/home/gameuser"
# Optional pass-through devices for local play; skipped when absent on the host
LOCAL_DEVICES = ("/dev/snd", "/dev/input", "/dev/uinput")


def container_name(settings: Settings, session: GameSession) -> str:
    return f"{settings.container_prefix}-{session.id}"


def session_labels(session: GameSession) -> dict[str, str]:
    return {
        "dillinger.type": "game-session",
        "dillinger.game-id": session.game_id,
        "dillinger.session-id": session.id,
        "dillinger.kind": session.kind.value,
        "dillinger.mode": session.mode.value,
    }


def _base_environment(settings: Settings, session: GameSession, game: Game) -> dict[str, str]:
    env = {
        "GAME_ID": game.id,
        "GAME_SLUG": game.identifier,
        "SESSION_ID": session.id,
        "PUID": str(settings.puid),
        "PGID": str(settings.pgid),
        "SAVES_PATH": f"/data/saves/{game.id}",
        "HOME": HOME_DIR,
    }
    env.update(game.environment)
    return env


def _display(
    settings: Settings, mode: LaunchMode, device_exists: DeviceExists
) -> tuple[dict[str, str], list[Mount], list[DeviceMapping], str | None]:
    """Return (environment, mounts, devices, ipc mode) for the display backend."""
    devices = [DeviceMapping(host_path=settings.gpu_device)] if device_exists(settings.gpu_device) else []

    if mode == LaunchMode.STREAMING:
        env = {
            "XDG_RUNTIME_DIR": RUNTIME_DIR,
            "WAYLAND_DISPLAY": WAYLAND_SOCKET_NAME,
            "SDL_VIDEODRIVER": "wayland",
            "PULSE_SERVER": f"unix:{RUNTIME_DIR}/{PULSE_SOCKET_NAME}",
        }
        mounts = [Mount(source=settings.sidecar_runtime_volume, target=RUNTIME_DIR)]
        return env, mounts, devices, None

    runtime_dir = f"/run/user/{settings.puid}"
    env = {
        "DISPLAY": settings.x11_display,
        "XDG_RUNTIME_DIR": runtime_dir,
        "PULSE_SERVER": f"unix:{runtime_dir}/pulse/native",
    }
    mounts = [
        Mount(source=settings.x11_socket_dir, target="/tmp/.X11-unix"),
        Mount(source=f"{runtime_dir}/pulse", target=f"{runtime_dir}/pulse"),
    ]
    devices += [DeviceMapping(host_path=path) for path in LOCAL_DEVICES if device_exists(path)]
    return env, mounts, devices, "host"  # X11 MIT-SHM needs the host IPC namespace


def _game_dir(game: Game) -> str | None:
    if game.install_path:
        return game.install_path
    if game.file_path:
        return os.path.dirname(game.file_path) or None
    return None


def build_game_job(
    settings: Settings,
    session: GameSession,
    game: Game,
    platform: Platform,
    *,
    device_exists: DeviceExists = os.path.exists,
) -> JobSpec:
    """Build the runner container request for a launch session.

    Local sessions share the host X display and audio socket; streaming
    sessions attach to the sidecar's compositor and audio sockets through the
    shared runtime volume.
    """
    env, mounts, devices, ipc_mode = _display(settings, session.mode, device_exists)
    environment = _base_environment(settings, session, game) | env
    if game.file_path:
        environment["GAME_FILE"] = f"/game/{os.path.basename(game.file_path)}"

    mounts = [
        Mount(source=settings.root, target="/data"),
        Mount(source=settings.installers_volume, target="/installers"),
        *mounts,
    ]
    game_dir = _game_dir(game)
    if game_dir:
        mounts.append(Mount(source=game_dir, target="/game", readonly=True))

    return JobSpec(
        image=platform.container_image,
        name=container_name(settings, session),
        command=game.launch_command,
        environment=environment,
        mounts=tuple(mounts),
        devices=tuple(devices),
        labels=session_labels(session),
        network_mode=settings.network or None,
        ipc_mode=ipc_mode,
        tty=True,
    )


def build_install_job(
    settings: Settings,
    session: GameSession,
    game: Game,
    platform: Platform,
    installer_path: str,
    install_path: str,
    *,
    device_exists: DeviceExists = os.path.exists,
) -> JobSpec:
    """Build the container request that runs an installer into ``install_path``.

    Installers always run on the local display so the user can click through
    the setup wizard.
    """
    env, mounts, devices, ipc_mode = _display(settings, LaunchMode.LOCAL, device_exists)
    environment = _base_environment(settings, session, game) | env
    environment |= {
        "INSTALLER_PATH": f"/installer/{os.path.basename(installer_path)}",
        "INSTALL_DIR": "/install",
        "DILLINGER_INSTALL": "1",
    }
    mounts = [
        Mount(source=settings.root, target="/data"),
        Mount(source=os.path.dirname(installer_path) or "/", target="/installer", readonly=True),
        Mount(source=install_path, target="/install"),
        *mounts,
    ]
    return JobSpec(
        image=platform.container_image,
        name=container_name(settings, session),
        environment=environment,
        mounts=tuple(mounts),
        devices=tuple(devices),
        labels=session_labels(session),
        network_mode=settings.network or None,
        ipc_mode=ipc_mode,
        tty=True,
    )
