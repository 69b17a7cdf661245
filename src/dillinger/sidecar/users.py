"""User, group and runtime-directory setup inside the sidecar."""

from __future__ import annotations

import asyncio
import grp
import logging
import os
import pwd
import stat
from collections.abc import Iterable
from pathlib import Path

from dillinger.shared.exceptions import SidecarStartupError
from dillinger.sidecar.settings import SidecarSettings

logger = logging.getLogger(__name__)

# Device trees bind-mounted from the host whose group ids must be mirrored
DEVICE_DIRS = ("/dev/dri", "/dev/snd")


async def _run(*argv: str) -> tuple[str, int]:
    """Run a setup command and return (stderr, returncode)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=30)
    except asyncio.TimeoutError as exc:
        raise SidecarStartupError(f"setup command timed out: {' '.join(argv)}") from exc
    except FileNotFoundError as exc:
        raise SidecarStartupError(f"setup command not found: {argv[0]}") from exc
    return stderr.decode(errors="replace").strip(), proc.returncode or 0


def device_gids(device_dirs: Iterable[str], *, exclude: Iterable[int] = ()) -> list[int]:
    """Return the distinct non-root group ids owning character devices under ``device_dirs``."""
    skip = {0, *exclude}
    gids: list[int] = []
    for directory in device_dirs:
        root = Path(directory)
        if not root.is_dir():
            continue
        for device in sorted(root.iterdir()):
            try:
                info = device.stat()
            except OSError:
                continue
            if stat.S_ISCHR(info.st_mode) and info.st_gid not in skip and info.st_gid not in gids:
                gids.append(info.st_gid)
    return gids


async def ensure_user(settings: SidecarSettings) -> None:
    try:
        pwd.getpwnam(settings.uname)
        return
    except KeyError:
        pass
    logger.info("creating user %s (uid=%d gid=%d)", settings.uname, settings.puid, settings.pgid)
    try:
        grp.getgrgid(settings.pgid)
    except KeyError:
        await _run("groupadd", "-g", str(settings.pgid), settings.uname)
    err, rc = await _run(
        "useradd", "-u", str(settings.puid), "-g", str(settings.pgid), "-m", "-s", "/bin/bash", settings.uname
    )
    if rc != 0:
        raise SidecarStartupError(f"useradd {settings.uname} failed: {err}")


async def reconcile_device_groups(settings: SidecarSettings, device_dirs: Iterable[str] = DEVICE_DIRS) -> list[int]:
    """Give the game user membership of every host GID owning a passed-through device.

    Groups unknown inside the image are created as ``dri_<gid>``. Returns the
    GIDs the user was added to.
    """
    gids = device_gids(device_dirs, exclude=(settings.pgid,))
    for gid in gids:
        try:
            grp.getgrgid(gid)
        except KeyError:
            err, rc = await _run("groupadd", "-g", str(gid), f"dri_{gid}")
            if rc != 0:
                logger.warning("groupadd %d failed: %s", gid, err)
        err, rc = await _run("usermod", "-aG", str(gid), settings.uname)
        if rc != 0:
            logger.warning("usermod -aG %d %s failed: %s", gid, settings.uname, err)
        else:
            logger.info("added %s to device group %d", settings.uname, gid)
    return gids


def prepare_runtime_dirs(settings: SidecarSettings) -> None:
    """Create the per-user runtime dir and the shared socket dir, owned by the game user.

    The sway profile dir is a read-only host mount and is left alone.
    """
    runtime = Path(settings.xdg_runtime_dir)
    shared = Path(settings.wayland_socket_path).parent
    for directory, mode in ((runtime, 0o700), (shared, 0o755)):
        directory.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(directory, mode)
            os.chown(directory, settings.puid, settings.pgid)
        except OSError as exc:
            logger.warning("cannot hand %s to %d:%d: %s", directory, settings.puid, settings.pgid, exc)


async def setup_user(settings: SidecarSettings) -> list[int]:
    """Startup step 1. Returns the supplementary group ids for child processes."""
    await ensure_user(settings)
    gids = await reconcile_device_groups(settings)
    prepare_runtime_dirs(settings)
    return gids
