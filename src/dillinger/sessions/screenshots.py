"""Harvest screenshots a game wrote to its emulator home during a session."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from functools import partial
from pathlib import Path
from urllib.parse import quote

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".webp"})
TIME_BUFFER_SECONDS = 5.0


def _collect(base_dir: Path, home_dir: Path, results: dict[str, float]) -> None:
    if not base_dir.is_dir():
        return
    for path in base_dir.rglob("*"):
        if path.suffix.lower() not in IMAGE_EXTENSIONS or not path.is_file():
            continue
        try:
            relative = path.relative_to(home_dir).as_posix()
        except ValueError:
            continue
        mtime = path.stat().st_mtime
        if mtime > results.get(relative, float("-inf")):
            results[relative] = mtime


def collect_session_screenshots(
    root: str | Path,
    game_id: str,
    game_identifier: str,
    start_time: str,
    end_time: str,
) -> list[str]:
    """Return screenshot URLs for images modified during the session window.

    The RetroArch screenshot directory is scanned first, then the whole
    emulator home. Results are newest first.
    """
    home_dir = Path(root) / "emulator-homes" / game_identifier
    if not home_dir.is_dir():
        return []

    candidates: dict[str, float] = {}
    _collect(home_dir / ".config" / "retroarch" / "screenshots", home_dir, candidates)
    _collect(home_dir, home_dir, candidates)

    start = datetime.fromisoformat(start_time).timestamp() - TIME_BUFFER_SECONDS
    end = datetime.fromisoformat(end_time).timestamp() + TIME_BUFFER_SECONDS
    in_window = sorted(
        ((relative, mtime) for relative, mtime in candidates.items() if start <= mtime <= end),
        key=lambda item: item[1],
        reverse=True,
    )
    return [f"/api/games/{game_id}/screenshots/{quote(relative, safe='/')}" for relative, _ in in_window]


class ScreenshotHarvester:
    """Async wrapper running the directory scan off the event loop."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    async def harvest(self, game_id: str, game_identifier: str, start_time: str, end_time: str) -> list[str]:
        loop = asyncio.get_running_loop()
        urls = await loop.run_in_executor(
            None,
            partial(collect_session_screenshots, self._root, game_id, game_identifier, start_time, end_time),
        )
        if urls:
            logger.info("found %d screenshot(s) for game %s", len(urls), game_id)
        return urls
