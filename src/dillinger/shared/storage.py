"""File-backed JSON entity store (``<root>/storage/<type>/<id>.json``)."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import aiofiles  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)


@runtime_checkable
class EntityStore(Protocol):
    """Narrow read/write-by-id contract the orchestration core depends on."""

    async def read_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None: ...

    async def write_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> None: ...

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]]: ...


class JsonEntityStore:
    """Store entities as pretty-printed JSON files, one per id.

    Implements the ``EntityStore`` protocol. Writes go to a temp file and are
    moved into place so readers never observe a half-written entity.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root) / "storage"

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, entity_type: str, entity_id: str) -> Path:
        safe_id = _sanitize_id(entity_id)
        return self._root / entity_type / f"{safe_id}.json"

    async def read_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        path = self._path(entity_type, entity_id)
        if not path.is_file():
            return None
        async with aiofiles.open(path) as f:
            raw = await f.read()
        try:
            data: dict[str, Any] = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("skip malformed %s entity %s", entity_type, entity_id)
            return None
        return data

    async def write_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> None:
        path = self._path(entity_type, entity_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(data, indent=2))
        os.replace(tmp_path, path)
        logger.debug("wrote %s entity %s", entity_type, entity_id)

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]]:
        directory = self._root / entity_type
        if not directory.is_dir():
            return []
        entities: list[dict[str, Any]] = []
        for path in sorted(directory.glob("*.json")):
            data = await self.read_entity(entity_type, path.stem)
            if data is not None:
                entities.append(data)
        return entities


def _sanitize_id(entity_id: str) -> str:
    """Keep ids usable as file names."""
    cleaned = "".join(c for c in entity_id if c.isalnum() or c in "-_.").strip(".")
    if not cleaned:
        raise ValueError(f"invalid entity id: {entity_id!r}")
    return cleaned
