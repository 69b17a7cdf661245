"""Protocol interfaces for container engine dependency injection."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from dillinger.engine.spec import ContainerState, JobSpec


@runtime_checkable
class ContainerEngine(Protocol):
    """Protocol for the container engine used by sessions and pairing."""

    async def create(self, spec: JobSpec) -> str:
        """Create (but do not start) a container.

        Returns:
            Container id.

        Raises:
            EngineError: If the engine is unreachable or rejects the spec.
        """
        ...

    async def start(self, container_id: str) -> None: ...

    async def stop(self, container_id: str, timeout: int = 10) -> None: ...

    async def remove(self, container_id: str, force: bool = True) -> None: ...

    async def inspect(self, container_id: str) -> ContainerState | None:
        """Return container state, or ``None`` when the container no longer exists."""
        ...

    def logs(self, container_id: str, *, tail: int = 100, follow: bool = False) -> AsyncIterator[str]: ...

    async def wait_for_exit(self, container_id: str) -> int:
        """Block until the container is no longer running and return its exit code."""
        ...

    def pull(self, image: str) -> AsyncIterator[dict[str, Any]]: ...

    async def exec(self, container_id: str, argv: list[str]) -> tuple[int, str]: ...

    async def find_by_name(self, name: str) -> str | None: ...
