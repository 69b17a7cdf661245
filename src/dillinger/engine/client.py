"""Container engine client implementation using Docker SDK."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from functools import partial
from typing import Any, TypeVar, cast

import docker
from docker.errors import DockerException, NotFound
from docker.types import Mount as DockerMount

from dillinger.engine.spec import ContainerState, JobSpec
from dillinger.shared.exceptions import EngineError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exit code reported when a waited-on container vanished (e.g. auto-removed)
EXIT_CODE_UNKNOWN = -1

_EXHAUSTED = object()


class DockerEngineClient:
    """Docker-based implementation of the ContainerEngine protocol.

    Every SDK call is blocking, so it runs in the default executor. Engine
    failures are re-raised as ``EngineError`` with the engine's own message;
    "not found" is treated as already-absent wherever cleanup is involved.
    """

    def __init__(self, *, poll_interval: float = 2.0, base_url: str | None = None) -> None:
        self._poll_interval = poll_interval
        self._base_url = base_url
        self._docker: Any | None = None

    def _client(self) -> Any:
        if self._docker is None:
            try:
                if self._base_url:
                    self._docker = cast(Any, docker).DockerClient(base_url=self._base_url)
                else:
                    self._docker = cast(Any, docker).from_env()
            except DockerException as exc:
                raise EngineError(f"container engine unreachable: {exc}") from exc
        return self._docker

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    async def _get(self, container_id: str) -> Any:
        return await self._call(self._client().containers.get, container_id)

    async def create(self, spec: JobSpec) -> str:
        """Create a container from a job spec.

        Args:
            spec: Immutable launch request.

        Returns:
            Id of the created container.

        Raises:
            EngineError: If the engine is unreachable or rejects the request.
        """
        kwargs: dict[str, Any] = {
            "name": spec.name,
            "environment": dict(spec.environment),
            "labels": dict(spec.labels),
            "mounts": [
                DockerMount(
                    target=m.target,
                    source=m.source,
                    type="bind" if m.is_bind else "volume",
                    read_only=m.readonly,
                )
                for m in spec.mounts
            ],
            "devices": [d.as_docker() for d in spec.devices],
            "ports": {
                p.key: (p.host_ip, p.host_port) if p.host_ip else p.host_port for p in spec.ports
            },
            "tty": spec.tty,
        }
        if spec.command:
            kwargs["command"] = list(spec.command)
        if spec.network_mode:
            kwargs["network_mode"] = spec.network_mode
        if spec.ipc_mode:
            kwargs["ipc_mode"] = spec.ipc_mode

        try:
            container = await self._call(self._client().containers.create, spec.image, **kwargs)
        except (DockerException, OSError) as exc:
            raise EngineError(f"failed to create container {spec.name}: {exc}") from exc
        logger.info("created container %s (%s) from %s", spec.name, container.id[:12], spec.image)
        return str(container.id)

    async def start(self, container_id: str) -> None:
        try:
            container = await self._get(container_id)
            await self._call(container.start)
        except (DockerException, OSError) as exc:
            raise EngineError(f"failed to start container {container_id[:12]}: {exc}") from exc
        logger.info("started container %s", container_id[:12])

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        try:
            container = await self._get(container_id)
            await self._call(container.stop, timeout=timeout)
            logger.info("stopped container %s", container_id[:12])
        except NotFound:
            logger.info("container %s already gone", container_id[:12])
        except (DockerException, OSError) as exc:
            raise EngineError(f"failed to stop container {container_id[:12]}: {exc}") from exc

    async def remove(self, container_id: str, force: bool = True) -> None:
        try:
            container = await self._get(container_id)
            await self._call(container.remove, force=force)
            logger.info("removed container %s", container_id[:12])
        except NotFound:
            logger.info("container %s already removed", container_id[:12])
        except (DockerException, OSError) as exc:
            raise EngineError(f"failed to remove container {container_id[:12]}: {exc}") from exc

    async def inspect(self, container_id: str) -> ContainerState | None:
        try:
            container = await self._get(container_id)
            await self._call(container.reload)
        except NotFound:
            return None
        except (DockerException, OSError) as exc:
            raise EngineError(f"failed to inspect container {container_id[:12]}: {exc}") from exc

        state = container.attrs.get("State", {})
        return ContainerState(
            running=bool(state.get("Running", False)),
            exit_code=state.get("ExitCode"),
            started_at=state.get("StartedAt"),
            status=str(state.get("Status", "")),
        )

    async def wait_for_exit(self, container_id: str) -> int:
        """Poll until the container stops running.

        Returns:
            Container exit code, or ``EXIT_CODE_UNKNOWN`` if it disappeared.
        """
        logger.info("monitoring container %s", container_id[:12])
        while True:
            state = await self.inspect(container_id)
            if state is None:
                logger.warning("container %s vanished while waiting for exit", container_id[:12])
                return EXIT_CODE_UNKNOWN
            if not state.running and state.status not in ("created", "restarting"):
                exit_code = state.exit_code if state.exit_code is not None else EXIT_CODE_UNKNOWN
                logger.info("container %s exited with code %d", container_id[:12], exit_code)
                return exit_code
            await asyncio.sleep(self._poll_interval)

    async def logs(self, container_id: str, *, tail: int = 100, follow: bool = False) -> AsyncIterator[str]:
        """Yield decoded log chunks; with ``follow`` keep streaming until the container exits."""
        try:
            container = await self._get(container_id)
            stream = await self._call(
                container.logs,
                stdout=True,
                stderr=True,
                tail=tail,
                stream=True,
                follow=follow,
            )
        except NotFound:
            return
        except (DockerException, OSError) as exc:
            raise EngineError(f"failed to read logs of {container_id[:12]}: {exc}") from exc

        iterator = iter(stream)
        while True:
            chunk = await self._call(next, iterator, _EXHAUSTED)
            if chunk is _EXHAUSTED:
                return
            yield cast(bytes, chunk).decode("utf-8", errors="replace")

    async def pull(self, image: str) -> AsyncIterator[dict[str, Any]]:
        """Pull an image, yielding the engine's decoded progress events."""
        repository, _, tag = image.rpartition(":") if ":" in image.split("/")[-1] else (image, "", "")
        try:
            stream = await self._call(
                self._client().api.pull,
                repository,
                tag=tag or "latest",
                stream=True,
                decode=True,
            )
        except (DockerException, OSError) as exc:
            raise EngineError(f"failed to pull {image}: {exc}") from exc

        iterator = iter(stream)
        while True:
            event = await self._call(next, iterator, _EXHAUSTED)
            if event is _EXHAUSTED:
                logger.info("pulled image %s", image)
                return
            yield cast(dict[str, Any], event)

    async def exec(self, container_id: str, argv: list[str]) -> tuple[int, str]:
        """Run a command inside a running container and return (exit code, output)."""
        try:
            container = await self._get(container_id)
            result = await self._call(container.exec_run, argv)
        except (DockerException, OSError) as exc:
            raise EngineError(f"exec in {container_id[:12]} failed: {exc}") from exc
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return int(result.exit_code or 0), output

    async def find_by_name(self, name: str) -> str | None:
        """Return the id of the container with exactly this name, if any."""
        try:
            containers = await self._call(self._client().containers.list, all=True, filters={"name": name})
        except (DockerException, OSError) as exc:
            raise EngineError(f"failed to list containers: {exc}") from exc
        for container in containers:
            if container.name == name:
                return str(container.id)
        return None
