"""Immutable value objects exchanged with the container engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType


@dataclass(frozen=True, slots=True)
class Mount:
    """Bind mount or named volume attached to a container."""

    source: str
    target: str
    readonly: bool = False

    @property
    def is_bind(self) -> bool:
        return self.source.startswith("/")


@dataclass(frozen=True, slots=True)
class PortMapping:
    """Container port published on the host."""

    container_port: int
    host_port: int | None = None
    protocol: str = "tcp"
    host_ip: str | None = None

    @property
    def key(self) -> str:
        return f"{self.container_port}/{self.protocol}"


@dataclass(frozen=True, slots=True)
class DeviceMapping:
    """Host device node passed through to the container."""

    host_path: str
    container_path: str | None = None
    permissions: str = "rwm"

    def as_docker(self) -> str:
        return f"{self.host_path}:{self.container_path or self.host_path}:{self.permissions}"


@dataclass(frozen=True, slots=True)
class JobSpec:
    """Launch request for one container. Built once, never mutated."""

    image: str
    name: str
    command: tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    mounts: tuple[Mount, ...] = ()
    ports: tuple[PortMapping, ...] = ()
    devices: tuple[DeviceMapping, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    network_mode: str | None = None
    ipc_mode: str | None = None
    tty: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "command", tuple(self.command))
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))
        object.__setattr__(self, "mounts", tuple(self.mounts))
        object.__setattr__(self, "ports", tuple(self.ports))
        object.__setattr__(self, "devices", tuple(self.devices))


@dataclass(frozen=True, slots=True)
class ContainerState:
    """Subset of ``docker inspect`` the orchestrator relies on."""

    running: bool
    exit_code: int | None
    started_at: str | None
    status: str = ""
