"""Frozen Pydantic domain models shared by all modules.

Entities are stored as camelCase JSON because the web UI reads the session
files verbatim; attribute access stays snake_case.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dillinger.shared.enums import DisplayMethod, GpuType, LaunchMode, SessionKind, SessionStatus, SidecarMode


def utc_now() -> datetime:
    """Return timezone-aware UTC timestamps for model defaults."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return utc_now().isoformat()


class EntityModel(BaseModel):
    """Base for immutable entities persisted through the JSON entity store."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def to_entity(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SessionErrorEntry(EntityModel):
    """One entry of a session's append-only error log."""

    timestamp: str = Field(default_factory=iso_now)
    message: str


class SessionDisplay(EntityModel):
    method: DisplayMethod = DisplayMethod.X11


class SessionPerformance(EntityModel):
    start_time: str | None = None
    end_time: str | None = None


class GameSession(EntityModel):
    """One launch or install attempt for a game."""

    id: str
    game_id: str
    platform_id: str
    kind: SessionKind = SessionKind.LAUNCH
    mode: LaunchMode = LaunchMode.LOCAL
    status: SessionStatus = SessionStatus.STARTING
    container_id: str | None = None
    display: SessionDisplay = Field(default_factory=SessionDisplay)
    performance: SessionPerformance = Field(default_factory=SessionPerformance)
    errors: tuple[SessionErrorEntry, ...] = ()
    screenshots: tuple[str, ...] = ()
    created: str = Field(default_factory=iso_now)
    updated: str = Field(default_factory=iso_now)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_error(self, message: str) -> GameSession:
        """Return a copy with ``message`` appended to the error log."""
        entry = SessionErrorEntry(message=message)
        return self.model_copy(update={"errors": (*self.errors, entry), "updated": iso_now()})


class Game(EntityModel):
    """Subset of the library's game entity needed to build a container."""

    id: str
    title: str
    slug: str | None = None
    default_platform_id: str | None = None
    file_path: str | None = None
    install_path: str | None = None
    launch_command: tuple[str, ...] = ()
    environment: dict[str, str] = Field(default_factory=dict)

    @property
    def identifier(self) -> str:
        return self.slug or self.id


class Platform(EntityModel):
    """Runner platform a game is launched on (wine, linux-native, retroarch, ...)."""

    id: str
    name: str
    type: str
    container_image: str
    is_active: bool = True
    display_method: DisplayMethod = DisplayMethod.X11


# ── Streaming server wire models ────────────────────────────────


class PendingPairing(EntityModel):
    """A Moonlight client waiting for PIN approval.

    Parsed from the streaming server's snake_case payload; serialized camelCase.
    """

    pair_secret: str
    client_ip: str | None = None


class PairedClient(BaseModel):
    """A client the streaming server has already paired with."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    client_id: str
    app_state_folder: str = ""


# ── Sidecar status ──────────────────────────────────────────────


class SidecarResolution(EntityModel):
    width: int
    height: int
    refresh_rate: int


class PairedClientStatus(EntityModel):
    client_id: str
    app_state_folder: str = ""


class SidecarStatus(EntityModel):
    """Snapshot served by the sidecar control API."""

    mode: SidecarMode
    profile: str
    resolution: SidecarResolution
    gpu: GpuType
    compositor_pid: int | None = None
    streaming_server_pid: int | None = None
    test_pattern_pid: int | None = None
    paired_clients: tuple[PairedClientStatus, ...] = ()
