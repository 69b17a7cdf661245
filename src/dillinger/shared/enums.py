"""Domain enumerations used across all modules."""

from __future__ import annotations

from enum import Enum, unique


@unique
class SessionStatus(str, Enum):
    """Lifecycle states for a game session."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.STOPPED, SessionStatus.ERROR)


@unique
class SessionKind(str, Enum):
    """What the session container is doing for the game."""

    LAUNCH = "launch"
    INSTALL = "install"


@unique
class LaunchMode(str, Enum):
    """Where the game output is presented."""

    LOCAL = "local"
    STREAMING = "streaming"


@unique
class DisplayMethod(str, Enum):
    """How a session is presented to the player."""

    X11 = "x11"
    WAYLAND = "wayland"
    STREAMING_SIDECAR = "streaming-sidecar"


@unique
class SidecarMode(str, Enum):
    """Operating mode of the streaming sidecar, fixed for the process lifetime."""

    GAME = "game"
    TEST_STREAM = "test-stream"
    TEST_X11 = "test-x11"


@unique
class GpuType(str, Enum):
    """GPU vendor hint used to select encoder and driver environment."""

    AUTO = "auto"
    NVIDIA = "nvidia"
    AMD = "amd"
    INTEL = "intel"


@unique
class ValidationStatus(str, Enum):
    """Outcome of a streaming graph validation run."""

    OK = "ok"
    WARNING = "warning"
    BLOCKING = "blocking"
    UNKNOWN = "unknown"


@unique
class IssueSeverity(str, Enum):
    """Severity of a single streaming graph validation issue."""

    WARNING = "warning"
    BLOCKING = "blocking"


@unique
class DeviceCheck(str, Enum):
    """Result of probing a device node required by the streaming pipeline."""

    OK = "ok"
    MISSING = "missing"
    ERROR = "error"


@unique
class MediaType(str, Enum):
    """Payload carried by a streaming graph port."""

    VIDEO_RAW = "video/raw"
    VIDEO_ENCODED = "video/encoded"
    AUDIO_RAW = "audio/raw"
    AUDIO_ENCODED = "audio/encoded"
    INPUT_EVENTS = "input/events"
    CONTROL = "control"
    CLOCK = "clock"
    TIMING = "timing"
