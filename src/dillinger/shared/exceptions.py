"""Hierarchical exception types for the Dillinger orchestration core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dillinger.streaming.graph import ValidationResult


class DillingerError(Exception):
    """Base exception for all Dillinger errors."""


# ── Container engine ────────────────────────────────────────────


class EngineError(DillingerError):
    """Transport or API failure talking to the container engine."""


# ── Sessions ────────────────────────────────────────────────────


class SessionError(DillingerError):
    """Session bookkeeping error."""


class SessionConflictError(SessionError):
    """A non-terminal session already exists for the game."""

    def __init__(self, game_id: str, session_id: str) -> None:
        super().__init__(f"game {game_id} already has an active session {session_id}")
        self.game_id = game_id
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    """No session with the given id is known."""


# ── Launch gating ───────────────────────────────────────────────


class LaunchBlockedError(DillingerError):
    """A streaming launch precondition was not met."""


class PairingRequiredError(LaunchBlockedError):
    """Moonlight clients are waiting for pairing approval."""

    def __init__(self, pending: list[Any]) -> None:
        super().__init__(f"{len(pending)} pairing request(s) pending approval")
        self.pending = pending


class GraphValidationError(LaunchBlockedError):
    """The streaming graph has blocking validation issues."""

    def __init__(self, result: ValidationResult) -> None:
        blocking = [issue.message for issue in result.issues if issue.severity == "blocking"]
        super().__init__(f"streaming graph validation failed: {'; '.join(blocking) or 'blocking'}")
        self.result = result


class SidecarNotReadyError(LaunchBlockedError):
    """The streaming sidecar did not report ready in time."""


# ── Streaming sidecar ───────────────────────────────────────────


class SidecarError(DillingerError):
    """Streaming sidecar runtime error."""


class SidecarStartupError(SidecarError):
    """A supervised child process failed to start."""


class StartupTimeoutError(SidecarStartupError):
    """A readiness signal did not appear within its wait budget."""


class PairingError(DillingerError):
    """Pairing request could not be completed."""
