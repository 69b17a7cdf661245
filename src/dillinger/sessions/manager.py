"""Session lifecycle: launch, monitor and stop game containers."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Callable
from typing import Protocol

from dillinger.config import Settings
from dillinger.engine.client import EXIT_CODE_UNKNOWN
from dillinger.engine.interfaces import ContainerEngine
from dillinger.engine.spec import JobSpec
from dillinger.sessions.jobs import build_game_job, build_install_job
from dillinger.sessions.screenshots import ScreenshotHarvester
from dillinger.shared.enums import DisplayMethod, LaunchMode, SessionKind, SessionStatus
from dillinger.shared.exceptions import (
    EngineError,
    GraphValidationError,
    PairingRequiredError,
    SessionConflictError,
    SessionNotFoundError,
)
from dillinger.shared.models import (
    Game,
    GameSession,
    PendingPairing,
    Platform,
    SessionDisplay,
    SessionPerformance,
    iso_now,
)
from dillinger.shared.storage import EntityStore
from dillinger.streaming.graph import ValidationResult

logger = logging.getLogger(__name__)

SESSION_ENTITY = "sessions"

_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.STARTING: frozenset({SessionStatus.RUNNING, SessionStatus.STOPPING, SessionStatus.ERROR}),
    SessionStatus.RUNNING: frozenset({SessionStatus.STOPPING, SessionStatus.STOPPED, SessionStatus.ERROR}),
    SessionStatus.STOPPING: frozenset({SessionStatus.STOPPED}),
}


class GraphValidator(Protocol):
    async def validate(self) -> ValidationResult: ...


class SidecarReadiness(Protocol):
    async def ensure_ready(self) -> str: ...


class PendingPairingSource(Protocol):
    async def pending_pairings(self) -> list[PendingPairing]: ...


class SessionManager:
    """Own every session record and the tasks acting on it.

    Each session has at most one create task and one monitor task. Record
    updates are serialized per session; the first terminal transition wins and
    later ones are no-ops.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        store: EntityStore,
        settings: Settings,
        *,
        validator: GraphValidator | None = None,
        sidecar: SidecarReadiness | None = None,
        pairing: PendingPairingSource | None = None,
        screenshots: ScreenshotHarvester | None = None,
        device_exists: Callable[[str], bool] = os.path.exists,
    ) -> None:
        self.engine = engine
        self.store = store
        self._settings = settings
        self._validator = validator
        self._sidecar = sidecar
        self._pairing = pairing
        self._screenshots = screenshots
        self._device_exists = device_exists

        self._sessions: dict[str, GameSession] = {}
        self._games: dict[str, Game] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._register_lock = asyncio.Lock()
        self._create_tasks: dict[str, asyncio.Task[GameSession]] = {}
        self._monitors: dict[str, asyncio.Task[None]] = {}

    # ── Public operations ───────────────────────────────────────

    async def launch(self, game: Game, platform: Platform, mode: LaunchMode = LaunchMode.LOCAL) -> GameSession:
        """Start a game container and return the resulting session snapshot.

        Raises:
            SessionConflictError: The game already has a non-terminal session.
            GraphValidationError: Streaming graph validation is blocking.
            SidecarNotReadyError: The streaming sidecar did not become ready.
            PairingRequiredError: Moonlight clients are waiting for a PIN.
            EngineError: The sidecar container could not be started.
        """
        self._check_conflict(game.id)
        if mode == LaunchMode.STREAMING:
            await self._preflight_streaming()
            display = DisplayMethod.STREAMING_SIDECAR
        else:
            display = platform.display_method

        task = await self._register(
            game,
            platform,
            SessionKind.LAUNCH,
            mode,
            display,
            lambda s: build_game_job(self._settings, s, game, platform, device_exists=self._device_exists),
        )
        # A cancelled caller must not interrupt the create; stop() tears it down instead
        return await asyncio.shield(task)

    async def install(self, game: Game, platform: Platform, installer_path: str, install_path: str) -> GameSession:
        """Run an installer container for ``game`` as an install session."""
        self._check_conflict(game.id)
        task = await self._register(
            game,
            platform,
            SessionKind.INSTALL,
            LaunchMode.LOCAL,
            platform.display_method,
            lambda s: build_install_job(
                self._settings, s, game, platform, installer_path, install_path, device_exists=self._device_exists
            ),
        )
        # A cancelled caller must not interrupt the create; stop() tears it down instead
        return await asyncio.shield(task)

    async def stop(self, session_id: str) -> GameSession:
        """Stop a session on a best-effort basis; it always ends ``stopped``."""
        session = await self.get_session(session_id)
        if session.is_terminal:
            return session
        if session_id not in self._sessions:
            # left over from a previous daemon run
            self._sessions[session_id] = session
            self._locks[session_id] = asyncio.Lock()

        session = await self._transition(session_id, SessionStatus.STOPPING)
        if session.status != SessionStatus.STOPPING:
            return session

        create_task = self._create_tasks.get(session_id)
        if create_task is not None:
            logger.info("session %s: waiting for in-flight create before stopping", session_id)
            await asyncio.wait({create_task})

        container_id = self._sessions[session_id].container_id
        if container_id:
            try:
                await self.engine.stop(container_id, timeout=self._settings.stop_timeout_seconds)
            except EngineError as exc:
                logger.warning("session %s: stop of %s failed: %s", session_id, container_id[:12], exc)
            try:
                await self.engine.remove(container_id, force=True)
            except EngineError as exc:
                logger.warning("session %s: remove of %s failed: %s", session_id, container_id[:12], exc)

        return await self._transition(session_id, SessionStatus.STOPPED, end_time=iso_now())

    async def get_session(self, session_id: str) -> GameSession:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        data = await self.store.read_entity(SESSION_ENTITY, session_id)
        if data is None:
            raise SessionNotFoundError(f"session {session_id} not found")
        return GameSession.model_validate(data)

    async def list_sessions(self, game_id: str | None = None) -> list[GameSession]:
        sessions = {s.id: s for s in map(GameSession.model_validate, await self.store.list_entities(SESSION_ENTITY))}
        sessions.update(self._sessions)
        result = [s for s in sessions.values() if game_id is None or s.game_id == game_id]
        return sorted(result, key=lambda s: s.created, reverse=True)

    async def session_logs(self, session_id: str, tail: int = 100) -> str:
        session = await self.get_session(session_id)
        if not session.container_id:
            return ""
        return "".join([chunk async for chunk in self.engine.logs(session.container_id, tail=tail)])

    async def shutdown(self) -> None:
        """Stop every live session and cancel remaining monitors."""
        live = [s.id for s in self._sessions.values() if not s.is_terminal]
        if live:
            logger.info("stopping %d live session(s)", len(live))
        results = await asyncio.gather(*(self.stop(sid) for sid in live), return_exceptions=True)
        for sid, result in zip(live, results):
            if isinstance(result, BaseException):
                logger.error("session %s: stop during shutdown failed: %s", sid, result)

        monitors = list(self._monitors.values())
        for task in monitors:
            task.cancel()
        await asyncio.gather(*monitors, return_exceptions=True)

    # ── Launch steps ────────────────────────────────────────────

    def _active_session(self, game_id: str) -> GameSession | None:
        return next((s for s in self._sessions.values() if s.game_id == game_id and not s.is_terminal), None)

    def _check_conflict(self, game_id: str) -> None:
        active = self._active_session(game_id)
        if active is not None:
            raise SessionConflictError(game_id, active.id)

    async def _preflight_streaming(self) -> None:
        if self._validator is not None:
            result = await self._validator.validate()
            if result.is_blocking:
                raise GraphValidationError(result)
        if self._sidecar is not None:
            await self._sidecar.ensure_ready()
        if self._pairing is not None:
            pending = await self._pairing.pending_pairings()
            if pending:
                raise PairingRequiredError(pending)

    async def _register(
        self,
        game: Game,
        platform: Platform,
        kind: SessionKind,
        mode: LaunchMode,
        display: DisplayMethod,
        build_job: Callable[[GameSession], JobSpec],
    ) -> asyncio.Task[GameSession]:
        """Register a session and schedule its create task under one lock.

        A session visible to stop() always has its create task registered.
        """
        async with self._register_lock:
            self._check_conflict(game.id)
            session = GameSession(
                id=str(uuid.uuid4()),
                game_id=game.id,
                platform_id=platform.id,
                kind=kind,
                mode=mode,
                display=SessionDisplay(method=display),
                performance=SessionPerformance(start_time=iso_now()),
            )
            spec = build_job(session)
            self._sessions[session.id] = session
            self._games[session.id] = game
            self._locks[session.id] = asyncio.Lock()
            task = asyncio.create_task(self._create_container(session.id, spec))
            self._create_tasks[session.id] = task
            task.add_done_callback(lambda _: self._create_tasks.pop(session.id, None))
        logger.info("session %s: %s %s (%s) registered", session.id, kind.value, game.id, mode.value)
        return task

    async def _create_container(self, session_id: str, spec: JobSpec) -> GameSession:
        async with self._locks[session_id]:
            await self._persist(self._sessions[session_id])
        if self._sessions[session_id].status != SessionStatus.STARTING:
            logger.info("session %s: stopped before create, no container made", session_id)
            return self._sessions[session_id]

        try:
            container_id = await self.engine.create(spec)
        except EngineError as exc:
            logger.error("session %s: create failed: %s", session_id, exc)
            return await self._transition(session_id, SessionStatus.ERROR, error=str(exc), end_time=iso_now())

        session = await self._update(session_id, container_id=container_id)
        if session.is_terminal:
            await self._discard(session_id, container_id)
            return session
        if session.status != SessionStatus.STARTING:
            # stop() is waiting on this task and tears the container down
            return session

        try:
            await self.engine.start(container_id)
        except EngineError as exc:
            logger.error("session %s: start failed: %s", session_id, exc)
            await self._discard(session_id, container_id)
            return await self._transition(session_id, SessionStatus.ERROR, error=str(exc), end_time=iso_now())

        session = await self._transition(session_id, SessionStatus.RUNNING, start_time=iso_now())
        if session.status == SessionStatus.RUNNING:
            self._start_monitor(session_id, container_id)
        return session

    async def _discard(self, session_id: str, container_id: str) -> None:
        try:
            await self.engine.remove(container_id, force=True)
        except EngineError as exc:
            logger.warning("session %s: cleanup of %s failed: %s", session_id, container_id[:12], exc)

    # ── Monitor ─────────────────────────────────────────────────

    def _start_monitor(self, session_id: str, container_id: str) -> None:
        if session_id in self._monitors:
            return
        task = asyncio.create_task(self._monitor(session_id, container_id))
        self._monitors[session_id] = task
        task.add_done_callback(lambda _: self._monitors.pop(session_id, None))

    async def _monitor(self, session_id: str, container_id: str) -> None:
        try:
            exit_code = await self.engine.wait_for_exit(container_id)
        except EngineError as exc:
            logger.error("session %s: lost track of %s: %s", session_id, container_id[:12], exc)
            await self._transition(
                session_id, SessionStatus.ERROR, error=f"Container monitor failed: {exc}", end_time=iso_now()
            )
            return

        stopping = self._sessions[session_id].status == SessionStatus.STOPPING
        if exit_code == 0 or stopping:
            session = await self._transition(session_id, SessionStatus.STOPPED, end_time=iso_now())
        else:
            await self._log_tail(session_id, container_id)
            message = (
                "Container disappeared before its exit code was read"
                if exit_code == EXIT_CODE_UNKNOWN
                else f"Container exited with code {exit_code}"
            )
            session = await self._transition(session_id, SessionStatus.ERROR, error=message, end_time=iso_now())
        logger.info("session %s: container exited (%d), session %s", session_id, exit_code, session.status.value)

        await self._harvest_screenshots(session_id)

    async def _log_tail(self, session_id: str, container_id: str) -> None:
        try:
            lines = "".join([c async for c in self.engine.logs(container_id, tail=self._settings.failed_log_tail)])
        except EngineError as exc:
            logger.warning("session %s: could not read logs: %s", session_id, exc)
            return
        if lines.strip():
            logger.error("session %s: last log lines of %s:\n%s", session_id, container_id[:12], lines.rstrip())

    async def _harvest_screenshots(self, session_id: str) -> None:
        game = self._games.get(session_id)
        if self._screenshots is None or game is None:
            return
        session = self._sessions[session_id]
        start, end = session.performance.start_time, session.performance.end_time or iso_now()
        if start is None:
            return
        try:
            urls = await self._screenshots.harvest(game.id, game.identifier, start, end)
        except Exception as exc:
            logger.warning("session %s: screenshot harvest failed: %s", session_id, exc)
            return
        if urls:
            await self._update(session_id, screenshots=tuple(urls))

    # ── Record updates ──────────────────────────────────────────

    async def _persist(self, session: GameSession) -> None:
        await self.store.write_entity(SESSION_ENTITY, session.id, session.to_entity())

    async def _update(self, session_id: str, **fields: object) -> GameSession:
        async with self._locks[session_id]:
            session = self._sessions[session_id].model_copy(update={**fields, "updated": iso_now()})
            self._sessions[session_id] = session
            await self._persist(session)
            return session

    async def _transition(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        error: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> GameSession:
        """Move a session to ``status`` if the state machine allows it.

        Disallowed transitions, including any transition out of a terminal
        state, leave the record untouched and return it as is.
        """
        async with self._locks[session_id]:
            current = self._sessions[session_id]
            if status not in _TRANSITIONS.get(current.status, frozenset()):
                logger.debug("session %s: ignore %s -> %s", session_id, current.status.value, status.value)
                return current

            performance = current.performance
            if start_time is not None:
                performance = performance.model_copy(update={"start_time": start_time})
            if end_time is not None:
                performance = performance.model_copy(update={"end_time": end_time})
            session = current.model_copy(update={"status": status, "performance": performance, "updated": iso_now()})
            if error is not None:
                session = session.with_error(error)

            self._sessions[session_id] = session
            await self._persist(session)
            logger.info("session %s: %s -> %s", session_id, current.status.value, status.value)
            return session
