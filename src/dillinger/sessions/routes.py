"""API routes for the session daemon."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import ValidationError

from dillinger.sessions.manager import SessionManager
from dillinger.shared.enums import LaunchMode
from dillinger.shared.exceptions import (
    EngineError,
    GraphValidationError,
    PairingError,
    PairingRequiredError,
    SessionConflictError,
    SessionNotFoundError,
    SidecarNotReadyError,
)
from dillinger.shared.models import EntityModel, Game, Platform
from dillinger.streaming.pairing import PIN_PATTERN, PairingGateway

router = APIRouter()


class LaunchRequest(EntityModel):
    mode: LaunchMode = LaunchMode.LOCAL
    platform_id: str | None = None


class InstallRequest(EntityModel):
    installer_path: str
    install_path: str
    platform_id: str | None = None


class PairRequest(EntityModel):
    pin: str
    pair_secret: str | None = None


def _manager(request: Request) -> SessionManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="session manager unavailable")
    return manager


def _pairing(request: Request) -> PairingGateway:
    pairing = getattr(request.app.state, "pairing", None)
    if pairing is None:
        raise HTTPException(status_code=503, detail="pairing gateway unavailable")
    return pairing


async def _load(request: Request, game_id: str, platform_id: str | None) -> tuple[Game, Platform]:
    store = _manager(request).store
    raw_game = await store.read_entity("games", game_id)
    if raw_game is None:
        raise HTTPException(status_code=404, detail=f"game {game_id} not found")
    try:
        game = Game.model_validate(raw_game)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=f"invalid game record: {exc}") from exc

    platform_id = platform_id or game.default_platform_id
    raw_platform = await store.read_entity("platforms", platform_id) if platform_id else None
    if raw_platform is None:
        raise HTTPException(status_code=404, detail=f"platform {platform_id} not found")
    try:
        platform = Platform.model_validate(raw_platform)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=f"invalid platform record: {exc}") from exc
    if not platform.is_active:
        raise HTTPException(status_code=400, detail=f"platform {platform.id} is disabled")
    return game, platform


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/launch/{game_id}")
async def launch_game(game_id: str, request: Request, body: LaunchRequest | None = None) -> dict[str, Any]:
    """Launch a game locally or through the streaming sidecar."""
    body = body or LaunchRequest()
    game, platform = await _load(request, game_id, body.platform_id)
    try:
        session = await _manager(request).launch(game, platform, body.mode)
    except SessionConflictError as exc:
        raise HTTPException(
            status_code=409, detail={"error": "conflict", "message": str(exc), "sessionId": exc.session_id}
        ) from exc
    except PairingRequiredError as exc:
        raise HTTPException(
            status_code=409,
            detail={
                "error": "pairing_required",
                "message": str(exc),
                "pending": [p.to_entity() for p in exc.pending],
            },
        ) from exc
    except GraphValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "graph_blocking", "message": str(exc), "validation": exc.result.to_entity()},
        ) from exc
    except SidecarNotReadyError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except EngineError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"success": session.status != "error", "session": session.to_entity()}


@router.post("/install/{game_id}")
async def install_game(game_id: str, body: InstallRequest, request: Request) -> dict[str, Any]:
    game, platform = await _load(request, game_id, body.platform_id)
    try:
        session = await _manager(request).install(game, platform, body.installer_path, body.install_path)
    except SessionConflictError as exc:
        raise HTTPException(
            status_code=409, detail={"error": "conflict", "message": str(exc), "sessionId": exc.session_id}
        ) from exc
    return {"success": session.status != "error", "session": session.to_entity()}


@router.get("/sessions")
async def list_sessions(
    request: Request,
    game_id: str | None = Query(default=None, alias="gameId"),
) -> dict[str, Any]:
    sessions = await _manager(request).list_sessions(game_id)
    return {"sessions": [s.to_entity() for s in sessions]}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request) -> dict[str, Any]:
    try:
        session = await _manager(request).get_session(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return session.to_entity()


@router.post("/sessions/{session_id}/stop")
async def stop_session(session_id: str, request: Request) -> dict[str, Any]:
    try:
        session = await _manager(request).stop(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True, "session": session.to_entity()}


@router.get("/sessions/{session_id}/logs")
async def session_logs(session_id: str, request: Request, tail: int = 100) -> dict[str, str]:
    try:
        logs = await _manager(request).session_logs(session_id, tail=tail)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except EngineError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"sessionId": session_id, "logs": logs}


@router.get("/streaming/pair")
async def pairing_status(request: Request) -> dict[str, Any]:
    """Paired Moonlight clients plus any requests waiting for a PIN."""
    pairing = _pairing(request)
    clients = await pairing.paired_clients()
    pending = await pairing.pending_pairings()
    return {
        "paired": bool(clients),
        "clientCount": len(clients),
        "clients": [{"id": c.client_id, "name": c.app_state_folder} for c in clients],
        "pending": [p.to_entity() for p in pending],
    }


@router.post("/streaming/pair")
async def accept_pairing(body: PairRequest, request: Request) -> dict[str, Any]:
    if not PIN_PATTERN.match(body.pin):
        raise HTTPException(status_code=400, detail="PIN must be 4 digits")

    pairing = _pairing(request)
    pair_secret = body.pair_secret
    if not pair_secret:
        pending = await pairing.pending_pairings()
        pair_secret = pending[0].pair_secret if pending else None
    if not pair_secret:
        raise HTTPException(
            status_code=400, detail="No pending pairing request found. Trigger pairing in Moonlight first."
        )

    try:
        accepted = await pairing.accept_pairing(pair_secret, body.pin)
    except PairingError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if not accepted:
        raise HTTPException(status_code=400, detail="Pairing failed")
    return {"success": True, "message": "Pairing successful!"}
