"""Loopback control API served by the streaming sidecar."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dillinger.shared.exceptions import PairingError
from dillinger.shared.models import SidecarStatus
from dillinger.sidecar.wolf import WolfApiClient

router = APIRouter()


@runtime_checkable
class ControlState(Protocol):
    """What the control API needs from the running controller."""

    wolf: WolfApiClient | None

    async def status(self) -> SidecarStatus: ...

    def readiness(self) -> dict[str, bool]: ...


class AcceptRequest(BaseModel):
    pair_secret: str
    pin: str


def _state(request: Request) -> ControlState:
    return request.app.state.controller


def _wolf(request: Request) -> WolfApiClient:
    wolf = _state(request).wolf
    if wolf is None:
        raise HTTPException(status_code=503, detail="streaming server not running in this mode")
    return wolf


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    checks = _state(request).readiness()
    ready = all(checks.values())
    return JSONResponse(status_code=200 if ready else 503, content={"ready": ready, "checks": checks})


@router.get("/status")
async def status(request: Request) -> dict[str, Any]:
    snapshot = await _state(request).status()
    return {"status": "running", **snapshot.to_entity()}


@router.get("/pairing/pending")
async def pending(request: Request) -> dict[str, Any]:
    try:
        return await _wolf(request).pending_pairings()
    except PairingError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.get("/pairing/clients")
async def clients(request: Request) -> dict[str, Any]:
    try:
        return await _wolf(request).paired_clients()
    except PairingError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.post("/pairing/accept")
async def accept(body: AcceptRequest, request: Request) -> dict[str, Any]:
    try:
        return await _wolf(request).accept_pairing(body.pair_secret, body.pin)
    except PairingError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


def create_control_app(controller: ControlState) -> FastAPI:
    app = FastAPI(title="dillinger-sidecar", docs_url=None, redoc_url=None)
    app.state.controller = controller
    app.include_router(router)
    return app
