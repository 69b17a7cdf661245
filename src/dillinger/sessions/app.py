"""FastAPI application factory for the session daemon."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from dillinger.config import Settings, get_settings
from dillinger.engine.client import DockerEngineClient
from dillinger.sessions.manager import SessionManager
from dillinger.sessions.routes import router
from dillinger.sessions.screenshots import ScreenshotHarvester
from dillinger.shared.storage import JsonEntityStore
from dillinger.streaming.graph import GraphStoreService, StreamingGraphValidator
from dillinger.streaming.pairing import PairingGateway
from dillinger.streaming.sidecar import SidecarLauncher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Stop live sessions when the daemon shuts down."""
    try:
        yield
    finally:
        manager: SessionManager | None = getattr(app.state, "manager", None)
        if manager is not None:
            await manager.shutdown()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Nothing here talks to the container engine; the Docker client connects on
    first use.
    """
    settings = settings or get_settings()
    engine = DockerEngineClient(poll_interval=settings.monitor_poll_seconds)
    store = JsonEntityStore(settings.root)
    pairing = PairingGateway(
        engine,
        control_url=settings.sidecar_control_url,
        sidecar_name=settings.sidecar_container_name,
        wolf_socket_path=settings.wolf_socket_path,
        http_timeout=settings.pairing_http_timeout_seconds,
        exec_timeout=settings.pairing_exec_timeout_seconds,
    )
    manager = SessionManager(
        engine,
        store,
        settings,
        validator=StreamingGraphValidator(GraphStoreService(settings.streaming_graph_path)),
        sidecar=SidecarLauncher(engine, settings),
        pairing=pairing,
        screenshots=ScreenshotHarvester(settings.root),
    )

    app = FastAPI(title="Dillinger Sessions", lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = manager
    app.state.pairing = pairing
    app.include_router(router)
    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port, log_level="info")


if __name__ == "__main__":
    main()
