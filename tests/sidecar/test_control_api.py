"""Tests for the sidecar's loopback control API."""

from __future__ import annotations

from dataclasses import dataclass, field
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from dillinger.shared.enums import GpuType, SidecarMode
from dillinger.shared.exceptions import PairingError
from dillinger.shared.models import PairedClientStatus, SidecarResolution, SidecarStatus
from dillinger.sidecar.control_api import ControlState, create_control_app


@dataclass
class FakeController:
    wolf: AsyncMock | None = None
    checks: dict[str, bool] = field(default_factory=lambda: {"compositor": True, "streamingServer": True})

    async def status(self) -> SidecarStatus:
        return SidecarStatus(
            mode=SidecarMode.GAME,
            profile="default",
            resolution=SidecarResolution(width=1920, height=1080, refresh_rate=60),
            gpu=GpuType.AMD,
            compositor_pid=41,
            streaming_server_pid=42,
            paired_clients=(PairedClientStatus(client_id="abc", app_state_folder="deck"),),
        )

    def readiness(self) -> dict[str, bool]:
        return self.checks


@pytest.fixture
def controller() -> FakeController:
    return FakeController(wolf=AsyncMock())


@pytest.fixture
async def client(controller: FakeController):
    app = create_control_app(controller)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


def test_fake_satisfies_protocol(controller: FakeController) -> None:
    assert isinstance(controller, ControlState)


class TestHealth:
    async def test_healthz(self, client: AsyncClient) -> None:
        resp = await client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    async def test_ready(self, client: AsyncClient) -> None:
        resp = await client.get("/readyz")
        assert resp.status_code == 200
        assert resp.json()["ready"] is True

    async def test_not_ready(self, client: AsyncClient, controller: FakeController) -> None:
        controller.checks = {"compositor": True, "streamingServer": False}

        resp = await client.get("/readyz")

        assert resp.status_code == 503
        assert resp.json() == {"ready": False, "checks": {"compositor": True, "streamingServer": False}}


async def test_status_snapshot(client: AsyncClient) -> None:
    body = (await client.get("/status")).json()

    assert body["status"] == "running"
    assert body["mode"] == "game"
    assert body["resolution"] == {"width": 1920, "height": 1080, "refreshRate": 60}
    assert body["streamingServerPid"] == 42
    assert body["testPatternPid"] is None
    assert body["pairedClients"] == [{"clientId": "abc", "appStateFolder": "deck"}]


class TestPairingProxy:
    async def test_pending_passthrough(self, client: AsyncClient, controller: FakeController) -> None:
        controller.wolf.pending_pairings.return_value = {"requests": [{"pair_secret": "s1"}]}

        resp = await client.get("/pairing/pending")

        assert resp.status_code == 200
        assert resp.json() == {"requests": [{"pair_secret": "s1"}]}

    async def test_clients_passthrough(self, client: AsyncClient, controller: FakeController) -> None:
        controller.wolf.paired_clients.return_value = {"success": True, "clients": []}
        assert (await client.get("/pairing/clients")).json() == {"success": True, "clients": []}

    async def test_accept(self, client: AsyncClient, controller: FakeController) -> None:
        controller.wolf.accept_pairing.return_value = {"success": True}

        resp = await client.post("/pairing/accept", json={"pair_secret": "s1", "pin": "1234"})

        assert resp.json() == {"success": True}
        controller.wolf.accept_pairing.assert_awaited_once_with("s1", "1234")

    async def test_accept_validates_body(self, client: AsyncClient) -> None:
        resp = await client.post("/pairing/accept", json={"pin": "1234"})
        assert resp.status_code == 422

    async def test_wolf_error_is_bad_gateway(self, client: AsyncClient, controller: FakeController) -> None:
        controller.wolf.pending_pairings.side_effect = PairingError("wolf socket unreachable")

        resp = await client.get("/pairing/pending")

        assert resp.status_code == 502
        assert "unreachable" in resp.json()["detail"]

    async def test_no_streaming_server(self, client: AsyncClient, controller: FakeController) -> None:
        controller.wolf = None
        assert (await client.get("/pairing/clients")).status_code == 503
