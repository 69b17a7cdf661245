"""Tests for PairingGateway transports and fail-open behaviour."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from dillinger.shared.exceptions import EngineError, PairingError
from dillinger.streaming.pairing import PairingGateway

CONTROL = "http://127.0.0.1:9999"
PENDING = {"requests": [{"pair_secret": "abc123", "client_ip": "192.168.1.20"}]}


@pytest.fixture
def gateway(mock_engine: AsyncMock) -> PairingGateway:
    mock_engine.find_by_name.return_value = "sidecar0000id"
    return PairingGateway(
        mock_engine,
        control_url=CONTROL,
        sidecar_name="dillinger-streaming-sidecar",
        wolf_socket_path="/var/run/wolf/wolf.sock",
    )


class TestPendingPairings:
    @respx.mock
    async def test_http_transport(self, gateway: PairingGateway, mock_engine: AsyncMock) -> None:
        respx.get(f"{CONTROL}/pairing/pending").mock(return_value=httpx.Response(200, json=PENDING))

        pending = await gateway.pending_pairings()

        assert [(p.pair_secret, p.client_ip) for p in pending] == [("abc123", "192.168.1.20")]
        mock_engine.exec.assert_not_awaited()

    @respx.mock
    async def test_bridge_matches_http(self, gateway: PairingGateway, mock_engine: AsyncMock) -> None:
        route = respx.get(f"{CONTROL}/pairing/pending")
        route.mock(return_value=httpx.Response(200, json=PENDING))
        via_http = await gateway.pending_pairings()

        route.mock(side_effect=httpx.ConnectError("connection refused"))
        mock_engine.exec.return_value = (0, json.dumps(PENDING))
        via_bridge = await gateway.pending_pairings()

        assert via_bridge == via_http
        container_id, argv = mock_engine.exec.call_args.args
        assert container_id == "sidecar0000id"
        assert argv[0] == "curl"
        assert "--unix-socket" in argv
        assert argv[argv.index("--unix-socket") + 1] == "/var/run/wolf/wolf.sock"
        assert argv[-1] == "http://localhost/api/v1/pair/pending"

    @respx.mock
    async def test_both_transports_down_fails_open(
        self, gateway: PairingGateway, mock_engine: AsyncMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        respx.get(f"{CONTROL}/pairing/pending").mock(side_effect=httpx.ConnectError("connection refused"))
        mock_engine.exec.side_effect = EngineError("engine unreachable")

        assert await gateway.pending_pairings() == []
        assert "assuming none pending" in caplog.text

    @respx.mock
    async def test_missing_sidecar_skips_bridge(self, gateway: PairingGateway, mock_engine: AsyncMock) -> None:
        respx.get(f"{CONTROL}/pairing/pending").mock(return_value=httpx.Response(503))
        mock_engine.find_by_name.return_value = None

        assert await gateway.pending_pairings() == []
        mock_engine.exec.assert_not_awaited()

    @respx.mock
    async def test_bridge_failure_exit_code(self, gateway: PairingGateway, mock_engine: AsyncMock) -> None:
        respx.get(f"{CONTROL}/pairing/pending").mock(side_effect=httpx.ReadTimeout("slow"))
        mock_engine.exec.return_value = (7, "")

        assert await gateway.pending_pairings() == []

    @respx.mock
    async def test_malformed_entries_skipped(self, gateway: PairingGateway) -> None:
        payload = {"requests": [{"client_ip": "1.2.3.4"}, {"pair_secret": "ok"}]}
        respx.get(f"{CONTROL}/pairing/pending").mock(return_value=httpx.Response(200, json=payload))

        pending = await gateway.pending_pairings()

        assert [p.pair_secret for p in pending] == ["ok"]


class TestPairedClients:
    @respx.mock
    async def test_clients(self, gateway: PairingGateway) -> None:
        payload = {"success": True, "clients": [{"client_id": "123", "app_state_folder": "deck"}]}
        respx.get(f"{CONTROL}/pairing/clients").mock(return_value=httpx.Response(200, json=payload))

        clients = await gateway.paired_clients()

        assert [(c.client_id, c.app_state_folder) for c in clients] == [("123", "deck")]


class TestAcceptPairing:
    @respx.mock
    async def test_accept_over_http(self, gateway: PairingGateway) -> None:
        route = respx.post(f"{CONTROL}/pairing/accept").mock(
            return_value=httpx.Response(200, json={"success": True})
        )

        assert await gateway.accept_pairing("abc123", "1234") is True
        assert json.loads(route.calls.last.request.content) == {"pair_secret": "abc123", "pin": "1234"}

    @respx.mock
    async def test_rejected(self, gateway: PairingGateway) -> None:
        respx.post(f"{CONTROL}/pairing/accept").mock(return_value=httpx.Response(200, json={"success": False}))

        assert await gateway.accept_pairing("abc123", "9999") is False

    async def test_bad_pin(self, gateway: PairingGateway) -> None:
        with pytest.raises(PairingError, match="4 digits"):
            await gateway.accept_pairing("abc123", "12345")

    @respx.mock
    async def test_accept_via_bridge(self, gateway: PairingGateway, mock_engine: AsyncMock) -> None:
        respx.post(f"{CONTROL}/pairing/accept").mock(side_effect=httpx.ConnectError("refused"))
        mock_engine.exec.return_value = (0, '{"success": true}')

        assert await gateway.accept_pairing("abc123", "1234") is True
        argv = mock_engine.exec.call_args.args[1]
        assert argv[argv.index("-d") + 1] == json.dumps({"pair_secret": "abc123", "pin": "1234"})

    @respx.mock
    async def test_unreachable_raises(self, gateway: PairingGateway, mock_engine: AsyncMock) -> None:
        respx.post(f"{CONTROL}/pairing/accept").mock(side_effect=httpx.ConnectError("refused"))
        mock_engine.exec.side_effect = EngineError("engine unreachable")

        with pytest.raises(PairingError, match="unreachable"):
            await gateway.accept_pairing("abc123", "1234")
