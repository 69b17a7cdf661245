"""Moonlight pairing queries against the streaming sidecar.

Two transports carry the same streaming-server payload:

1. HTTP to the sidecar control API on its loopback port (fast path).
2. ``curl --unix-socket`` executed inside the sidecar container against the
   streaming server's control socket (fallback).

Read queries fail open: when both transports fail the gateway reports no
pairing information (an empty list) and logs a warning. A pending pairing can
therefore go unnoticed while the sidecar is unreachable.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

import httpx
from pydantic import ValidationError

from dillinger.engine.interfaces import ContainerEngine
from dillinger.shared.exceptions import EngineError, PairingError
from dillinger.shared.models import PairedClient, PendingPairing

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^\d{4}$")

# Control API path -> streaming server API path
PENDING_PATHS = ("/pairing/pending", "/api/v1/pair/pending")
CLIENTS_PATHS = ("/pairing/clients", "/api/v1/clients")
ACCEPT_PATHS = ("/pairing/accept", "/api/v1/pair/client")


class PairingGateway:
    """Query and approve Moonlight pairings through the sidecar."""

    def __init__(
        self,
        engine: ContainerEngine,
        *,
        control_url: str,
        sidecar_name: str,
        wolf_socket_path: str = "/var/run/wolf/wolf.sock",
        http_timeout: float = 0.8,
        exec_timeout: float = 2.0,
    ) -> None:
        self._engine = engine
        self._control_url = control_url.rstrip("/")
        self._sidecar_name = sidecar_name
        self._wolf_socket_path = wolf_socket_path
        self._http_timeout = http_timeout
        self._exec_timeout = exec_timeout

    async def pending_pairings(self) -> list[PendingPairing]:
        """Return clients waiting for a PIN, or ``[]`` if no transport answered."""
        payload = await self._query(*PENDING_PATHS)
        if payload is None:
            logger.warning("pairing status unavailable over http and socket bridge; assuming none pending")
            return []
        return _parse_list(payload, "requests", PendingPairing)

    async def paired_clients(self) -> list[PairedClient]:
        """Return already-paired clients, or ``[]`` if no transport answered."""
        payload = await self._query(*CLIENTS_PATHS)
        if payload is None:
            logger.warning("paired client list unavailable over http and socket bridge")
            return []
        return _parse_list(payload, "clients", PairedClient)

    async def accept_pairing(self, pair_secret: str, pin: str) -> bool:
        """Submit the PIN shown by Moonlight for a pending pairing.

        Returns:
            ``True`` if the streaming server accepted the PIN.

        Raises:
            PairingError: If the PIN is malformed or neither transport answered.
        """
        if not PIN_PATTERN.match(pin):
            raise PairingError("PIN must be 4 digits")
        body = {"pair_secret": pair_secret, "pin": pin}

        payload = await self._http("POST", ACCEPT_PATHS[0], body)
        if payload is None:
            payload = await self._bridge("POST", ACCEPT_PATHS[1], body)
        if payload is None:
            raise PairingError("streaming sidecar unreachable")

        accepted = bool(payload.get("success"))
        logger.info("pairing %s for secret %s", "accepted" if accepted else "rejected", pair_secret[:8])
        return accepted

    async def _query(self, http_path: str, socket_path: str) -> dict[str, Any] | None:
        payload = await self._http("GET", http_path)
        if payload is not None:
            return payload
        return await self._bridge("GET", socket_path)

    async def _http(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any] | None:
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                resp = await client.request(method, f"{self._control_url}{path}", json=body)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("control api %s %s failed: %r", method, path, exc)
            return None
        return data if isinstance(data, dict) else None

    async def _bridge(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any] | None:
        argv = [
            "curl",
            "-s",
            "--fail",
            "--max-time",
            str(int(self._exec_timeout) or 1),
            "--unix-socket",
            self._wolf_socket_path,
            "-X",
            method,
        ]
        if body is not None:
            argv += ["-H", "Content-Type: application/json", "-d", json.dumps(body)]
        argv.append(f"http://localhost{path}")

        try:
            container_id = await self._engine.find_by_name(self._sidecar_name)
            if container_id is None:
                logger.debug("socket bridge skipped: sidecar %s not found", self._sidecar_name)
                return None
            exit_code, output = await asyncio.wait_for(
                self._engine.exec(container_id, argv), timeout=self._exec_timeout
            )
        except (EngineError, asyncio.TimeoutError) as exc:
            logger.debug("socket bridge %s %s failed: %r", method, path, exc)
            return None

        if exit_code != 0:
            logger.debug("socket bridge %s %s exited with %d", method, path, exit_code)
            return None
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            logger.debug("socket bridge %s %s returned non-json output", method, path)
            return None
        return data if isinstance(data, dict) else None


def _parse_list(payload: dict[str, Any], key: str, model: Any) -> list[Any]:
    items = payload.get(key)
    if not isinstance(items, list):
        return []
    parsed = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError:
            logger.warning("skip malformed %s entry: %r", key, item)
    return parsed
