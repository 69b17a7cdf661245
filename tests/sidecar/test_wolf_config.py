"""Tests for streaming-server config generation and paired-client preservation."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from dillinger.shared.enums import GpuType
from dillinger.shared.exceptions import PairingError, SidecarStartupError
from dillinger.sidecar.settings import SidecarSettings
from dillinger.sidecar.wolf import (
    IDENTIFIER_TOKEN,
    WolfApiClient,
    builtin_template,
    extract_paired_clients,
    generate_config,
    load_or_create_identifier,
    parse_paired_clients,
    read_paired_clients,
    render_config,
    start_wolf,
)

PAIRED_SECTION = (
    "[[paired_clients]]\n"
    'client_cert = """-----BEGIN CERTIFICATE-----\n'
    "MIIC  spaced   content\t\n"
    '-----END CERTIFICATE-----"""\n'
    'app_state_folder = "4211"\n'
    "\n"
    "[paired_clients.settings]\n"
    "run_uid = 1000\n"
    "\n"
    "[[paired_clients]]\n"
    'client_cert = "second"\n'
    'client_id = "77"\n'
)


class TestTemplate:
    def test_nvidia_uses_nvenc_first(self) -> None:
        template = builtin_template(GpuType.NVIDIA)
        assert template.index("nvh264enc") < template.index("openh264enc")
        assert "vah264enc" not in template

    @pytest.mark.parametrize("gpu", [GpuType.AMD, GpuType.INTEL, GpuType.AUTO])
    def test_vaapi_vendors(self, gpu: GpuType) -> None:
        template = builtin_template(gpu)
        assert template.index("vah264enc") < template.index("openh264enc")
        assert IDENTIFIER_TOKEN in template
        assert "paired_clients = []" in template


class TestExtract:
    def test_extracts_to_eof_verbatim(self) -> None:
        existing = 'uuid = "x"\npaired_clients = []\n\n' + PAIRED_SECTION
        assert extract_paired_clients(existing) == PAIRED_SECTION

    def test_only_line_start_matches(self) -> None:
        assert extract_paired_clients('title = "[[paired_clients]] in a string"\n') is None

    def test_no_section(self) -> None:
        assert extract_paired_clients('uuid = "x"\n') is None


class TestRender:
    def test_identifier_replaced(self) -> None:
        text = render_config(builtin_template(GpuType.AMD), "my-id")
        assert IDENTIFIER_TOKEN not in text
        assert 'uuid = "my-id"' in text
        assert "paired_clients = []" in text

    def test_preserved_section_byte_identical(self) -> None:
        text = render_config(builtin_template(GpuType.AMD), "my-id", preserved=PAIRED_SECTION)

        assert text.endswith("# Preserved paired clients from previous session\n" + PAIRED_SECTION)
        assert "paired_clients = []" not in text
        assert extract_paired_clients(text) == PAIRED_SECTION

    def test_test_mode_swaps_source(self) -> None:
        text = render_config(builtin_template(GpuType.AMD), "id", test_mode=True)
        assert 'source = "videotestsrc pattern=smpte is-live=true"' in text
        assert 'source = "waylanddisplaysrc"' not in text


class TestIdentifier:
    def test_created_once_and_reused(self, tmp_path: Path) -> None:
        first = load_or_create_identifier(tmp_path)
        second = load_or_create_identifier(tmp_path)

        assert first == second
        assert (tmp_path / ".uuid").read_text().strip() == first


class TestGenerateConfig:
    async def test_regeneration_keeps_pairings(self, sidecar_settings: SidecarSettings) -> None:
        cfg = Path(sidecar_settings.wolf_cfg_folder)

        first_path = await generate_config(sidecar_settings)
        first = first_path.read_text()
        assert IDENTIFIER_TOKEN not in first

        # the server appends pairings while running
        first_path.write_text(first + "\n" + PAIRED_SECTION)
        second = (await generate_config(sidecar_settings)).read_text()
        third = (await generate_config(sidecar_settings)).read_text()

        assert second.endswith(PAIRED_SECTION)
        assert third == second
        assert second.count("[[paired_clients]]") == 2
        identifier = (cfg / ".uuid").read_text().strip()
        assert f'uuid = "{identifier}"' in second

    async def test_external_template_wins(self, sidecar_settings: SidecarSettings, tmp_path: Path) -> None:
        template = tmp_path / "template.toml"
        template.write_text(f'uuid = "{IDENTIFIER_TOKEN}"\npaired_clients = []\n')
        settings = sidecar_settings.model_copy(update={"wolf_template_path": str(template)})

        text = (await generate_config(settings)).read_text()

        assert text.startswith('uuid = "')
        assert "gstreamer" not in text


class TestPairedClients:
    def test_parse(self) -> None:
        clients = parse_paired_clients('uuid = "x"\n' + PAIRED_SECTION)

        assert len(clients) == 2
        assert clients[0].app_state_folder == "4211"
        assert len(clients[0].client_id) == 16
        assert clients[1].client_id == "77"

    def test_parse_invalid(self) -> None:
        assert parse_paired_clients("[[[") == []

    async def test_read_missing_config(self, tmp_path: Path) -> None:
        assert await read_paired_clients(tmp_path) == []


async def test_start_wolf_requires_binary(sidecar_settings: SidecarSettings) -> None:
    settings = sidecar_settings.model_copy(update={"wolf_bin": "/nonexistent/wolf"})
    with pytest.raises(SidecarStartupError, match="wolf binary not found"):
        await start_wolf(settings, {})


class TestWolfApiClient:
    async def test_socket_errors_become_pairing_errors(self, tmp_path: Path) -> None:
        client = WolfApiClient(str(tmp_path / "missing.sock"), timeout=0.5)
        with pytest.raises(PairingError):
            await client.pending_pairings()

    async def test_uses_unix_transport(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: dict[str, object] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            return httpx.Response(200, json={"requests": []})

        def transport(uds: str) -> httpx.MockTransport:
            seen["uds"] = uds
            return httpx.MockTransport(handler)

        monkeypatch.setattr("dillinger.sidecar.wolf.httpx.AsyncHTTPTransport", transport)

        assert await WolfApiClient("/var/run/wolf/wolf.sock").pending_pairings() == {"requests": []}
        assert seen == {"uds": "/var/run/wolf/wolf.sock", "path": "/api/v1/pair/pending"}
