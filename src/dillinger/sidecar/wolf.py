"""Wolf streaming server: config generation, launch and control-socket client.

``config.toml`` is regenerated before every launch from a template carrying a
single ``REPLACE_AT_RUNTIME`` identifier token. Pairing state lives in the
``[[paired_clients]]`` tables at the end of the file; regeneration carries
that tail over byte-for-byte so Moonlight clients stay paired across
container restarts.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import tomllib
import uuid
from pathlib import Path
from typing import Any

import aiofiles  # type: ignore[import-untyped]
import httpx

from dillinger.shared.enums import GpuType
from dillinger.shared.exceptions import PairingError, SidecarStartupError
from dillinger.shared.models import PairedClient
from dillinger.sidecar.processes import ManagedProcess
from dillinger.sidecar.settings import SidecarSettings

logger = logging.getLogger(__name__)

IDENTIFIER_TOKEN = "REPLACE_AT_RUNTIME"
PAIRED_CLIENTS_HEADER = "[[paired_clients]]"
EMPTY_PAIRED_CLIENTS = "paired_clients = []"
PRESERVED_COMMENT = "# Preserved paired clients from previous session"
COMPOSITOR_SOURCE = 'source = "waylanddisplaysrc"'
TEST_SOURCE = 'source = "videotestsrc pattern=smpte is-live=true"'

_ENCODERS: dict[str, str] = {
    "nvcodec": """[[gstreamer.video.h264_encoders]]
plugin_name = "nvcodec"
check_elements = ["nvh264enc", "cudaconvertscale", "cudaupload"]
encoder_pipeline = \"\"\"
nvh264enc preset=low-latency-hq zerolatency=true gop-size=0 rc-mode=cbr-ld-hq bitrate={{bitrate}} aud=false !
h264parse ! video/x-h264, profile=main, stream-format=byte-stream
\"\"\"
""",
    "va": """[[gstreamer.video.h264_encoders]]
plugin_name = "va"
check_elements = ["vah264enc", "vapostproc"]
encoder_pipeline = \"\"\"
vah264enc aud=false b-frames=0 ref-frames=1 num-slices={{slices_per_frame}} bitrate={{bitrate}} cpb-size={{bitrate}} key-int-max=1024 rate-control=cqp target-usage=6 !
h264parse ! video/x-h264, profile=main, stream-format=byte-stream
\"\"\"
""",
    "x264": """[[gstreamer.video.h264_encoders]]
plugin_name = "openh264"
check_elements = ["openh264enc"]
encoder_pipeline = \"\"\"
openh264enc usage-type=screen bitrate={{bitrate}} complexity=low !
h264parse ! video/x-h264, profile=constrained-baseline, stream-format=byte-stream
\"\"\"
""",
}

_TEMPLATE_HEAD = f"""# Wolf configuration managed by the Dillinger streaming sidecar
config_version = 4
hostname = "Dillinger"
uuid = "{IDENTIFIER_TOKEN}"
{EMPTY_PAIRED_CLIENTS}

[[apps]]
title = "Dillinger"
start_virtual_compositor = false

[apps.runner]
type = "process"
run_cmd = "sh -c 'while :; do sleep 1; done'"

[gstreamer.video]
default_source = "waylanddisplaysrc"
{COMPOSITOR_SOURCE}

"""

_TEMPLATE_AUDIO = """[gstreamer.audio]
default_source = "pulsesrc device=game_audio.monitor"
default_audio_params = "queue max-size-buffers=3 leaky=downstream ! audiorate ! audioconvert"
default_opus_encoder = "opusenc bitrate={bitrate} bitrate-type=cbr frame-size={packet_duration} bandwidth=fullband audio-type=restricted-lowdelay max-payload-size=1400"
"""


def builtin_template(gpu: GpuType) -> str:
    """Template whose H.264 encoder list starts with the vendor's hardware encoder.

    Software H.264 is always listed last as the fallback.
    """
    order = ["nvcodec", "x264"] if gpu == GpuType.NVIDIA else ["va", "x264"]
    encoders = "\n".join(_ENCODERS[name] for name in order)
    return f"{_TEMPLATE_HEAD}{encoders}\n{_TEMPLATE_AUDIO}"


def extract_paired_clients(existing: str) -> str | None:
    """Return everything from the first ``[[paired_clients]]`` line to EOF, verbatim."""
    offset = 0
    for line in existing.splitlines(keepends=True):
        if line.startswith(PAIRED_CLIENTS_HEADER):
            return existing[offset:]
        offset += len(line)
    return None


def render_config(template: str, identifier: str, *, test_mode: bool = False, preserved: str | None = None) -> str:
    """Substitute the identifier and re-append a preserved paired-clients section."""
    text = template.replace(IDENTIFIER_TOKEN, identifier)
    if test_mode:
        text = text.replace(COMPOSITOR_SOURCE, TEST_SOURCE)
    if preserved:
        text = "".join(
            line for line in text.splitlines(keepends=True) if line.rstrip("\r\n") != EMPTY_PAIRED_CLIENTS
        )
        if not text.endswith("\n"):
            text += "\n"
        text += f"\n{PRESERVED_COMMENT}\n{preserved}"
    return text


def load_or_create_identifier(cfg_folder: str | Path) -> str:
    """Return the persisted server identifier, creating ``.uuid`` on first use."""
    path = Path(cfg_folder) / ".uuid"
    if path.is_file():
        identifier = path.read_text().strip()
        if identifier:
            return identifier
    identifier = str(uuid.uuid4())
    path.write_text(f"{identifier}\n")
    logger.info("generated wolf identifier %s", identifier)
    return identifier


async def generate_config(settings: SidecarSettings) -> Path:
    """Regenerate ``<cfg>/config.toml``, keeping any paired clients."""
    cfg = Path(settings.wolf_cfg_folder)
    cfg.mkdir(parents=True, exist_ok=True)
    config_path = cfg / "config.toml"

    template_path = Path(settings.wolf_template_path)
    if template_path.is_file():
        async with aiofiles.open(template_path) as f:
            template = await f.read()
    else:
        template = builtin_template(settings.gpu_type)

    preserved: str | None = None
    if config_path.is_file():
        async with aiofiles.open(config_path) as f:
            preserved = extract_paired_clients(await f.read())
        if preserved:
            logger.info("preserving paired clients from %s", config_path)

    identifier = load_or_create_identifier(cfg)
    if settings.test_mode:
        logger.warning("test mode: streaming videotestsrc instead of the compositor")
    content = render_config(template, identifier, test_mode=settings.test_mode, preserved=preserved)

    tmp_path = config_path.with_suffix(".toml.tmp")
    async with aiofiles.open(tmp_path, "w") as f:
        await f.write(content)
    os.replace(tmp_path, config_path)
    for path in (cfg, config_path, cfg / ".uuid"):
        try:
            os.chown(path, settings.puid, settings.pgid)
        except (PermissionError, FileNotFoundError):
            logger.debug("cannot chown %s", path)
    logger.info("wolf config ready at %s", config_path)
    return config_path


def parse_paired_clients(text: str) -> list[PairedClient]:
    """Paired clients recorded in a Wolf config file."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        logger.warning("cannot parse wolf config: %s", exc)
        return []
    clients = []
    for entry in data.get("paired_clients") or []:
        if not isinstance(entry, dict):
            continue
        client_id = entry.get("client_id")
        if not client_id:
            cert = str(entry.get("client_cert", ""))
            client_id = hashlib.sha256(cert.encode()).hexdigest()[:16]
        clients.append(PairedClient(client_id=str(client_id), app_state_folder=str(entry.get("app_state_folder", ""))))
    return clients


async def read_paired_clients(cfg_folder: str | Path) -> list[PairedClient]:
    path = Path(cfg_folder) / "config.toml"
    if not path.is_file():
        return []
    async with aiofiles.open(path) as f:
        return parse_paired_clients(await f.read())


async def start_wolf(
    settings: SidecarSettings,
    compositor_env: dict[str, str],
    *,
    extra_groups: list[int] | None = None,
) -> ManagedProcess:
    """Launch Wolf from its config folder and make sure it survives the settle period.

    Raises:
        SidecarStartupError: If the binary is missing or Wolf exits while settling.
    """
    if not os.access(settings.wolf_bin, os.X_OK):
        raise SidecarStartupError(f"wolf binary not found at {settings.wolf_bin}")

    process = ManagedProcess(
        "wolf",
        [settings.wolf_bin],
        env={
            **compositor_env,
            "WOLF_CFG_FOLDER": settings.wolf_cfg_folder,
            "WOLF_SOCKET_PATH": settings.wolf_socket_path,
            "PULSE_SERVER": f"unix:{settings.pulse_socket_path}",
            "GST_DEBUG": os.environ.get("GST_DEBUG", "2"),
        },
        cwd=settings.wolf_cfg_folder,
        user=settings.puid,
        group=settings.pgid,
        extra_groups=extra_groups,
    )
    await process.start()
    await asyncio.sleep(settings.settle_seconds)
    if not process.running:
        raise SidecarStartupError(f"wolf exited during startup with code {process.returncode}")
    logger.info("wolf running (pid %s), moonlight ports 47984/47989/47999/48010", process.pid)
    return process


class WolfApiClient:
    """Talk to Wolf's HTTP API over its Unix control socket."""

    def __init__(self, socket_path: str, *, timeout: float = 2.0) -> None:
        self._socket_path = socket_path
        self._timeout = timeout

    async def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        transport = httpx.AsyncHTTPTransport(uds=self._socket_path)
        try:
            async with httpx.AsyncClient(transport=transport, base_url="http://wolf", timeout=self._timeout) as client:
                resp = await client.request(method, path, json=body)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise PairingError(f"wolf returned {exc.response.status_code}: {exc.response.text[:200]}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise PairingError(f"wolf request {method} {path} failed: {exc!r}") from exc
        if not isinstance(data, dict):
            raise PairingError(f"unexpected wolf payload for {path}")
        return data

    async def pending_pairings(self) -> dict[str, Any]:
        return await self._request("GET", "/api/v1/pair/pending")

    async def paired_clients(self) -> dict[str, Any]:
        return await self._request("GET", "/api/v1/clients")

    async def accept_pairing(self, pair_secret: str, pin: str) -> dict[str, Any]:
        return await self._request("POST", "/api/v1/pair/client", {"pair_secret": pair_secret, "pin": pin})
