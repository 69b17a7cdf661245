"""Centralised configuration via Pydantic Settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings

from dillinger.shared.enums import GpuType


class Settings(BaseSettings):
    """Host daemon configuration loaded from environment variables."""

    model_config = {"env_prefix": "DILLINGER_", "frozen": True}

    # Data root (JSON entity store, emulator homes, streaming graph)
    root: str = "/data"

    # Host API
    api_host: str = "0.0.0.0"
    api_port: int = 3010

    # Runner containers
    container_prefix: str = "dillinger-session"
    saves_volume_prefix: str = "dillinger_saves"
    installers_volume: str = "dillinger_installers"
    network: str = ""
    puid: int = 1000
    pgid: int = 1000
    x11_display: str = ":0"
    x11_socket_dir: str = "/tmp/.X11-unix"
    gpu_device: str = "/dev/dri"

    # Container lifecycle
    stop_timeout_seconds: int = 10
    monitor_poll_seconds: float = 2.0
    failed_log_tail: int = 50

    # Streaming sidecar
    sidecar_image: str = "ghcr.io/thrane20/dillinger/streaming-sidecar:latest"
    sidecar_container_name: str = "dillinger-streaming-sidecar"
    sidecar_runtime_volume: str = "dillinger_streaming_run"
    sidecar_wolf_volume: str = "dillinger_wolf_config"
    sidecar_control_port: int = 9999
    sidecar_ready_timeout_seconds: int = 60
    sidecar_profile: str = "default"
    sidecar_idle_timeout_minutes: int = 15
    sidecar_gpu_type: GpuType = GpuType.AUTO
    sidecar_width: int = 1920
    sidecar_height: int = 1080
    sidecar_refresh_rate: int = 60
    sidecar_uinput_device: str = "/dev/uinput"

    # Pairing gateway
    pairing_http_timeout_seconds: float = 0.8
    pairing_exec_timeout_seconds: float = 2.0
    wolf_socket_path: str = "/var/run/wolf/wolf.sock"

    @property
    def sidecar_control_url(self) -> str:
        return f"http://127.0.0.1:{self.sidecar_control_port}"

    @property
    def streaming_graph_path(self) -> str:
        return f"{self.root.rstrip('/')}/storage/streaming-graph.json"


def get_settings() -> Settings:
    """Factory; tests build Settings directly."""
    return Settings()
