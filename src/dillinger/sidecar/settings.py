"""Streaming sidecar configuration read from the container environment."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings

from dillinger.shared.enums import GpuType, SidecarMode


class SidecarSettings(BaseSettings):
    """Environment contract set by the host when it creates the sidecar container.

    Variables are unprefixed (``SIDECAR_MODE``, ``RESOLUTION_WIDTH``, ...).
    Validated once at process start; an invalid value aborts startup.
    """

    model_config = {"env_prefix": "", "frozen": True}

    # Mode and profile
    sidecar_mode: SidecarMode = SidecarMode.GAME
    sway_config_name: str = "default"
    idle_timeout_minutes: int = Field(default=15, ge=0)
    gpu_type: GpuType = GpuType.AUTO
    resolution_width: int = Field(default=1920, gt=0)
    resolution_height: int = Field(default=1080, gt=0)
    refresh_rate: int = Field(default=60, gt=0)

    # Unprivileged user owning every child process
    puid: int = 1000
    pgid: int = 1000
    uname: str = "gameuser"

    # Paths shared with the host and sibling containers
    wolf_cfg_folder: str = "/data/wolf"
    wolf_template_path: str = "/wolf/config.toml.template"
    wolf_bin: str = "/wolf/wolf"
    wolf_socket_path: str = "/var/run/wolf/wolf.sock"
    wayland_socket_path: str = "/run/dillinger/wayland-dillinger"
    pulse_socket_path: str = "/run/dillinger/pulse-socket"
    config_home: str = "/config"

    # Test modes
    test_pattern: str = "smpte"
    test_mode: bool = False
    display: str | None = None
    pulse_server: str | None = None

    # Control API
    control_host: str = "0.0.0.0"
    control_port: int = 9999

    # Timing
    idle_check_interval_seconds: float = Field(default=10.0, gt=0)
    socket_wait_seconds: float = Field(default=15.0, gt=0)
    settle_seconds: float = Field(default=3.0, ge=0)
    terminate_grace_seconds: float = Field(default=10.0, gt=0)

    @property
    def xdg_runtime_dir(self) -> str:
        return f"/run/user/{self.puid}"

    @property
    def sway_config_dir(self) -> str:
        return f"{self.config_home}/sway-configs"

    @property
    def resolution(self) -> str:
        return f"{self.resolution_width}x{self.resolution_height}"

    @property
    def streams(self) -> bool:
        """Whether this mode runs the compositor and streaming server."""
        return self.sidecar_mode != SidecarMode.TEST_X11


def get_sidecar_settings() -> SidecarSettings:
    return SidecarSettings()
