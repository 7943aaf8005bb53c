"""Configuration for the CoView relay and viewer."""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CaptureTimings(BaseModel):
    """Rate limits and quiet periods for the capture pipeline (seconds)."""

    pointer_interval: float = Field(default=0.033, gt=0, description="Min gap between cursor events")
    scroll_interval: float = Field(default=0.1, gt=0, description="Min gap between scroll events")
    visibility_quiet: float = Field(default=0.1, gt=0, description="Quiet period for show/hide changes")
    structural_quiet: float = Field(default=0.25, gt=0, description="Quiet period for structural changes")
    navigation_settle: float = Field(default=0.1, ge=0, description="Delay before a post-navigation snapshot")


class BrowserSettings(BaseModel):
    """Settings for the Playwright-driven leader browser."""

    headless: bool = Field(default=False, description="Run the leader browser without a window")
    viewport_width: int = Field(default=1280, ge=320)
    viewport_height: int = Field(default=720, ge=240)


class CoViewConfig(BaseSettings):
    """Configuration for a CoView leader or viewer."""

    model_config = SettingsConfigDict(
        env_prefix="COVIEW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server_url: str = Field(
        default="http://localhost:4000",
        description="CoView server URL (http/https, converted to ws/wss)",
    )
    room_code: str | None = Field(
        default=None,
        description="Room (session) code to share into or view",
    )

    # Transport
    push_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds before an unanswered push times out",
    )
    heartbeat_interval: float = Field(
        default=30.0,
        ge=1,
        le=300,
        description="Heartbeat interval in seconds",
    )
    reconnect_delays: list[float] = Field(
        default_factory=lambda: [1.0, 2.0, 5.0, 10.0],
        min_length=1,
        description="Reconnect backoff schedule; the last entry is the ceiling",
    )

    # Relay
    inject_settle: float = Field(
        default=0.1,
        ge=0,
        description="Delay after injecting the capture pipeline before starting it",
    )
    state_file: Path = Field(
        default_factory=lambda: Path.home() / ".config" / "coview" / "session.toml",
        description="Where the last session is remembered",
    )

    capture: CaptureTimings = Field(default_factory=CaptureTimings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    def socket_endpoint(self, server_url: str | None = None) -> str:
        """Build the channel socket endpoint for a server URL."""
        url = (server_url or self.server_url).rstrip("/")
        url = url.replace("https://", "wss://").replace("http://", "ws://")
        return url + "/socket/websocket"

    def reconnect_after(self, tries: int) -> float:
        """Backoff delay for the given (1-based) reconnect attempt."""
        delays = self.reconnect_delays
        if tries < 1:
            return delays[0]
        return delays[min(tries, len(delays)) - 1]


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "coview" / "coview.toml"


def load_config(config_file: str | Path | None = None) -> CoViewConfig:
    """Load configuration from config file, with environment variable overrides.

    Priority (highest to lowest):
    1. Environment variables (COVIEW_*)
    2. Provided config file
    3. Default config file (~/.config/coview/coview.toml)
    4. Default values

    Args:
        config_file: Optional path to a config file

    Returns:
        Loaded configuration
    """
    import tomllib

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_PATH

    file_config: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
            file_config = data.get("coview", {})

            if "capture" in data:
                file_config["capture"] = CaptureTimings(**data["capture"])

            if "browser" in data:
                file_config["browser"] = BrowserSettings(**data["browser"])

    # Environment variables override file values
    for key in list(file_config):
        if f"COVIEW_{key.upper()}" in os.environ:
            del file_config[key]

    return CoViewConfig(**file_config)
