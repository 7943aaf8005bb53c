"""Tests for CoView configuration."""

from pathlib import Path

import pytest

from coview.config import CaptureTimings, CoViewConfig, load_config


class TestCoViewConfig:
    """Tests for CoViewConfig settings."""

    def test_defaults(self) -> None:
        config = CoViewConfig()
        assert config.server_url == "http://localhost:4000"
        assert config.room_code is None
        assert config.push_timeout == 10.0
        assert config.heartbeat_interval == 30.0
        assert config.reconnect_delays == [1.0, 2.0, 5.0, 10.0]
        assert config.capture.pointer_interval == 0.033
        assert config.capture.scroll_interval == 0.1
        assert config.browser.headless is False

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("COVIEW_SERVER_URL", "https://coview.example.com")
        monkeypatch.setenv("COVIEW_ROOM_CODE", "room42")

        config = CoViewConfig()

        assert config.server_url == "https://coview.example.com"
        assert config.room_code == "room42"

    def test_heartbeat_bounds(self) -> None:
        with pytest.raises(ValueError):
            CoViewConfig(heartbeat_interval=0)

    @pytest.mark.parametrize(
        ("server_url", "endpoint"),
        [
            ("http://localhost:4000", "ws://localhost:4000/socket/websocket"),
            ("https://coview.example.com/", "wss://coview.example.com/socket/websocket"),
        ],
    )
    def test_socket_endpoint(self, server_url: str, endpoint: str) -> None:
        assert CoViewConfig().socket_endpoint(server_url) == endpoint

    def test_socket_endpoint_uses_configured_server(self) -> None:
        config = CoViewConfig(server_url="https://coview.example.com")
        assert config.socket_endpoint() == "wss://coview.example.com/socket/websocket"

    def test_reconnect_after_caps_at_last_delay(self) -> None:
        config = CoViewConfig()
        assert [config.reconnect_after(n) for n in range(1, 7)] == [1.0, 2.0, 5.0, 10.0, 10.0, 10.0]

    def test_capture_timings_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            CaptureTimings(pointer_interval=0)


class TestLoadConfig:
    """Tests for loading configuration from TOML."""

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        config = load_config(tmp_path / "absent.toml")
        assert config.server_url == "http://localhost:4000"

    def test_sections_loaded(self, tmp_path: Path) -> None:
        config_file = tmp_path / "coview.toml"
        config_file.write_text(
            """[coview]
server_url = "https://coview.example.com"
room_code = "demo"
heartbeat_interval = 15

[capture]
structural_quiet = 0.5

[browser]
headless = true
viewport_width = 1440
"""
        )

        config = load_config(config_file)

        assert config.server_url == "https://coview.example.com"
        assert config.room_code == "demo"
        assert config.heartbeat_interval == 15
        assert config.capture.structural_quiet == 0.5
        assert config.capture.pointer_interval == 0.033
        assert config.browser.headless is True
        assert config.browser.viewport_width == 1440

    def test_environment_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "coview.toml"
        config_file.write_text('[coview]\nserver_url = "https://from-file.example.com"\nroom_code = "demo"\n')
        monkeypatch.setenv("COVIEW_SERVER_URL", "https://from-env.example.com")

        config = load_config(config_file)

        assert config.server_url == "https://from-env.example.com"
        assert config.room_code == "demo"
