"""Tests for configuration models."""

from pathlib import Path
from textwrap import dedent

import pytest

from agent_session_store.config import StoreConfig, WindowConfig


class TestWindowConfig:
    """Tests for WindowConfig validation."""

    def test_defaults_are_consistent(self) -> None:
        """Defaults should fit inside the hard bound."""
        config = WindowConfig()

        assert config.max_window == 240
        assert config.active_window <= config.max_window
        assert config.viewport_messages <= config.max_window
        assert config.max_materialized_sessions == 5

    def test_active_window_cannot_exceed_bound(self) -> None:
        with pytest.raises(ValueError, match="active_window"):
            WindowConfig(max_window=100, active_window=150)

    def test_margin_must_fit(self) -> None:
        with pytest.raises(ValueError, match="viewport_margin"):
            WindowConfig(max_window=20, active_window=10, viewport_messages=10, viewport_margin=10)

    def test_positive_limits(self) -> None:
        with pytest.raises(ValueError):
            WindowConfig(page_size=0)
        with pytest.raises(ValueError):
            WindowConfig(max_materialized_sessions=0)


class TestStoreConfig:
    """Tests for StoreConfig loading."""

    def test_default_values(self) -> None:
        """Should have sensible defaults."""
        config = StoreConfig()

        assert config.streaming.quiescence_timeout == 2.0
        assert config.streaming.completion_timeout == 10.0
        assert config.usage.poll_max_attempts == 10
        assert config.attachments.max_size_bytes == 10 * 1024 * 1024
        assert config.storage.path is None
        assert config.backend.base_url == "http://127.0.0.1:4096"
        assert config.agents == []

    def test_from_yaml_string(self) -> None:
        """Should parse nested sections."""
        config = StoreConfig.from_yaml_string(
            dedent("""
                window:
                  max_window: 300
                  max_materialized_sessions: 8
                streaming:
                  quiescence_timeout: 1.5
                backend:
                  base_url: http://localhost:9000
                  headers:
                    Authorization: Bearer token
                agents:
                  - name: build
                    permission:
                      edit: allow
                default_agent: build
            """)
        )

        assert config.window.max_window == 300
        assert config.window.max_materialized_sessions == 8
        assert config.window.active_window == 180
        assert config.streaming.quiescence_timeout == 1.5
        assert config.backend.headers == {"Authorization": "Bearer token"}
        assert config.agents[0]["name"] == "build"
        assert config.default_agent == "build"

    def test_from_yaml_file(self, tmp_path: Path) -> None:
        """Should load from a file and expand the storage path."""
        path = tmp_path / "store.yaml"
        path.write_text("storage:\n  path: ~/state.db\n")

        config = StoreConfig.from_yaml(path)

        assert config.storage.path == Path("~/state.db").expanduser()

    def test_empty_yaml(self) -> None:
        """An empty document yields defaults."""
        config = StoreConfig.from_yaml_string("")
        assert config.window.max_window == 240

    def test_invalid_window_rejected(self) -> None:
        with pytest.raises(ValueError):
            StoreConfig.from_dict({"window": {"max_window": 10}})

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """SESSION_STORE_* variables override file values."""
        monkeypatch.setenv("SESSION_STORE_BACKEND_URL", "http://remote:4096")
        monkeypatch.setenv("SESSION_STORE_MAX_SESSIONS", "2")
        monkeypatch.setenv("SESSION_STORE_QUIESCENCE_TIMEOUT", "0.5")
        monkeypatch.setenv("SESSION_STORE_LOG_LEVEL", "debug")
        monkeypatch.setenv("SESSION_STORE_STATE_PATH", str(tmp_path / "state.db"))

        config = StoreConfig.from_env()

        assert config.backend.base_url == "http://remote:4096"
        assert config.window.max_materialized_sessions == 2
        assert config.streaming.quiescence_timeout == 0.5
        assert config.log_level == "DEBUG"
        assert config.storage.path == tmp_path / "state.db"

    def test_env_max_window_shrinks_targets(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SESSION_STORE_MAX_WINDOW", "100")

        config = StoreConfig().apply_env()

        assert config.window.max_window == 100
        assert config.window.active_window == 100
        assert config.window.viewport_messages == 100

    def test_invalid_env_values_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SESSION_STORE_MAX_SESSIONS", "many")
        monkeypatch.setenv("SESSION_STORE_BACKEND_TIMEOUT", "")

        config = StoreConfig().apply_env()

        assert config.window.max_materialized_sessions == 5
        assert config.backend.timeout == 30.0

    def test_to_dict_roundtrip(self) -> None:
        """to_dict output should load back into an equal config."""
        config = StoreConfig.from_dict(
            {"window": {"page_size": 25}, "usage": {"poll_max_attempts": 3}}
        )

        restored = StoreConfig.from_dict(config.to_dict())

        assert restored == config
