"""
Configuration models for the session store.

Provides a configuration tree that can be loaded from YAML/JSON files,
constructed programmatically, or overridden from environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

ENV_PREFIX = "SESSION_STORE_"


def _env_int(name: str) -> int | None:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str) -> float | None:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class WindowConfig:
    """
    Message window and eviction limits.

    ``max_window`` is the hard per-session bound on loaded messages outside
    of streaming; every other size must fit inside it.
    """

    max_window: int = 240  # Hard bound on loaded messages per session
    active_window: int = 180  # Initial load / trim target for the current session
    viewport_messages: int = 120  # Trim target for sessions switched away from
    page_size: int = 50  # Messages fetched per pagination request
    viewport_margin: int = 10  # Messages on each side of the anchor never trimmed
    max_materialized_sessions: int = 5  # Eviction ceiling

    def __post_init__(self) -> None:
        if self.max_window < 1:
            raise ValueError("max_window must be positive")
        for name in ("active_window", "viewport_messages"):
            if getattr(self, name) > self.max_window:
                raise ValueError(f"{name} cannot exceed max_window ({self.max_window})")
        if 2 * self.viewport_margin + 1 > self.max_window:
            raise ValueError("viewport_margin does not fit inside max_window")
        if self.page_size < 1:
            raise ValueError("page_size must be positive")
        if self.max_materialized_sessions < 1:
            raise ValueError("max_materialized_sessions must be positive")


@dataclass
class StreamingConfig:
    """Streaming lifecycle timeouts, in seconds."""

    quiescence_timeout: float = 2.0  # streaming -> cooldown without new parts
    completion_timeout: float = 10.0  # cooldown -> completed without a signal
    abort_prompt_duration: float = 3.0  # how long an abort confirmation stays armed


@dataclass
class UsageConfig:
    """Context usage polling for messages whose token counts arrive late."""

    poll_initial_delay: float = 2.0
    poll_interval: float = 1.0
    poll_max_attempts: int = 10


@dataclass
class AttachmentConfig:
    """Limits for attached files."""

    max_size_bytes: int = 10 * 1024 * 1024


@dataclass
class StorageConfig:
    """Where small selection state is persisted. ``None`` keeps it in memory."""

    path: Path | None = None


@dataclass
class BackendConfig:
    """Connection settings for the agent backend."""

    base_url: str = "http://127.0.0.1:4096"
    timeout: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class StoreConfig:
    """
    Main configuration for the session store.

    Example YAML:
        window:
          max_window: 240
          active_window: 180
          max_materialized_sessions: 5
        streaming:
          quiescence_timeout: 2.0
        storage:
          path: ~/.agent-session-store/state.db
        backend:
          base_url: http://127.0.0.1:4096
        agents:
          - name: build
            permission:
              edit: allow
          - name: plan
            tools:
              edit: false
    """

    window: WindowConfig = field(default_factory=WindowConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    attachments: AttachmentConfig = field(default_factory=AttachmentConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: list[dict[str, Any]] = field(default_factory=list)  # raw agent definitions
    default_agent: str | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreConfig:
        """Create config from a dictionary."""
        window = data.get("window", {})
        streaming = data.get("streaming", {})
        usage = data.get("usage", {})
        attachments = data.get("attachments", {})
        storage = data.get("storage", {})
        backend = data.get("backend", {})

        defaults = WindowConfig()
        return cls(
            window=WindowConfig(
                max_window=window.get("max_window", defaults.max_window),
                active_window=window.get("active_window", defaults.active_window),
                viewport_messages=window.get("viewport_messages", defaults.viewport_messages),
                page_size=window.get("page_size", defaults.page_size),
                viewport_margin=window.get("viewport_margin", defaults.viewport_margin),
                max_materialized_sessions=window.get(
                    "max_materialized_sessions", defaults.max_materialized_sessions
                ),
            ),
            streaming=StreamingConfig(
                quiescence_timeout=streaming.get("quiescence_timeout", 2.0),
                completion_timeout=streaming.get("completion_timeout", 10.0),
                abort_prompt_duration=streaming.get("abort_prompt_duration", 3.0),
            ),
            usage=UsageConfig(
                poll_initial_delay=usage.get("poll_initial_delay", 2.0),
                poll_interval=usage.get("poll_interval", 1.0),
                poll_max_attempts=usage.get("poll_max_attempts", 10),
            ),
            attachments=AttachmentConfig(
                max_size_bytes=attachments.get("max_size_bytes", 10 * 1024 * 1024),
            ),
            storage=StorageConfig(
                path=Path(storage["path"]).expanduser() if storage.get("path") else None,
            ),
            backend=BackendConfig(
                base_url=backend.get("base_url", "http://127.0.0.1:4096"),
                timeout=backend.get("timeout", 30.0),
                headers=dict(backend.get("headers", {})),
            ),
            agents=list(data.get("agents", [])),
            default_agent=data.get("default_agent"),
            log_level=data.get("log_level", "WARNING"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> StoreConfig:
        """Load config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_yaml_string(cls, content: str) -> StoreConfig:
        """Load config from a YAML string."""
        data = yaml.safe_load(content)
        return cls.from_dict(data or {})

    def apply_env(self) -> StoreConfig:
        """
        Apply ``SESSION_STORE_*`` environment overrides in place.

        Recognised variables: ``BACKEND_URL``, ``BACKEND_TIMEOUT``,
        ``STATE_PATH``, ``MAX_SESSIONS``, ``MAX_WINDOW``,
        ``QUIESCENCE_TIMEOUT``, ``LOG_LEVEL``, ``DEFAULT_AGENT``.
        """
        if url := os.environ.get(ENV_PREFIX + "BACKEND_URL"):
            self.backend.base_url = url
        if (timeout := _env_float("BACKEND_TIMEOUT")) is not None:
            self.backend.timeout = timeout
        if state_path := os.environ.get(ENV_PREFIX + "STATE_PATH"):
            self.storage.path = Path(state_path).expanduser()
        if (max_sessions := _env_int("MAX_SESSIONS")) is not None and max_sessions > 0:
            self.window.max_materialized_sessions = max_sessions
        if (max_window := _env_int("MAX_WINDOW")) is not None:
            self.window = WindowConfig(
                max_window=max_window,
                active_window=min(self.window.active_window, max_window),
                viewport_messages=min(self.window.viewport_messages, max_window),
                page_size=self.window.page_size,
                viewport_margin=min(self.window.viewport_margin, (max_window - 1) // 2),
                max_materialized_sessions=self.window.max_materialized_sessions,
            )
        if (quiescence := _env_float("QUIESCENCE_TIMEOUT")) is not None:
            self.streaming.quiescence_timeout = quiescence
        if level := os.environ.get(ENV_PREFIX + "LOG_LEVEL"):
            self.log_level = level.upper()
        if agent := os.environ.get(ENV_PREFIX + "DEFAULT_AGENT"):
            self.default_agent = agent
        return self

    @classmethod
    def from_env(cls, path: Path | None = None) -> StoreConfig:
        """Load config from *path* (if given) and apply environment overrides."""
        config = cls.from_yaml(path) if path is not None else cls()
        return config.apply_env()

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary."""
        return {
            "window": {
                "max_window": self.window.max_window,
                "active_window": self.window.active_window,
                "viewport_messages": self.window.viewport_messages,
                "page_size": self.window.page_size,
                "viewport_margin": self.window.viewport_margin,
                "max_materialized_sessions": self.window.max_materialized_sessions,
            },
            "streaming": {
                "quiescence_timeout": self.streaming.quiescence_timeout,
                "completion_timeout": self.streaming.completion_timeout,
                "abort_prompt_duration": self.streaming.abort_prompt_duration,
            },
            "usage": {
                "poll_initial_delay": self.usage.poll_initial_delay,
                "poll_interval": self.usage.poll_interval,
                "poll_max_attempts": self.usage.poll_max_attempts,
            },
            "attachments": {"max_size_bytes": self.attachments.max_size_bytes},
            "storage": {"path": str(self.storage.path) if self.storage.path else None},
            "backend": {
                "base_url": self.backend.base_url,
                "timeout": self.backend.timeout,
                "headers": dict(self.backend.headers),
            },
            "agents": list(self.agents),
            "default_agent": self.default_agent,
            "log_level": self.log_level,
        }
