"""
Explicit runtime context.

Everything a store needs from its environment is bundled into a
:class:`StoreContext` and passed to constructors. Only entry points build
one from configuration, through :func:`default_context`.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from agent_session_store.agents import AgentRegistry
from agent_session_store.config import StoreConfig
from agent_session_store.http_client import HttpBackendClient
from agent_session_store.storage import StateStorage
from agent_session_store.transport import BackendClient


@dataclass
class StoreContext:
    """Configuration, collaborators and clock shared by all store slices."""

    backend: BackendClient
    config: StoreConfig = field(default_factory=StoreConfig)
    agents: AgentRegistry = field(default_factory=AgentRegistry)
    storage: StateStorage = field(default_factory=StateStorage)
    clock: Callable[[], float] = time.monotonic


_default: StoreContext | None = None


def build_context(config: StoreConfig, backend: BackendClient | None = None) -> StoreContext:
    """Build a context from configuration."""
    agents = AgentRegistry(default_agent=config.default_agent)
    agents.load_from_dicts(config.agents)
    return StoreContext(
        backend=backend or HttpBackendClient(config.backend),
        config=config,
        agents=agents,
        storage=StateStorage(config.storage.path),
    )


def default_context(config_path: Path | None = None) -> StoreContext:
    """
    The process-wide context, created on first use from ``config_path`` and
    ``SESSION_STORE_*`` environment overrides.
    """
    global _default
    if _default is None:
        _default = build_context(StoreConfig.from_env(config_path))
    return _default


def reset_default_context() -> None:
    global _default
    _default = None
