"""
Agent definitions registry.

Holds the agents declared by the backend configuration together with the
currently selected agent. Permission defaults and selection fallbacks read
from here.

Example:
    from agent_session_store.agents import AgentRegistry

    registry = AgentRegistry()
    registry.load_from_dicts([
        {"name": "build", "permission": {"edit": "allow"}},
        {"name": "plan", "tools": {"edit": False}},
    ])

    registry.get("build").edit_permission  # "allow"
    registry.current_agent_name            # "build"
"""

from __future__ import annotations

from typing import Any

from agent_session_store.logging import get_logger
from agent_session_store.models import AgentDefinition

logger = get_logger("agents")


class AgentRegistry:
    """
    Registry of agent definitions.

    The current agent falls back to ``default_agent`` and then to the first
    registered primary agent when nothing was selected explicitly.
    """

    def __init__(self, default_agent: str | None = None) -> None:
        self._agents: dict[str, AgentDefinition] = {}
        self._current: str | None = None
        self.default_agent = default_agent

    def register(self, agent: AgentDefinition) -> None:
        """Register an agent. Overwrites any existing entry with the same name."""
        self._agents[agent.name] = agent

    def unregister(self, name: str) -> bool:
        """Remove an agent by name. Returns True if it existed."""
        removed = self._agents.pop(name, None) is not None
        if removed and self._current == name:
            self._current = None
        return removed

    def get(self, name: str | None) -> AgentDefinition | None:
        """Get an agent by exact name."""
        if not name:
            return None
        return self._agents.get(name)

    def all(self) -> list[AgentDefinition]:
        """All registered agents, in registration order."""
        return list(self._agents.values())

    def primary(self) -> list[AgentDefinition]:
        """Agents selectable as a session's main agent."""
        return [a for a in self._agents.values() if a.mode in ("primary", "all")]

    def load_from_dicts(self, entries: list[dict[str, Any]]) -> int:
        """
        Register agents from raw config dictionaries.

        Entries without a name are skipped. Returns the number registered.
        """
        count = 0
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("name"):
                logger.debug("Skipping agent entry without a name: %r", entry)
                continue
            self.register(AgentDefinition.from_dict(entry))
            count += 1
        return count

    def set_current_agent(self, name: str | None) -> None:
        """Select the globally current agent. Unknown names are ignored."""
        if name is not None and name not in self._agents:
            logger.debug("Ignoring unknown agent selection: %s", name)
            return
        self._current = name

    @property
    def current_agent_name(self) -> str | None:
        if self._current:
            return self._current
        if self.default_agent and self.default_agent in self._agents:
            return self.default_agent
        primaries = self.primary()
        return primaries[0].name if primaries else None

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, name: object) -> bool:
        return name in self._agents
