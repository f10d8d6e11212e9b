"""
Per-session model and agent selections.

Tracks which model a session uses, which agent it runs under, which model
each agent last used in the session, and the agent currently driving each
session. Selections for sessions created elsewhere can be reconstructed
from their message history.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from agent_session_store.events import STATE_CHANGED, EventBus, StateChangedEvent
from agent_session_store.logging import get_logger
from agent_session_store.models import AgentDefinition, Message, ModelSelection

if TYPE_CHECKING:
    from agent_session_store.agents import AgentRegistry

logger = get_logger("selections")

# Agent assumed for model-bearing messages nothing else could attribute.
FALLBACK_AGENT = "build"


class SelectionStore:
    """Selection state keyed by session id."""

    def __init__(self, agents: AgentRegistry | None = None) -> None:
        self.agents = agents
        self.events = EventBus()
        self._session_models: dict[str, ModelSelection] = {}
        self._session_agents: dict[str, str] = {}
        self._agent_models: dict[str, dict[str, ModelSelection]] = {}
        self._current_agent: dict[str, str] = {}

    def _changed(self, session_id: str | None, *fields: str) -> None:
        self.events.emit_sync(
            STATE_CHANGED,
            StateChangedEvent(slice="selections", session_id=session_id, fields=fields),
        )

    # ------------------------------------------------------------------
    # Session model / agent
    # ------------------------------------------------------------------

    def save_session_model_selection(self, session_id: str, provider_id: str, model_id: str) -> None:
        self._session_models[session_id] = ModelSelection(provider_id, model_id)
        self._changed(session_id, "session_models")

    def get_session_model_selection(self, session_id: str) -> ModelSelection | None:
        return self._session_models.get(session_id)

    def save_session_agent_selection(self, session_id: str, agent_name: str) -> None:
        self._session_agents[session_id] = agent_name
        self._changed(session_id, "session_agents")

    def get_session_agent_selection(self, session_id: str) -> str | None:
        return self._session_agents.get(session_id)

    def save_agent_model_for_session(
        self, session_id: str, agent_name: str, provider_id: str, model_id: str
    ) -> None:
        self._agent_models.setdefault(session_id, {})[agent_name] = ModelSelection(
            provider_id, model_id
        )
        self._changed(session_id, "agent_models")

    def get_agent_model_for_session(self, session_id: str, agent_name: str) -> ModelSelection | None:
        return self._agent_models.get(session_id, {}).get(agent_name)

    def set_current_agent(self, session_id: str, agent_name: str | None) -> None:
        if agent_name:
            self._current_agent[session_id] = agent_name
        else:
            self._current_agent.pop(session_id, None)
        self._changed(session_id, "current_agent")

    def get_current_agent(self, session_id: str) -> str | None:
        return self._current_agent.get(session_id)

    def resolve_agent_for_session(self, session_id: str) -> str | None:
        """Current agent context, then the session's agent, then the global agent."""
        agent = self._current_agent.get(session_id) or self._session_agents.get(session_id)
        if agent:
            return agent
        return self.agents.current_agent_name if self.agents is not None else None

    def clear_session(self, session_id: str) -> None:
        removed = False
        for mapping in (self._session_models, self._session_agents, self._agent_models, self._current_agent):
            removed = mapping.pop(session_id, None) is not None or removed
        if removed:
            self._changed(session_id)

    # ------------------------------------------------------------------
    # External sessions
    # ------------------------------------------------------------------

    def analyze_and_save_external_session_choices(
        self,
        session_id: str,
        messages: Sequence[Message],
        agents: Sequence[AgentDefinition] | None = None,
    ) -> dict[str, ModelSelection]:
        """
        Reconstruct the last model each agent used in a session that was
        not created here, and save those choices.

        A message is attributed to its ``mode`` agent when that agent exists,
        else to an agent pinned to the same model, else to the session's
        current agent, else to an earlier assistant message with the same
        model, else to the ``build`` agent.
        """
        if agents is None:
            agents = self.agents.all() if self.agents is not None else []
        names = {a.name for a in agents}

        def pinned_to(provider_id: str | None, model_id: str | None) -> str | None:
            for agent in agents:
                if agent.model and (agent.model.provider_id, agent.model.model_id) == (provider_id, model_id):
                    return agent.name
            return None

        ordered = sorted(
            (m for m in messages if m.role in ("user", "assistant")),
            key=lambda m: m.info.created_at,
        )
        assistants = [m for m in ordered if m.role == "assistant"]
        assistant_index = {m.id: idx for idx, m in enumerate(assistants)}

        def attribute(message: Message) -> str | None:
            info = message.info
            if info.mode and info.mode in names:
                return info.mode
            if match := pinned_to(info.provider_id, info.model_id):
                return match
            context = self._current_agent.get(session_id)
            if context and context in names:
                return context
            if message.id in assistant_index:
                for prev in reversed(assistants[: assistant_index[message.id]]):
                    prev_info = prev.info
                    if (prev_info.provider_id, prev_info.model_id) != (info.provider_id, info.model_id):
                        continue
                    if prev_info.mode and prev_info.mode in names:
                        return prev_info.mode
                    if match := pinned_to(prev_info.provider_id, prev_info.model_id):
                        return match
            if FALLBACK_AGENT in names:
                return FALLBACK_AGENT
            return None

        choices: dict[str, tuple[int, ModelSelection]] = {}
        for message in ordered:
            info = message.info
            if not info.provider_id or not info.model_id:
                continue
            agent_name = attribute(message)
            if agent_name is None:
                continue
            existing = choices.get(agent_name)
            if existing is None or info.created_at > existing[0]:
                choices[agent_name] = (info.created_at, ModelSelection(info.provider_id, info.model_id))

        result = {name: selection for name, (_, selection) in choices.items()}
        if result:
            self._agent_models.setdefault(session_id, {}).update(result)
            self._changed(session_id, "agent_models")
            logger.debug("Recovered model choices for %s: %s", session_id, sorted(result))
        return result

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_state(self) -> dict[str, Any]:
        """Association-list form of every selection map."""
        return {
            "sessionModelSelections": [
                [sid, sel.to_dict()] for sid, sel in self._session_models.items()
            ],
            "sessionAgentSelections": [[sid, name] for sid, name in self._session_agents.items()],
            "sessionAgentModelSelections": [
                [sid, [[agent, sel.to_dict()] for agent, sel in models.items()]]
                for sid, models in self._agent_models.items()
            ],
            "currentAgentContext": [[sid, name] for sid, name in self._current_agent.items()],
        }

    def load_state(self, data: dict[str, Any]) -> None:
        """Replace selections from persisted state, dropping malformed entries."""
        self._session_models = {
            sid: ModelSelection.from_dict(value)
            for sid, value in _pairs(data.get("sessionModelSelections"))
            if isinstance(value, dict)
        }
        self._session_agents = {
            sid: value
            for sid, value in _pairs(data.get("sessionAgentSelections"))
            if isinstance(value, str)
        }
        self._agent_models = {}
        for sid, value in _pairs(data.get("sessionAgentModelSelections")):
            models = {
                agent: ModelSelection.from_dict(sel)
                for agent, sel in _pairs(value)
                if isinstance(sel, dict)
            }
            if models:
                self._agent_models[sid] = models
        self._current_agent = {
            sid: value
            for sid, value in _pairs(data.get("currentAgentContext"))
            if isinstance(value, str)
        }
        self._changed(None)

    # Read-only views for snapshots

    def session_models(self) -> dict[str, ModelSelection]:
        return dict(self._session_models)

    def session_agents(self) -> dict[str, str]:
        return dict(self._session_agents)

    def agent_models(self) -> dict[str, dict[str, ModelSelection]]:
        return {sid: dict(models) for sid, models in self._agent_models.items()}

    def current_agents(self) -> dict[str, str]:
        return dict(self._current_agent)


def _pairs(value: Any) -> list[tuple[str, Any]]:
    """Well-formed ``[key, value]`` entries of an association list."""
    if not isinstance(value, list):
        return []
    return [
        (entry[0], entry[1])
        for entry in value
        if isinstance(entry, list) and len(entry) == 2 and isinstance(entry[0], str)
    ]
