"""
Tool-permission gating and edit-permission modes.

Each agent declares a default edit mode. Users may override it per
(session, agent); overrides equal to the default are not stored. Incoming
permission requests are either auto-approved, based on the effective mode,
or queued for the user.

Modes:
    ask   - every request is queued
    allow - edit-type requests are auto-approved
    full  - every request is auto-approved
    deny  - terminal; toggling and overrides are disabled
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from agent_session_store.errors import PermissionConflict, PermissionResult, TransientFetchError
from agent_session_store.events import (
    PERMISSION_QUEUED,
    STATE_CHANGED,
    EventBus,
    PermissionQueuedEvent,
    StateChangedEvent,
)
from agent_session_store.logging import get_logger
from agent_session_store.models import (
    EDIT_PERMISSION_MODES,
    EDIT_PERMISSION_SEQUENCE,
    EditPermissionMode,
    PermissionRequest,
    PermissionResponse,
)

if TYPE_CHECKING:
    from agent_session_store.agents import AgentRegistry
    from agent_session_store.transport import BackendClient

logger = get_logger("permissions")

EDIT_PERMISSION_TOOL_NAMES = frozenset(
    {"edit", "multiedit", "str_replace", "str_replace_based_edit_tool", "write"}
)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def is_edit_permission_type(permission_type: str | None) -> bool:
    """Whether a permission type names a file-editing tool (case-insensitive)."""
    if not permission_type:
        return False
    return permission_type.lower() in EDIT_PERMISSION_TOOL_NAMES


def get_agent_default_edit_permission(
    agents: AgentRegistry | None,
    agent_name: str | None,
) -> EditPermissionMode:
    """
    Declared edit mode of an agent.

    Uses ``permission.edit`` when it is a valid mode; otherwise ``ask`` if the
    agent's edit tool is enabled and ``deny`` if it is disabled. Unknown
    agents default to ``ask``.
    """
    agent = agents.get(agent_name) if agents is not None else None
    if agent is None:
        return "ask"
    if agent.edit_permission in EDIT_PERMISSION_MODES:
        return agent.edit_permission  # type: ignore[return-value]
    edit_enabled = agent.tools.get("edit", True) is not False
    return "ask" if edit_enabled else "deny"


@dataclass
class EditPermissionUIState:
    """Which edit modes a mode picker should offer for an agent."""

    cascade_default_mode: EditPermissionMode
    mode_availability: dict[str, bool]
    auto_approve_available: bool
    bash_has_ask: bool
    bash_has_deny: bool
    bash_all_allow: bool
    webfetch_is_allow: bool
    webfetch_not_deny: bool


def _bash_has(permission: str | dict[str, Any] | None, value: str) -> bool:
    if not permission:
        return False
    if isinstance(permission, str):
        return permission == value
    if isinstance(permission, dict):
        return any(v == value for v in permission.values())
    return False


def calculate_edit_permission_ui_state(
    agent_default_edit_mode: EditPermissionMode,
    webfetch_permission: str | None = None,
    bash_permission: str | dict[str, Any] | None = None,
) -> EditPermissionUIState:
    """
    Derive the effective default and available modes from the edit, bash
    and webfetch declarations of an agent.

    An agent that allows edits, web fetches and all bash commands cascades
    to ``full``; one that allows edits but asks for some bash commands
    cascades to ``allow``.
    """
    bash_has_ask = _bash_has(bash_permission, "ask")
    bash_has_deny = _bash_has(bash_permission, "deny")
    bash_all_allow = not bash_has_ask and not bash_has_deny

    webfetch_is_allow = webfetch_permission == "allow"
    webfetch_not_deny = webfetch_permission != "deny"

    edit_is_allow = agent_default_edit_mode in ("allow", "full")
    edit_is_ask = agent_default_edit_mode == "ask"

    cascade: EditPermissionMode = agent_default_edit_mode
    if edit_is_allow and webfetch_is_allow and bash_all_allow:
        cascade = "full"
    elif edit_is_allow and bash_has_ask:
        cascade = "allow"
    elif edit_is_ask:
        cascade = "ask"

    availability = {
        "ask": edit_is_ask,
        "allow": edit_is_ask or (edit_is_allow and bash_has_ask),
        "full": agent_default_edit_mode != "deny" and webfetch_not_deny and bash_has_ask,
        "deny": False,
    }

    return EditPermissionUIState(
        cascade_default_mode=cascade,
        mode_availability=availability,
        auto_approve_available=availability["allow"] or availability["full"],
        bash_has_ask=bash_has_ask,
        bash_has_deny=bash_has_deny,
        bash_all_allow=bash_all_allow,
        webfetch_is_allow=webfetch_is_allow,
        webfetch_not_deny=webfetch_not_deny,
    )


# ---------------------------------------------------------------------------
# Edit mode overrides
# ---------------------------------------------------------------------------


class EditModeStore:
    """Sparse per-(session, agent) edit mode overrides."""

    def __init__(self, agents: AgentRegistry | None = None) -> None:
        self.agents = agents
        self.events = EventBus()
        self._modes: dict[str, dict[str, EditPermissionMode]] = {}

    def _default(self, agent_name: str | None, default_mode: EditPermissionMode | None) -> EditPermissionMode:
        if default_mode is not None:
            return default_mode
        return get_agent_default_edit_permission(self.agents, agent_name)

    def _changed(self, session_id: str | None) -> None:
        self.events.emit_sync(
            STATE_CHANGED,
            StateChangedEvent(slice="edit_modes", session_id=session_id, fields=("modes",)),
        )

    def get_session_agent_edit_mode(
        self,
        session_id: str | None,
        agent_name: str | None,
        default_mode: EditPermissionMode | None = None,
    ) -> EditPermissionMode:
        """The override for (session, agent), else the agent's default."""
        default = self._default(agent_name, default_mode)
        if not session_id or not agent_name:
            return default
        return self._modes.get(session_id, {}).get(agent_name, default)

    def set_session_agent_edit_mode(
        self,
        session_id: str | None,
        agent_name: str | None,
        mode: EditPermissionMode,
        default_mode: EditPermissionMode | None = None,
    ) -> bool:
        """
        Set the override for (session, agent).

        Refused when the agent's default or the requested mode is ``deny``, or
        the mode is not in the escalation sequence. Setting the default
        removes the override. Returns True when state changed.
        """
        if not session_id or not agent_name:
            return False
        default = self._default(agent_name, default_mode)
        if default == "deny" or mode == "deny":
            return False
        if mode not in EDIT_PERMISSION_SEQUENCE:
            return False

        agent_modes = self._modes.get(session_id, {})
        if mode == default:
            if agent_name not in agent_modes:
                return False
            del agent_modes[agent_name]
            if not agent_modes:
                self._modes.pop(session_id, None)
        else:
            if agent_modes.get(agent_name) == mode:
                return False
            agent_modes[agent_name] = mode
            self._modes[session_id] = agent_modes

        self._changed(session_id)
        return True

    def toggle_session_agent_edit_mode(
        self,
        session_id: str | None,
        agent_name: str | None,
        default_mode: EditPermissionMode | None = None,
    ) -> EditPermissionMode | None:
        """
        Advance to the next mode of ``ask -> allow -> full -> ask``.

        A ``deny`` default disables toggling. Returns the new mode, or None
        when nothing happened.
        """
        if not session_id or not agent_name:
            return None
        default = self._default(agent_name, default_mode)
        if default == "deny":
            return None

        current = self.get_session_agent_edit_mode(session_id, agent_name, default)
        if current in EDIT_PERMISSION_SEQUENCE:
            base = EDIT_PERMISSION_SEQUENCE.index(current)
        elif default in EDIT_PERMISSION_SEQUENCE:
            base = EDIT_PERMISSION_SEQUENCE.index(default)
        else:
            base = 0
        next_mode = EDIT_PERMISSION_SEQUENCE[(base + 1) % len(EDIT_PERMISSION_SEQUENCE)]
        self.set_session_agent_edit_mode(session_id, agent_name, next_mode, default)
        return next_mode

    def overrides(self) -> dict[str, dict[str, EditPermissionMode]]:
        return {sid: dict(modes) for sid, modes in self._modes.items()}

    def clear_session(self, session_id: str) -> None:
        if self._modes.pop(session_id, None) is not None:
            self._changed(session_id)

    # -- persistence ------------------------------------------------------

    def to_entries(self) -> list[list[Any]]:
        """Association-list form: ``[[session_id, [[agent, mode], ...]], ...]``."""
        return [
            [sid, [[agent, mode] for agent, mode in modes.items()]]
            for sid, modes in self._modes.items()
        ]

    def load_entries(self, entries: Any) -> int:
        """Replace overrides from persisted entries. Malformed entries are dropped."""
        loaded: dict[str, dict[str, EditPermissionMode]] = {}
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, list) or len(entry) != 2:
                continue
            sid, pairs = entry
            if not isinstance(sid, str) or not isinstance(pairs, list):
                continue
            modes = {
                pair[0]: pair[1]
                for pair in pairs
                if isinstance(pair, list)
                and len(pair) == 2
                and isinstance(pair[0], str)
                and pair[1] in EDIT_PERMISSION_SEQUENCE
            }
            if modes:
                loaded[sid] = modes
        self._modes = loaded
        self._changed(None)
        return len(loaded)


# ---------------------------------------------------------------------------
# Permission gate
# ---------------------------------------------------------------------------


AgentResolver = Callable[[str], "str | None"]
DirectoryResolver = Callable[[str], "str | None"]
AbortCallback = Callable[[str], Awaitable[Any]]


class PermissionGate:
    """
    Decides, per incoming permission request, between auto-approval and the
    session's pending queue, and submits user responses.

    Collaborators are injected:

    - ``resolve_agent(session_id)`` yields the agent the request runs under
    - ``resolve_directory(session_id)`` yields the working directory sent
      along with the response
    - ``on_reject(session_id)`` cancels the session's running operation
    """

    def __init__(
        self,
        backend: BackendClient,
        edit_modes: EditModeStore,
        resolve_agent: AgentResolver,
        resolve_directory: DirectoryResolver | None = None,
        on_reject: AbortCallback | None = None,
    ) -> None:
        self.backend = backend
        self.edit_modes = edit_modes
        self.resolve_agent = resolve_agent
        self.resolve_directory = resolve_directory or (lambda _sid: None)
        self.on_reject = on_reject
        self.events = EventBus()
        self._pending: dict[str, list[PermissionRequest]] = {}

    def _changed(self, session_id: str | None) -> None:
        self.events.emit_sync(
            STATE_CHANGED,
            StateChangedEvent(slice="permissions", session_id=session_id, fields=("pending",)),
        )

    # -- queries ----------------------------------------------------------

    def pending(self, session_id: str) -> list[PermissionRequest]:
        return list(self._pending.get(session_id, []))

    def all_pending(self) -> dict[str, list[PermissionRequest]]:
        return {sid: list(perms) for sid, perms in self._pending.items()}

    def is_pending(self, session_id: str, permission_id: str) -> bool:
        return any(p.id == permission_id for p in self._pending.get(session_id, []))

    def effective_mode(self, session_id: str) -> tuple[str | None, EditPermissionMode]:
        """The agent a session's requests resolve to and its effective edit mode."""
        agent_name = self.resolve_agent(session_id)
        return agent_name, self.edit_modes.get_session_agent_edit_mode(session_id, agent_name)

    def should_auto_approve(self, request: PermissionRequest) -> bool:
        _, mode = self.effective_mode(request.session_id)
        return mode == "full" or (mode == "allow" and is_edit_permission_type(request.type))

    # -- actions ----------------------------------------------------------

    def _enqueue(self, request: PermissionRequest) -> None:
        queue = self._pending.setdefault(request.session_id, [])
        if any(p.id == request.id for p in queue):
            return
        queue.append(request)
        self._changed(request.session_id)
        self.events.emit_sync(
            PERMISSION_QUEUED,
            PermissionQueuedEvent(
                session_id=request.session_id, permission_id=request.id, type=request.type
            ),
        )

    async def _submit(
        self, session_id: str, permission_id: str, response: PermissionResponse
    ) -> TransientFetchError | None:
        try:
            ok = await self.backend.respond_to_permission(
                session_id,
                permission_id,
                response,
                directory=self.resolve_directory(session_id),
            )
        except Exception as e:
            return TransientFetchError("respond_to_permission", session_id, e)
        if not ok:
            return TransientFetchError("respond_to_permission", session_id)
        return None

    async def add_permission(self, request: PermissionRequest) -> PermissionResult:
        """
        Handle a permission request from the backend.

        Auto-approved requests are answered ``once`` and never reach the
        queue, unless the submission fails, in which case they are queued for
        the user.
        """
        if not request.session_id:
            logger.debug("Dropping permission %s without a session", request.id)
            return PermissionResult(success=False, permission_id=request.id, action="ignored")

        if self.should_auto_approve(request):
            error = await self._submit(request.session_id, request.id, "once")
            if error is None:
                logger.debug("Auto-approved %s permission %s", request.type, request.id)
                return PermissionResult(
                    success=True, permission_id=request.id, action="auto_approved"
                )
            logger.warning("Auto-approval of %s failed, queueing: %s", request.id, error)
            self._enqueue(request)
            return PermissionResult(
                success=False, permission_id=request.id, action="queued", error=error
            )

        self._enqueue(request)
        return PermissionResult(success=True, permission_id=request.id, action="queued")

    async def respond_to_permission(
        self,
        session_id: str,
        permission_id: str,
        response: PermissionResponse,
    ) -> PermissionResult:
        """
        Submit the user's decision for a pending request.

        Responses for requests that are not pending are ignored. A ``reject``
        also cancels the session's running operation.
        """
        if not self.is_pending(session_id, permission_id):
            conflict = PermissionConflict(session_id, permission_id)
            logger.info("Ignoring response: %s", conflict)
            return PermissionResult(
                success=False, permission_id=permission_id, action="ignored", error=conflict
            )

        error = await self._submit(session_id, permission_id, response)
        if error is not None:
            logger.warning("Permission response failed: %s", error)
            return PermissionResult(success=False, permission_id=permission_id, error=error)

        if response == "reject" and self.on_reject is not None:
            try:
                await self.on_reject(session_id)
            except Exception as e:
                logger.warning("Abort after rejected permission failed for %s: %s", session_id, e)

        queue = self._pending.get(session_id, [])
        self._pending[session_id] = [p for p in queue if p.id != permission_id]
        if not self._pending[session_id]:
            del self._pending[session_id]
        self._changed(session_id)
        return PermissionResult(success=True, permission_id=permission_id, action="responded")

    def clear_session(self, session_id: str) -> None:
        if self._pending.pop(session_id, None) is not None:
            self._changed(session_id)

    # -- persistence ------------------------------------------------------

    def to_entries(self) -> list[list[Any]]:
        """Association-list form: ``[[session_id, [request, ...]], ...]``."""
        return [
            [sid, [p.to_dict() for p in perms]] for sid, perms in self._pending.items() if perms
        ]

    def load_entries(self, entries: Any) -> int:
        """Replace the pending queues from persisted entries, dropping malformed ones."""
        loaded: dict[str, list[PermissionRequest]] = {}
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, list) or len(entry) != 2:
                continue
            sid, perms = entry
            if not isinstance(sid, str) or not isinstance(perms, list):
                continue
            requests = []
            for raw in perms:
                if not isinstance(raw, dict) or not raw.get("id"):
                    continue
                request = PermissionRequest.from_dict(raw)
                request.session_id = request.session_id or sid
                requests.append(request)
            if requests:
                loaded[sid] = requests
        self._pending = loaded
        self._changed(None)
        return len(loaded)
