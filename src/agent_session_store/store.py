"""
The composed session store.

:class:`ComposedStore` is the façade the UI talks to. It owns no primary
data: every action is routed to the slice that owns the affected state.
Each slice notifies on its own :class:`EventBus`; the store subscribes to
all of them and republishes a read-only :class:`StoreSnapshot` on
``snapshot_changed``.

Example:
    from agent_session_store import ComposedStore, StoreContext

    store = ComposedStore(StoreContext(backend=backend))
    store.events.on("snapshot_changed", lambda e: render(e.snapshot))

    await store.set_current_session("ses_1")
    result = await store.send_message("hello", "anthropic", "claude-sonnet-4")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any

from agent_session_store.attachments import AttachmentStore
from agent_session_store.errors import (
    LoadResult,
    PermissionResult,
    SendResult,
    SessionResult,
    SessionStoreError,
    TransientFetchError,
)
from agent_session_store.events import (
    SNAPSHOT_CHANGED,
    STATE_CHANGED,
    EventBus,
    SnapshotChangedEvent,
    StateChangedEvent,
)
from agent_session_store.logging import get_logger
from agent_session_store.models import (
    AbortPrompt,
    ActivityPhase,
    AttachedFile,
    ContextUsage,
    Direction,
    EditPermissionMode,
    Message,
    MessageInfo,
    ModelSelection,
    Part,
    PermissionRequest,
    PermissionResponse,
    Role,
    Session,
    SessionMemoryState,
    StreamLifecycle,
    ViewportAnchor,
)
from agent_session_store.permissions import (
    EditModeStore,
    EditPermissionUIState,
    PermissionGate,
    calculate_edit_permission_ui_state,
    get_agent_default_edit_permission,
)
from agent_session_store.runtime import StoreContext
from agent_session_store.selections import SelectionStore
from agent_session_store.sessions import SessionRegistry
from agent_session_store.storage import CONTEXT_STORE_KEY, PERMISSION_STORE_KEY
from agent_session_store.streaming import StreamingLifecycleTracker
from agent_session_store.transport import StreamPartEvent
from agent_session_store.usage import ContextUsageTracker, extract_tokens_from_message
from agent_session_store.window import EvictionReport, SessionWindowManager

logger = get_logger("store")

# Slices whose state is written to storage after every change.
PERSISTED_SLICES = frozenset({"selections", "edit_modes", "permissions"})


def _frozen(mapping: Mapping[str, Any]) -> MappingProxyType:
    return MappingProxyType(dict(mapping))


def _empty() -> MappingProxyType:
    return MappingProxyType({})


@dataclass(frozen=True)
class StoreSnapshot:
    """Read-only merged view of every slice at one point in time."""

    version: int = 0
    current_session_id: str | None = None
    sessions: tuple[Session, ...] = ()
    messages: Mapping[str, tuple[Message, ...]] = field(default_factory=_empty)
    memory_states: Mapping[str, SessionMemoryState] = field(default_factory=_empty)
    anchors: Mapping[str, ViewportAnchor] = field(default_factory=_empty)
    streaming_message_ids: Mapping[str, str] = field(default_factory=_empty)
    lifecycles: Mapping[str, StreamLifecycle] = field(default_factory=_empty)
    activity_phases: Mapping[str, ActivityPhase] = field(default_factory=_empty)
    aborted_sessions: frozenset[str] = frozenset()
    abort_prompt: AbortPrompt | None = None
    session_compaction: Mapping[str, int] = field(default_factory=_empty)
    pending_permissions: Mapping[str, tuple[PermissionRequest, ...]] = field(default_factory=_empty)
    context_usage: Mapping[str, ContextUsage] = field(default_factory=_empty)
    edit_modes: Mapping[str, Mapping[str, EditPermissionMode]] = field(default_factory=_empty)
    session_model_selections: Mapping[str, ModelSelection] = field(default_factory=_empty)
    session_agent_selections: Mapping[str, str] = field(default_factory=_empty)
    session_agent_model_selections: Mapping[str, Mapping[str, ModelSelection]] = field(
        default_factory=_empty
    )
    current_agent_context: Mapping[str, str] = field(default_factory=_empty)
    attached_files: tuple[AttachedFile, ...] = ()
    user_summary_titles: Mapping[str, str] = field(default_factory=_empty)
    client_created_sessions: frozenset[str] = frozenset()
    is_loading: bool = False
    error: str | None = None


def collect_summary_titles(messages: Mapping[str, list[Message]]) -> dict[str, str]:
    """Summary title of each session's latest summarized user message."""
    titles: dict[str, str] = {}
    for session_id, session_messages in messages.items():
        for message in reversed(session_messages):
            if message.role == "user" and message.info.summary_title:
                titles[session_id] = message.info.summary_title
                break
    return titles


class ComposedStore:
    """
    Façade over the session store slices.

    Reads go through accessors or :attr:`snapshot`; writes go through the
    action methods. Failures inside slices come back as result objects and
    never escape an action.
    """

    def __init__(self, context: StoreContext) -> None:
        self.context = context
        config = context.config
        self.events = EventBus()

        self.sessions = SessionRegistry(context.backend)
        self.streaming = StreamingLifecycleTracker(config.streaming, clock=context.clock)
        self.window = SessionWindowManager(
            context.backend,
            config.window,
            clock=context.clock,
            activity_phase=self.streaming.session_activity_phase,
        )
        self.usage = ContextUsageTracker(config.usage)
        self.selections = SelectionStore(context.agents)
        self.edit_modes = EditModeStore(context.agents)
        self.permissions = PermissionGate(
            context.backend,
            self.edit_modes,
            resolve_agent=self.selections.resolve_agent_for_session,
            resolve_directory=self.sessions.resolve_directory,
            on_reject=self.abort_current_operation,
        )
        self.attachments = AttachmentStore(context.backend, config.attachments)

        self._snapshot = StoreSnapshot()
        self._batch_depth = 0
        self._batched: set[str] = set()
        self._hydrating = False
        self._tasks: set[asyncio.Task[Any]] = set()

        for slice_ in (
            self.sessions,
            self.streaming,
            self.window,
            self.usage,
            self.selections,
            self.edit_modes,
            self.permissions,
            self.attachments,
        ):
            slice_.events.on(STATE_CHANGED, self._on_slice_changed, source="store")
        self._republish(())

    # ------------------------------------------------------------------
    # Subscribe and republish
    # ------------------------------------------------------------------

    def _on_slice_changed(self, event: StateChangedEvent) -> None:
        if event.slice in PERSISTED_SLICES and not self._hydrating:
            self.persist()
        with self._batch():
            self._batched.add(event.slice)
            if event.slice == "streaming" and event.session_id:
                self.window.mark_streaming(
                    event.session_id, self.streaming.is_streaming(event.session_id)
                )

    @contextmanager
    def _batch(self) -> Iterator[None]:
        """Collapse the notifications of a synchronous action into one snapshot."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if not self._batch_depth and self._batched:
                changed = tuple(sorted(self._batched))
                self._batched.clear()
                self._republish(changed)

    def _republish(self, changed: tuple[str, ...]) -> None:
        messages = self.window.all_messages()
        session_ids = set(messages) | set(self.window.memory_states())
        self._snapshot = StoreSnapshot(
            version=self._snapshot.version + 1,
            current_session_id=self.sessions.current_session_id,
            sessions=tuple(self.sessions.sessions),
            messages=MappingProxyType({sid: tuple(msgs) for sid, msgs in messages.items()}),
            memory_states=_frozen(self.window.memory_states()),
            anchors=_frozen(self.window.anchors()),
            streaming_message_ids=_frozen(self.streaming.streaming_message_ids()),
            lifecycles=_frozen({mid: replace(lc) for mid, lc in self.streaming.lifecycles().items()}),
            activity_phases=_frozen(
                {sid: self.streaming.session_activity_phase(sid) for sid in session_ids}
            ),
            aborted_sessions=frozenset(
                sid for sid in session_ids if self.streaming.is_session_aborted(sid)
            ),
            abort_prompt=self.streaming.abort_prompt(),
            session_compaction=_frozen(self.window.compactions()),
            pending_permissions=MappingProxyType(
                {sid: tuple(p) for sid, p in self.permissions.all_pending().items()}
            ),
            context_usage=_frozen(self.usage.all()),
            edit_modes=MappingProxyType(
                {sid: _frozen(modes) for sid, modes in self.edit_modes.overrides().items()}
            ),
            session_model_selections=_frozen(self.selections.session_models()),
            session_agent_selections=_frozen(self.selections.session_agents()),
            session_agent_model_selections=MappingProxyType(
                {sid: _frozen(m) for sid, m in self.selections.agent_models().items()}
            ),
            current_agent_context=_frozen(self.selections.current_agents()),
            attached_files=tuple(self.attachments.files),
            user_summary_titles=_frozen(collect_summary_titles(messages)),
            client_created_sessions=self.sessions.client_created,
            is_loading=self.sessions.is_loading,
            error=self.sessions.error,
        )
        self.events.emit_sync(
            SNAPSHOT_CHANGED, SnapshotChangedEvent(snapshot=self._snapshot, changed_slices=changed)
        )

    @property
    def snapshot(self) -> StoreSnapshot:
        return self._snapshot

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def current_session_id(self) -> str | None:
        return self.sessions.current_session_id

    def get_messages(self, session_id: str) -> list[Message]:
        return self.window.get_messages(session_id)

    def get_memory_state(self, session_id: str) -> SessionMemoryState | None:
        return self.window.get_memory_state(session_id)

    def get_anchor(self, session_id: str) -> ViewportAnchor | None:
        return self.window.get_anchor(session_id)

    def get_streaming_message_id(self, session_id: str) -> str | None:
        return self.streaming.streaming_message_id(session_id)

    def get_session_activity_phase(self, session_id: str) -> ActivityPhase:
        return self.streaming.session_activity_phase(session_id)

    def get_pending_permissions(self, session_id: str) -> list[PermissionRequest]:
        return self.permissions.pending(session_id)

    def get_session_agent_edit_mode(
        self, session_id: str, agent_name: str | None = None
    ) -> EditPermissionMode:
        agent = agent_name or self.selections.resolve_agent_for_session(session_id)
        return self.edit_modes.get_session_agent_edit_mode(session_id, agent)

    def get_last_message_model(self, session_id: str) -> ModelSelection | None:
        """Model of the most recent message that names one."""
        for message in reversed(self.window.get_messages(session_id)):
            if message.info.provider_id and message.info.model_id:
                return ModelSelection(message.info.provider_id, message.info.model_id)
        return None

    # ------------------------------------------------------------------
    # Session switching and windows
    # ------------------------------------------------------------------

    async def set_current_session(self, session_id: str | None) -> LoadResult | None:
        """
        Switch the current session.

        The previous session, unless busy, keeps its anchor and is trimmed to
        the viewport size. The new session is loaded if needed and trimmed to
        the active window; eviction runs last.
        """
        previous = self.sessions.current_session_id
        with self._batch():
            if previous and previous != session_id:
                if self.streaming.session_activity_phase(previous) == "idle":
                    self.window.ensure_anchor(previous)
                    self.window.trim_to_viewport_window(
                        previous, self.context.config.window.viewport_messages
                    )
            self.sessions.set_current_session(session_id)
            if session_id:
                self.window.ensure_anchor(session_id, pending=True)

        result: LoadResult | None = None
        if session_id:
            if self.window.is_materialized(session_id):
                self.window.touch(session_id)
            else:
                result = await self.window.load_messages(session_id)

            with self._batch():
                if self.sessions.current_session_id == session_id:
                    self.window.ensure_anchor(session_id, pending=True)
                    self.window.trim_to_viewport_window(
                        session_id, self.context.config.window.active_window
                    )
                self.window.complete_anchor(session_id)

        self.evict_least_recently_used()
        return result

    async def load_messages(self, session_id: str) -> LoadResult:
        return await self.window.load_messages(session_id)

    async def load_more_messages(self, session_id: str, direction: Direction) -> LoadResult:
        return await self.window.load_more_messages(session_id, direction)

    def update_viewport_anchor(self, session_id: str, index: int) -> bool:
        return self.window.update_viewport_anchor(session_id, index)

    def trim_to_viewport_window(self, session_id: str, target_size: int | None = None) -> int:
        return self.window.trim_to_viewport_window(session_id, target_size)

    def evict_least_recently_used(self) -> EvictionReport:
        with self._batch():
            report = self.window.evict_least_recently_used(self.sessions.current_session_id)
            for session_id in report.evicted:
                self.streaming.settle_session(session_id)
        return report

    def sync_messages(
        self, session_id: str, messages: list[Message], has_more_above: bool | None = None
    ) -> None:
        self.window.sync_messages(session_id, messages, has_more_above)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def add_streaming_part(
        self,
        session_id: str,
        message_id: str,
        part: Part,
        role: Role | None = None,
    ) -> None:
        """Apply a streamed part. Assistant parts drive the streaming lifecycle."""
        existing = self.window.get_message(session_id, message_id)
        effective_role: Role = role or (existing.info.role if existing else "assistant")
        with self._batch():
            self.window.apply_streaming_part(session_id, message_id, part, effective_role)
            if effective_role == "assistant":
                self.streaming.touch(session_id, message_id)

    def update_message_info(self, session_id: str, info: MessageInfo) -> None:
        with self._batch():
            self.window.update_message_info(session_id, info)
            if info.role == "assistant" and info.completed_at:
                self.complete_streaming_message(session_id, info.id)

    def update_session_compaction(self, session_id: str, timestamp: int | None = None) -> None:
        self.window.update_session_compaction(session_id, timestamp)

    def complete_streaming_message(self, session_id: str, message_id: str) -> None:
        """Mark a message completed and remember it as the session's cursor."""
        with self._batch():
            changed = self.streaming.complete(message_id)
            message = self.window.get_message(session_id, message_id)
            if message is None or message.role != "assistant":
                return
            completed_at = message.info.completed_at or int(time.time() * 1000)
            self.context.storage.save_message_cursor(session_id, message_id, completed_at)
            if changed and extract_tokens_from_message(message) == 0:
                self._spawn(
                    self.usage.poll_for_token_updates(
                        session_id, message_id, lambda: self.window.get_messages(session_id)
                    )
                )

    def mark_message_stream_settled(self, message_id: str) -> bool:
        return self.streaming.mark_message_stream_settled(message_id)

    async def handle_stream_event(self, event: StreamPartEvent) -> None:
        """Route one backend stream event to the owning slice."""
        if event.type == "part" and event.part is not None:
            self.add_streaming_part(event.session_id, event.message_id, event.part)
        elif event.type in ("message", "completed") and event.info is not None:
            self.update_message_info(event.session_id, event.info)
            if event.type == "completed" and not event.info.completed_at:
                self.complete_streaming_message(event.session_id, event.message_id)
        elif event.type == "permission" and event.permission is not None:
            await self.permissions.add_permission(event.permission)
        elif event.type == "error":
            logger.warning("Backend error in session %s: %s", event.session_id, event.error)

    async def send_message(
        self,
        content: str,
        provider_id: str,
        model_id: str,
        agent: str | None = None,
        session_id: str | None = None,
    ) -> SendResult:
        """
        Send a message to the current (or given) session and consume the
        reply stream until it ends or the operation is aborted.
        """
        sid = session_id or self.sessions.current_session_id
        if not sid:
            return SendResult.failed("", SessionStoreError("No session selected"))

        with self._batch():
            self.selections.save_session_model_selection(sid, provider_id, model_id)
            if agent:
                self.selections.save_session_agent_selection(sid, agent)
                self.selections.save_agent_model_for_session(sid, agent, provider_id, model_id)
            attachments = self.attachments.to_payload()
            self.attachments.clear_attached_files()

        signal = self.streaming.begin_operation(sid)
        message_ids: list[str] = []
        error: SessionStoreError | None = None
        iterator = None
        abort_wait = asyncio.ensure_future(signal.wait())
        try:
            stream = self.context.backend.send_message(
                sid, content, provider_id, model_id, agent=agent, attachments=attachments or None
            )
            iterator = stream.__aiter__()
            while True:
                next_event = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {next_event, abort_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if next_event not in done:
                    next_event.cancel()
                    await asyncio.gather(next_event, return_exceptions=True)
                    break
                try:
                    event = next_event.result()
                except StopAsyncIteration:
                    break
                if event.message_id and event.message_id not in message_ids:
                    message_ids.append(event.message_id)
                if event.type == "error":
                    error = SessionStoreError(event.error or "backend error")
                await self.handle_stream_event(event)
        except Exception as e:
            error = TransientFetchError("send_message", sid, e)
            logger.warning("%s", error)
        finally:
            abort_wait.cancel()
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug("Closing stream for %s failed: %s", sid, e)
            self.streaming.end_operation(sid)

        if signal.is_set():
            return SendResult.aborted_result(sid, message_ids)
        if error is not None:
            return SendResult(success=False, session_id=sid, message_ids=message_ids, error=error)
        return SendResult.ok(sid, message_ids)

    async def abort_current_operation(self, session_id: str | None = None) -> bool:
        """Abort locally, then ask the backend to stop. Safe to repeat."""
        sid = session_id or self.sessions.current_session_id
        if not sid:
            return False
        with self._batch():
            aborted = self.streaming.abort(sid)
        try:
            remote = await self.context.backend.abort_session(
                sid, directory=self.sessions.resolve_directory(sid)
            )
        except Exception as e:
            logger.warning("Backend abort failed for %s: %s", sid, e)
            remote = False
        return aborted or remote

    def acknowledge_session_abort(self, session_id: str) -> None:
        self.streaming.acknowledge_session_abort(session_id)

    def arm_abort_prompt(self, duration: float | None = None) -> float | None:
        """Arm the abort confirmation for the current session; None without one."""
        sid = self.sessions.current_session_id
        if not sid:
            return None
        with self._batch():
            return self.streaming.arm_abort_prompt(sid, duration)

    def clear_abort_prompt(self) -> None:
        with self._batch():
            self.streaming.clear_abort_prompt()

    def get_abort_prompt(self) -> AbortPrompt | None:
        return self.streaming.abort_prompt()

    # ------------------------------------------------------------------
    # Permissions and edit modes
    # ------------------------------------------------------------------

    async def add_permission(self, request: PermissionRequest) -> PermissionResult:
        return await self.permissions.add_permission(request)

    async def respond_to_permission(
        self, session_id: str, permission_id: str, response: PermissionResponse
    ) -> PermissionResult:
        return await self.permissions.respond_to_permission(session_id, permission_id, response)

    def toggle_session_agent_edit_mode(
        self, session_id: str, agent_name: str | None = None
    ) -> EditPermissionMode | None:
        agent = agent_name or self.selections.resolve_agent_for_session(session_id)
        return self.edit_modes.toggle_session_agent_edit_mode(session_id, agent)

    def set_session_agent_edit_mode(
        self, session_id: str, mode: EditPermissionMode, agent_name: str | None = None
    ) -> bool:
        agent = agent_name or self.selections.resolve_agent_for_session(session_id)
        return self.edit_modes.set_session_agent_edit_mode(session_id, agent, mode)

    def get_edit_permission_ui_state(
        self, session_id: str, agent_name: str | None = None
    ) -> EditPermissionUIState:
        agent = agent_name or self.selections.resolve_agent_for_session(session_id)
        definition = self.context.agents.get(agent)
        return calculate_edit_permission_ui_state(
            get_agent_default_edit_permission(self.context.agents, agent),
            webfetch_permission=definition.webfetch_permission if definition else None,
            bash_permission=definition.bash_permission if definition else None,
        )

    # ------------------------------------------------------------------
    # Context usage
    # ------------------------------------------------------------------

    def get_context_usage(
        self, context_limit: int, output_limit: int, session_id: str | None = None
    ) -> ContextUsage | None:
        sid = session_id or self.sessions.current_session_id
        if not sid:
            return None
        return self.usage.get_context_usage(
            sid, context_limit, output_limit, self.window.get_messages(sid)
        )

    def update_session_context_usage(
        self, session_id: str, context_limit: int, output_limit: int
    ) -> ContextUsage | None:
        return self.usage.update_session_context_usage(
            session_id, context_limit, output_limit, self.window.get_messages(session_id)
        )

    def initialize_session_context_usage(
        self, session_id: str, context_limit: int, output_limit: int
    ) -> ContextUsage | None:
        return self.usage.initialize_session_context_usage(
            session_id, context_limit, output_limit, self.window.get_messages(session_id)
        )

    async def poll_for_token_updates(
        self, session_id: str, message_id: str, max_attempts: int | None = None
    ) -> bool:
        return await self.usage.poll_for_token_updates(
            session_id, message_id, lambda: self.window.get_messages(session_id), max_attempts
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def load_sessions(self, directory: str | None = None) -> SessionResult:
        return await self.sessions.load_sessions(directory)

    def get_sessions_by_directory(self, directory: str) -> list[Session]:
        return self.sessions.get_sessions_by_directory(directory)

    async def create_session(
        self, title: str | None = None, directory: str | None = None
    ) -> SessionResult:
        """Create a session and make it current."""
        result = await self.sessions.create_session(title, directory)
        if result.success and result.session_id:
            await self.set_current_session(result.session_id)
        return result

    async def delete_session(self, session_id: str) -> SessionResult:
        """Delete a session and drop everything held for it."""
        result = await self.sessions.delete_session(session_id)
        if result.success:
            with self._batch():
                self.streaming.clear_session(session_id)
                self.window.clear_session(session_id)
                self.usage.clear_session(session_id)
                self.permissions.clear_session(session_id)
                self.edit_modes.clear_session(session_id)
                self.selections.clear_session(session_id)
            self.context.storage.clear_message_cursor(session_id)
        return result

    async def update_session_title(self, session_id: str, title: str) -> SessionResult:
        return await self.sessions.update_session_title(session_id, title)

    def apply_session_metadata(self, session_id: str, **metadata: Any) -> bool:
        return self.sessions.apply_session_metadata(session_id, **metadata)

    # ------------------------------------------------------------------
    # Selections
    # ------------------------------------------------------------------

    def save_session_model_selection(self, session_id: str, provider_id: str, model_id: str) -> None:
        self.selections.save_session_model_selection(session_id, provider_id, model_id)

    def get_session_model_selection(self, session_id: str) -> ModelSelection | None:
        return self.selections.get_session_model_selection(session_id)

    def save_session_agent_selection(self, session_id: str, agent_name: str) -> None:
        self.selections.save_session_agent_selection(session_id, agent_name)

    def get_session_agent_selection(self, session_id: str) -> str | None:
        return self.selections.get_session_agent_selection(session_id)

    def save_agent_model_for_session(
        self, session_id: str, agent_name: str, provider_id: str, model_id: str
    ) -> None:
        self.selections.save_agent_model_for_session(session_id, agent_name, provider_id, model_id)

    def get_agent_model_for_session(self, session_id: str, agent_name: str) -> ModelSelection | None:
        return self.selections.get_agent_model_for_session(session_id, agent_name)

    def set_current_agent(self, session_id: str, agent_name: str | None) -> None:
        self.selections.set_current_agent(session_id, agent_name)

    def get_current_agent(self, session_id: str) -> str | None:
        return self.selections.get_current_agent(session_id)

    def analyze_and_save_external_session_choices(self, session_id: str) -> dict[str, ModelSelection]:
        return self.selections.analyze_and_save_external_session_choices(
            session_id, self.window.get_messages(session_id)
        )

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def add_attached_file(
        self, path: str | Path, data: bytes | None = None, mime_type: str | None = None
    ) -> AttachedFile | None:
        return self.attachments.add_attached_file(path, data, mime_type)

    async def add_server_file(
        self, path: str, name: str, content: str | None = None
    ) -> AttachedFile | None:
        return await self.attachments.add_server_file(path, name, content)

    def remove_attached_file(self, file_id: str) -> bool:
        return self.attachments.remove_attached_file(file_id)

    def clear_attached_files(self) -> None:
        self.attachments.clear_attached_files()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist(self) -> None:
        """Write selections, edit modes and pending permissions to storage."""
        context_state = self.selections.to_state()
        context_state["sessionAgentEditModes"] = self.edit_modes.to_entries()
        self.context.storage.set(CONTEXT_STORE_KEY, context_state)
        self.context.storage.set(
            PERMISSION_STORE_KEY, {"permissions": self.permissions.to_entries()}
        )

    def hydrate(self) -> None:
        """Restore persisted state. Malformed entries are dropped."""
        self._hydrating = True
        try:
            with self._batch():
                context_state = self.context.storage.get(CONTEXT_STORE_KEY) or {}
                self.selections.load_state(context_state)
                self.edit_modes.load_entries(context_state.get("sessionAgentEditModes"))
                permission_state = self.context.storage.get(PERMISSION_STORE_KEY) or {}
                self.permissions.load_entries(permission_state.get("permissions"))
        finally:
            self._hydrating = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self) -> None:
        """Cancel background work and close the backend."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self.streaming.close()
        await self.context.backend.close()
