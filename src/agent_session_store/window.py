"""
Bounded per-session message windows.

Every session holds at most ``max_window`` messages outside of streaming.
The window grows by pagination in either direction, shrinks by trimming
around the viewport anchor, and is dropped entirely when the session is
evicted as least recently used.

Example:
    manager = SessionWindowManager(backend, WindowConfig())

    await manager.load_messages("ses_1")
    manager.update_viewport_anchor("ses_1", 40)
    await manager.load_more_messages("ses_1", "up")
    manager.trim_to_viewport_window("ses_1", 120)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from agent_session_store.config import WindowConfig
from agent_session_store.errors import (
    EvictionSkipped,
    LoadResult,
    StaleAnchorError,
    TransientFetchError,
)
from agent_session_store.events import (
    SESSION_EVICTED,
    STATE_CHANGED,
    EventBus,
    SessionEvictedEvent,
    StateChangedEvent,
)
from agent_session_store.logging import get_logger
from agent_session_store.models import (
    ActivityPhase,
    Direction,
    Message,
    MessageInfo,
    Part,
    Role,
    SessionMemoryState,
    ViewportAnchor,
)

if TYPE_CHECKING:
    from agent_session_store.transport import BackendClient

logger = get_logger("window")


@dataclass
class EvictionReport:
    """Sessions unloaded by an eviction pass and those deliberately kept."""

    evicted: list[str] = field(default_factory=list)
    skipped: list[EvictionSkipped] = field(default_factory=list)


def _dedupe(messages: Iterable[Message]) -> list[Message]:
    """Drop repeated ids, keeping the first position and the last version."""
    by_id: dict[str, Message] = {}
    for message in messages:
        by_id[message.id] = message
    return list(by_id.values())


class SessionWindowManager:
    """
    Owner of loaded messages, memory states and viewport anchors.

    ``activity_phase`` reports whether a session is streaming; trimming and
    eviction leave non-idle sessions alone.
    """

    def __init__(
        self,
        backend: BackendClient,
        config: WindowConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        activity_phase: Callable[[str], ActivityPhase] | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or WindowConfig()
        self.clock = clock
        self.activity_phase = activity_phase or (lambda _sid: "idle")
        self.events = EventBus()
        self._messages: dict[str, list[Message]] = {}
        self._memory: dict[str, SessionMemoryState] = {}
        self._anchors: dict[str, ViewportAnchor] = {}
        self._compaction: dict[str, int] = {}  # session id -> compaction timestamp (ms)
        self._seq = 0

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _state(self, session_id: str) -> SessionMemoryState:
        state = self._memory.get(session_id)
        if state is None:
            self._seq += 1
            state = SessionMemoryState(registered_seq=self._seq)
            self._memory[session_id] = state
        return state

    def _touch(self, session_id: str) -> SessionMemoryState:
        state = self._state(session_id)
        state.last_accessed_at = self.clock()
        return state

    def _changed(self, session_id: str, *fields: str) -> None:
        messages = self._messages.get(session_id)
        state = self._memory.get(session_id)
        if state is not None:
            state.loaded_count = len(messages) if messages else 0
        self.events.emit_sync(
            STATE_CHANGED,
            StateChangedEvent(slice="window", session_id=session_id, fields=fields),
        )

    def _resolve_anchor_index(self, session_id: str, anchor: ViewportAnchor) -> int:
        messages = self._messages.get(session_id, [])
        if anchor.message_id is not None:
            for idx, message in enumerate(messages):
                if message.id == anchor.message_id:
                    return idx
            raise StaleAnchorError(session_id, anchor.index, len(messages))
        if 0 <= anchor.index < len(messages):
            return anchor.index
        raise StaleAnchorError(session_id, anchor.index, len(messages))

    def _reresolve_anchor(self, session_id: str) -> None:
        anchor = self._anchors.get(session_id)
        if anchor is None:
            return
        try:
            anchor.index = self._resolve_anchor_index(session_id, anchor)
        except StaleAnchorError as e:
            logger.debug("Clearing stale anchor: %s", e)
            del self._anchors[session_id]

    def _find(self, session_id: str, message_id: str) -> Message | None:
        for message in reversed(self._messages.get(session_id, [])):
            if message.id == message_id:
                return message
        return None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_messages(self, session_id: str, limit: int | None = None) -> LoadResult:
        """
        Load the most recent window of a session that is not materialized.

        A materialized session is left as is. Messages that arrived through
        streaming before the load are kept after the fetched ones.
        """
        state = self._touch(session_id)
        if state.is_materialized:
            return LoadResult.ok(session_id, reason="already_loaded")

        size = min(limit or self.config.active_window, self.config.max_window)
        try:
            page = await self.backend.fetch_messages(session_id, size)
        except Exception as e:
            error = TransientFetchError("load_messages", session_id, e)
            logger.warning("%s", error)
            return LoadResult.failed(session_id, error)

        # Re-read after the await: another load may have won the race.
        state = self._state(session_id)
        if state.is_materialized:
            return LoadResult.ok(session_id, reason="already_loaded")

        fetched = _dedupe(page.messages)
        truncated = len(fetched) > size
        fetched = fetched[-size:]
        fetched_ids = {m.id for m in fetched}
        local = [m for m in self._messages.get(session_id, []) if m.id not in fetched_ids]

        self._messages[session_id] = fetched + local
        state.is_materialized = True
        state.has_more_above = page.has_more_above or truncated
        state.has_more_below = page.has_more_below
        self._reresolve_anchor(session_id)
        self._changed(session_id, "messages", "memory")
        logger.debug("Loaded %d messages for %s", len(fetched), session_id)
        return LoadResult.ok(session_id, loaded=len(fetched))

    async def load_more_messages(self, session_id: str, direction: Direction) -> LoadResult:
        """
        Extend the window by one page older (``"up"``) or newer (``"down"``).

        Loaded messages are never dropped; the page is capped to the room
        left under ``max_window``.
        """
        state = self._touch(session_id)
        if not state.is_materialized:
            return await self.load_messages(session_id)

        has_more = state.has_more_above if direction == "up" else state.has_more_below
        if not has_more:
            return LoadResult.ok(session_id, reason="no_more")

        current = self._messages.get(session_id, [])
        capacity = self.config.max_window - len(current)
        if capacity <= 0:
            return LoadResult.ok(session_id, reason="window_full")

        limit = min(self.config.page_size, capacity)
        before = current[0].id if direction == "up" and current else None
        after = current[-1].id if direction == "down" and current else None
        try:
            page = await self.backend.fetch_messages(session_id, limit, before=before, after=after)
        except Exception as e:
            error = TransientFetchError("load_more_messages", session_id, e)
            logger.warning("%s", error)
            return LoadResult.failed(session_id, error)

        current = self._messages.get(session_id, [])
        state = self._state(session_id)
        if not state.is_materialized:
            # Evicted while the page was in flight.
            return LoadResult.ok(session_id, reason="evicted")

        known = {m.id for m in current}
        fresh = [m for m in _dedupe(page.messages) if m.id not in known]
        room = max(self.config.max_window - len(current), 0)
        truncated = len(fresh) > room
        if direction == "up":
            fresh = fresh[len(fresh) - room :] if truncated else fresh
            self._messages[session_id] = fresh + current
            state.has_more_above = page.has_more_above or truncated
        else:
            fresh = fresh[:room]
            self._messages[session_id] = current + fresh
            state.has_more_below = page.has_more_below or truncated

        self._reresolve_anchor(session_id)
        self._changed(session_id, "messages", "memory")
        return LoadResult.ok(session_id, loaded=len(fresh))

    # ------------------------------------------------------------------
    # Anchors
    # ------------------------------------------------------------------

    def update_viewport_anchor(self, session_id: str, index: int) -> bool:
        """
        Record the message the viewport is centered on.

        An index outside the loaded messages clears the anchor instead.
        """
        messages = self._messages.get(session_id, [])
        existing = self._anchors.get(session_id)
        try:
            idx = self._resolve_anchor_index(session_id, ViewportAnchor(index=index))
        except StaleAnchorError as e:
            logger.debug("Rejecting anchor update: %s", e)
            if self._anchors.pop(session_id, None) is not None:
                self._changed(session_id, "anchor")
            return False

        self._anchors[session_id] = ViewportAnchor(
            index=idx,
            message_id=messages[idx].id,
            pending=existing.pending if existing else False,
        )
        self._touch(session_id)
        self._changed(session_id, "anchor")
        return True

    def ensure_anchor(self, session_id: str, pending: bool = False) -> ViewportAnchor | None:
        """
        Make sure the session has an anchor, placing a new one on its last
        message. An existing anchor is kept; only its pending flag changes.
        """
        anchor = self._anchors.get(session_id)
        messages = self._messages.get(session_id, [])
        if anchor is None:
            if not messages:
                return None
            anchor = ViewportAnchor(index=len(messages) - 1, message_id=messages[-1].id)
            self._anchors[session_id] = anchor
        anchor.pending = pending
        self._changed(session_id, "anchor")
        return anchor

    def complete_anchor(self, session_id: str) -> None:
        """Clear the pending flag once a session switch has finished."""
        anchor = self._anchors.get(session_id)
        if anchor is not None and anchor.pending:
            anchor.pending = False
            self._changed(session_id, "anchor")

    def get_anchor(self, session_id: str) -> ViewportAnchor | None:
        anchor = self._anchors.get(session_id)
        return replace(anchor) if anchor else None

    # ------------------------------------------------------------------
    # Trimming and eviction
    # ------------------------------------------------------------------

    def trim_to_viewport_window(self, session_id: str, target_size: int | None = None) -> int:
        """
        Shrink a session toward *target_size* messages around its anchor.

        The anchor and ``viewport_margin`` messages on each side always stay.
        Without an anchor the most recent messages are kept. Busy sessions
        are not trimmed. Returns the number of messages removed.
        """
        target = max(target_size or self.config.viewport_messages, 1)
        phase = self.activity_phase(session_id)
        if phase != "idle":
            logger.debug("Not trimming %s while %s", session_id, phase)
            return 0

        messages = self._messages.get(session_id)
        if not messages or len(messages) <= target:
            return 0

        total = len(messages)
        anchor = self._anchors.get(session_id)
        idx: int | None = None
        if anchor is not None:
            try:
                idx = self._resolve_anchor_index(session_id, anchor)
            except StaleAnchorError as e:
                logger.debug("Trimming without stale anchor: %s", e)
                del self._anchors[session_id]

        if idx is None:
            keep = target
            start = total - keep
        else:
            keep = max(target, 2 * self.config.viewport_margin + 1)
            if keep >= total:
                return 0
            start = min(max(idx - keep // 2, 0), total - keep)
        end = start + keep

        self._messages[session_id] = messages[start:end]
        state = self._state(session_id)
        if start > 0:
            state.has_more_above = True
        if end < total:
            state.has_more_below = True
        if idx is not None and anchor is not None:
            anchor.index = idx - start

        removed = total - keep
        self._changed(session_id, "messages", "memory", "anchor")
        logger.debug("Trimmed %d messages from %s", removed, session_id)
        return removed

    def _unload(self, session_id: str) -> int:
        count = len(self._messages.pop(session_id, []))
        self._anchors.pop(session_id, None)
        state = self._state(session_id)
        state.is_materialized = False
        state.has_more_above = False
        state.has_more_below = False
        self._changed(session_id, "messages", "memory", "anchor")
        self.events.emit_sync(
            SESSION_EVICTED, SessionEvictedEvent(session_id=session_id, message_count=count)
        )
        return count

    def _is_resident(self, session_id: str, state: SessionMemoryState) -> bool:
        # Streamed parts can populate a session that was never loaded.
        return state.is_materialized or bool(self._messages.get(session_id))

    def evict_session(
        self, session_id: str, current_session_id: str | None = None
    ) -> EvictionSkipped | None:
        """Unload one session, or report why it was kept."""
        state = self._memory.get(session_id)
        if state is None or not self._is_resident(session_id, state):
            return EvictionSkipped(session_id, "not_materialized")
        if session_id == current_session_id:
            return EvictionSkipped(session_id, "current")
        if self.activity_phase(session_id) != "idle" or state.is_streaming:
            return EvictionSkipped(session_id, "active")
        count = self._unload(session_id)
        logger.info("Evicted session %s (%d messages)", session_id, count)
        return None

    def evict_least_recently_used(self, current_session_id: str | None) -> EvictionReport:
        """
        Unload least recently used sessions until at most
        ``max_materialized_sessions`` hold messages in memory.

        The current session and busy sessions are never unloaded; they are
        reported as skipped.
        """
        report = EvictionReport()
        resident = self.resident_sessions()
        excess = len(resident) - self.config.max_materialized_sessions
        if excess <= 0:
            return report

        candidates = sorted(
            resident,
            key=lambda sid: (self._memory[sid].last_accessed_at, self._memory[sid].registered_seq),
        )
        for session_id in candidates:
            if excess <= 0:
                break
            skipped = self.evict_session(session_id, current_session_id)
            if skipped is not None:
                logger.debug("Eviction skipped %s: %s", session_id, skipped.reason)
                report.skipped.append(skipped)
                continue
            report.evicted.append(session_id)
            excess -= 1
        return report

    # ------------------------------------------------------------------
    # Streaming and backend sync
    # ------------------------------------------------------------------

    def apply_streaming_part(
        self,
        session_id: str,
        message_id: str,
        part: Part,
        role: Role = "assistant",
    ) -> Message:
        """Insert or replace a part, creating the message on its first part."""
        message = self._find(session_id, message_id)
        if message is None:
            message = Message(info=MessageInfo(id=message_id, session_id=session_id, role=role))
            self._messages.setdefault(session_id, []).append(message)
            self._state(session_id)
        message.upsert_part(part)
        self._changed(session_id, "messages")
        return message

    def update_message_info(self, session_id: str, info: MessageInfo) -> Message:
        """Replace a message header, appending a bare message if it is new."""
        message = self._find(session_id, info.id)
        if message is None:
            message = Message(info=info)
            self._messages.setdefault(session_id, []).append(message)
            self._state(session_id)
        else:
            message.info = info
        self._changed(session_id, "messages")
        return message

    def sync_messages(
        self,
        session_id: str,
        messages: list[Message],
        has_more_above: bool | None = None,
    ) -> None:
        """Replace a session's messages with a backend snapshot."""
        snapshot = _dedupe(messages)
        truncated = len(snapshot) > self.config.max_window
        self._messages[session_id] = snapshot[-self.config.max_window :]
        state = self._touch(session_id)
        state.is_materialized = True
        if has_more_above is not None:
            state.has_more_above = has_more_above or truncated
        elif truncated:
            state.has_more_above = True
        self._reresolve_anchor(session_id)
        self._changed(session_id, "messages", "memory")

    def mark_streaming(self, session_id: str, streaming: bool) -> None:
        state = self._state(session_id)
        if state.is_streaming != streaming:
            state.is_streaming = streaming
            self._changed(session_id, "memory")

    def update_session_compaction(self, session_id: str, timestamp: int | None = None) -> None:
        """Record that the backend is compacting a session, or clear it with None."""
        if timestamp is None:
            if self._compaction.pop(session_id, None) is None:
                return
        elif self._compaction.get(session_id) == timestamp:
            return
        else:
            self._compaction[session_id] = timestamp
        self._changed(session_id, "compaction")

    def touch(self, session_id: str) -> None:
        self._touch(session_id)
        self._changed(session_id, "memory")

    def clear_session(self, session_id: str) -> None:
        """Forget everything about a session, including its memory state."""
        self._messages.pop(session_id, None)
        self._anchors.pop(session_id, None)
        self._compaction.pop(session_id, None)
        self._memory.pop(session_id, None)
        self._changed(session_id, "messages", "memory", "anchor")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_messages(self, session_id: str) -> list[Message]:
        return list(self._messages.get(session_id, []))

    def get_message(self, session_id: str, message_id: str) -> Message | None:
        return self._find(session_id, message_id)

    def get_memory_state(self, session_id: str) -> SessionMemoryState | None:
        state = self._memory.get(session_id)
        return replace(state) if state else None

    def has_messages(self, session_id: str) -> bool:
        return bool(self._messages.get(session_id))

    def is_materialized(self, session_id: str) -> bool:
        state = self._memory.get(session_id)
        return bool(state and state.is_materialized)

    def all_messages(self) -> dict[str, list[Message]]:
        return {sid: list(msgs) for sid, msgs in self._messages.items()}

    def memory_states(self) -> dict[str, SessionMemoryState]:
        return {sid: replace(st) for sid, st in self._memory.items()}

    def get_session_compaction(self, session_id: str) -> int | None:
        return self._compaction.get(session_id)

    def compactions(self) -> dict[str, int]:
        return dict(self._compaction)

    def anchors(self) -> dict[str, ViewportAnchor]:
        return {sid: replace(a) for sid, a in self._anchors.items()}

    def materialized_sessions(self) -> list[str]:
        return [sid for sid, st in self._memory.items() if st.is_materialized]

    def resident_sessions(self) -> list[str]:
        """Sessions holding messages, loaded or fed only by streaming."""
        return [sid for sid, st in self._memory.items() if self._is_resident(sid, st)]
