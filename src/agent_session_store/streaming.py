"""
Streaming-message lifecycle tracking.

Each in-flight assistant message moves through::

    (none) -> streaming -> cooldown -> completed
                  ^           |
                  +-----------+   (a new part arrives)

``streaming -> cooldown`` happens after the quiescence timeout without new
parts, ``cooldown -> completed`` after the completion timeout or on an
explicit completion signal. Completed lifecycles stay until they are
settled so that late readers can still see the final phase.

The session activity phase is projected from the lifecycles plus any
in-flight operation: ``busy`` while something streams or an operation runs,
``cooldown`` while a message cools down, else ``idle``. Trimming and
eviction consult it instead of locking.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from agent_session_store.config import StreamingConfig
from agent_session_store.events import (
    STATE_CHANGED,
    STREAM_PHASE_CHANGED,
    EventBus,
    StateChangedEvent,
    StreamPhaseChangedEvent,
)
from agent_session_store.logging import get_logger
from agent_session_store.models import AbortPrompt, ActivityPhase, StreamLifecycle, StreamPhase

logger = get_logger("streaming")


class StreamingLifecycleTracker:
    """Per-message streaming phases, activity projection and abort signals."""

    def __init__(
        self,
        config: StreamingConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or StreamingConfig()
        self.clock = clock
        self.events = EventBus()
        self._lifecycles: dict[str, StreamLifecycle] = {}
        self._streaming_message: dict[str, str] = {}
        self._operations: dict[str, asyncio.Event] = {}
        self._aborted: set[str] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._abort_prompt: AbortPrompt | None = None

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _changed(self, session_id: str, *fields: str) -> None:
        self.events.emit_sync(
            STATE_CHANGED,
            StateChangedEvent(slice="streaming", session_id=session_id, fields=fields),
        )

    def _set_phase(self, lifecycle: StreamLifecycle, phase: StreamPhase) -> None:
        previous = lifecycle.phase
        if previous == phase:
            return
        lifecycle.phase = phase
        if phase == "completed":
            self._cancel_timer(lifecycle.message_id)
            if self._streaming_message.get(lifecycle.session_id) == lifecycle.message_id:
                del self._streaming_message[lifecycle.session_id]
        logger.debug(
            "Message %s in %s: %s -> %s",
            lifecycle.message_id,
            lifecycle.session_id,
            previous,
            phase,
        )
        self.events.emit_sync(
            STREAM_PHASE_CHANGED,
            StreamPhaseChangedEvent(
                session_id=lifecycle.session_id,
                message_id=lifecycle.message_id,
                previous=previous,
                phase=phase,
            ),
        )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _cancel_timer(self, message_id: str) -> None:
        handle = self._timers.pop(message_id, None)
        if handle is not None:
            handle.cancel()

    def _schedule(self, message_id: str, delay: float) -> None:
        self._cancel_timer(message_id)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: transitions happen through sweep()
            return
        self._timers[message_id] = loop.call_later(max(delay, 0.0), self._on_timer, message_id)

    def _on_timer(self, message_id: str) -> None:
        self._timers.pop(message_id, None)
        self.sweep()
        lifecycle = self._lifecycles.get(message_id)
        if lifecycle is None or lifecycle.phase == "completed":
            return
        due = self._next_deadline(lifecycle) - self.clock()
        self._schedule(message_id, due)

    def _next_deadline(self, lifecycle: StreamLifecycle) -> float:
        quiescence = lifecycle.last_update_at + self.config.quiescence_timeout
        if lifecycle.phase == "streaming":
            return quiescence
        return quiescence + self.config.completion_timeout

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def touch(self, session_id: str, message_id: str) -> StreamPhase:
        """
        Record a new part for *message_id*.

        Creates the lifecycle on the first part and revives a cooling
        message. Parts for completed messages do not reopen them.
        """
        now = self.clock()
        lifecycle = self._lifecycles.get(message_id)
        if lifecycle is not None and lifecycle.phase == "completed":
            return "completed"

        if lifecycle is None:
            lifecycle = StreamLifecycle(
                message_id=message_id,
                session_id=session_id,
                phase="streaming",
                started_at=now,
                last_update_at=now,
            )
            self._lifecycles[message_id] = lifecycle
            self._streaming_message[session_id] = message_id
            self.events.emit_sync(
                STREAM_PHASE_CHANGED,
                StreamPhaseChangedEvent(
                    session_id=session_id, message_id=message_id, previous=None, phase="streaming"
                ),
            )
            self._changed(session_id, "lifecycle", "streaming_message_id")
        else:
            lifecycle.last_update_at = now
            if lifecycle.phase == "cooldown":
                self._set_phase(lifecycle, "streaming")
                self._changed(session_id, "lifecycle")

        self._schedule(message_id, self.config.quiescence_timeout)
        return lifecycle.phase

    def complete(self, message_id: str) -> bool:
        """Explicit completion signal. Returns True if the phase changed."""
        lifecycle = self._lifecycles.get(message_id)
        if lifecycle is None or lifecycle.phase == "completed":
            return False
        self._set_phase(lifecycle, "completed")
        self._changed(lifecycle.session_id, "lifecycle", "streaming_message_id")
        return True

    def sweep(self, now: float | None = None) -> int:
        """
        Apply timeout transitions that are due at *now*.

        Returns the number of lifecycles that changed phase.
        """
        now = self.clock() if now is None else now
        quiescence = self.config.quiescence_timeout
        completion = self.config.completion_timeout
        changed: set[str] = set()
        count = 0

        for lifecycle in list(self._lifecycles.values()):
            idle_for = now - lifecycle.last_update_at
            if lifecycle.phase == "streaming" and idle_for >= quiescence:
                self._set_phase(lifecycle, "cooldown")
                changed.add(lifecycle.session_id)
                count += 1
            if lifecycle.phase == "cooldown" and idle_for >= quiescence + completion:
                self._set_phase(lifecycle, "completed")
                changed.add(lifecycle.session_id)
                count += 1

        for session_id in changed:
            self._changed(session_id, "lifecycle")
        return count

    def mark_message_stream_settled(self, message_id: str) -> bool:
        """Drop a completed lifecycle. Non-completed lifecycles are kept."""
        lifecycle = self._lifecycles.get(message_id)
        if lifecycle is None or lifecycle.phase != "completed":
            return False
        del self._lifecycles[message_id]
        self._cancel_timer(message_id)
        self.events.emit_sync(
            STREAM_PHASE_CHANGED,
            StreamPhaseChangedEvent(
                session_id=lifecycle.session_id,
                message_id=message_id,
                previous="completed",
                phase=None,
            ),
        )
        self._changed(lifecycle.session_id, "lifecycle")
        return True

    def settle_session(self, session_id: str) -> int:
        """Settle every completed lifecycle of a session, e.g. once it is unloaded."""
        completed = [
            lc.message_id
            for lc in self._lifecycles.values()
            if lc.session_id == session_id and lc.phase == "completed"
        ]
        return sum(self.mark_message_stream_settled(mid) for mid in completed)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def lifecycle(self, message_id: str) -> StreamLifecycle | None:
        return self._lifecycles.get(message_id)

    def phase(self, message_id: str) -> StreamPhase | None:
        lifecycle = self._lifecycles.get(message_id)
        return lifecycle.phase if lifecycle else None

    def lifecycles(self) -> dict[str, StreamLifecycle]:
        return dict(self._lifecycles)

    def streaming_message_id(self, session_id: str) -> str | None:
        return self._streaming_message.get(session_id)

    def streaming_message_ids(self) -> dict[str, str]:
        return dict(self._streaming_message)

    def session_activity_phase(self, session_id: str) -> ActivityPhase:
        phases = {lc.phase for lc in self._lifecycles.values() if lc.session_id == session_id}
        if "streaming" in phases or self.is_operation_active(session_id):
            return "busy"
        if "cooldown" in phases:
            return "cooldown"
        return "idle"

    def is_streaming(self, session_id: str) -> bool:
        return self.session_activity_phase(session_id) != "idle"

    # ------------------------------------------------------------------
    # Operations and aborts
    # ------------------------------------------------------------------

    def begin_operation(self, session_id: str) -> asyncio.Event:
        """Register an in-flight operation and return its abort signal."""
        signal = asyncio.Event()
        self._operations[session_id] = signal
        self._aborted.discard(session_id)
        self._changed(session_id, "operation")
        return signal

    def end_operation(self, session_id: str) -> None:
        if self._operations.pop(session_id, None) is not None:
            self._changed(session_id, "operation")

    def is_operation_active(self, session_id: str) -> bool:
        return session_id in self._operations

    def abort(self, session_id: str) -> bool:
        """
        Abort the session's in-flight operation and complete its lifecycles.

        Safe to call repeatedly. Returns True if anything was aborted.
        """
        acted = False
        signal = self._operations.get(session_id)
        if signal is not None and not signal.is_set():
            signal.set()
            acted = True
        for lifecycle in list(self._lifecycles.values()):
            if lifecycle.session_id == session_id and lifecycle.phase != "completed":
                self._set_phase(lifecycle, "completed")
                acted = True
        if acted:
            self._aborted.add(session_id)
            logger.info("Aborted operation for session %s", session_id)
            self._changed(session_id, "lifecycle", "aborted")
        return acted

    def is_session_aborted(self, session_id: str) -> bool:
        return session_id in self._aborted

    def acknowledge_session_abort(self, session_id: str) -> None:
        if session_id in self._aborted:
            self._aborted.discard(session_id)
            self._changed(session_id, "aborted")

    def arm_abort_prompt(self, session_id: str, duration: float | None = None) -> float:
        """
        Arm the abort confirmation for *session_id* and return when it expires.

        Only one session holds a prompt at a time; arming replaces it.
        """
        if duration is None:
            duration = self.config.abort_prompt_duration
        self._abort_prompt = AbortPrompt(session_id, self.clock() + duration)
        self._changed(session_id, "abort_prompt")
        return self._abort_prompt.expires_at

    def clear_abort_prompt(self) -> None:
        if self._abort_prompt is not None:
            session_id = self._abort_prompt.session_id
            self._abort_prompt = None
            self._changed(session_id, "abort_prompt")

    def abort_prompt(self) -> AbortPrompt | None:
        """The armed prompt, or None once it has expired."""
        prompt = self._abort_prompt
        if prompt is None or not prompt.is_active(self.clock()):
            return None
        return prompt

    def clear_session(self, session_id: str) -> None:
        """Forget every lifecycle and signal belonging to a session."""
        for message_id, lifecycle in list(self._lifecycles.items()):
            if lifecycle.session_id == session_id:
                self._cancel_timer(message_id)
                del self._lifecycles[message_id]
        self._streaming_message.pop(session_id, None)
        self._operations.pop(session_id, None)
        self._aborted.discard(session_id)
        if self._abort_prompt is not None and self._abort_prompt.session_id == session_id:
            self._abort_prompt = None
        self._changed(session_id)

    def close(self) -> None:
        """Cancel all pending timers."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
