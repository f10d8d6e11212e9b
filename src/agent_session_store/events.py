"""
Change notification for store slices.

Every slice owns an :class:`EventBus` and is the only writer of its own
state. After each mutation it emits ``state_changed``; the composed store
listens on all slices and republishes a merged snapshot on its own bus.

Example:
    from agent_session_store.events import STATE_CHANGED, EventBus, StateChangedEvent

    window_events = EventBus()

    @window_events.on(STATE_CHANGED)
    def rerender(change):
        print(f"{change.slice} changed for {change.session_id}")

    window_events.emit_sync(STATE_CHANGED, StateChangedEvent(slice="window", session_id="s1"))
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from agent_session_store.logging import get_logger

logger = get_logger("events")


# ---------------------------------------------------------------------------
# Event names and payloads
# ---------------------------------------------------------------------------

STATE_CHANGED = "state_changed"
SNAPSHOT_CHANGED = "snapshot_changed"
STREAM_PHASE_CHANGED = "stream_phase_changed"
SESSION_EVICTED = "session_evicted"
PERMISSION_QUEUED = "permission_queued"


@dataclass
class StateChangedEvent:
    """A slice mutated its own state."""

    slice: str  # "window", "streaming", "usage", "permissions", ...
    session_id: str | None = None
    fields: tuple[str, ...] = ()


@dataclass
class SnapshotChangedEvent:
    """The composed store published a new snapshot."""

    snapshot: Any  # StoreSnapshot; typed loosely to keep this module import-free
    changed_slices: tuple[str, ...] = ()


@dataclass
class StreamPhaseChangedEvent:
    """A streamed message entered a new phase, or ``None`` once settled."""

    session_id: str
    message_id: str
    previous: str | None
    phase: str | None


@dataclass
class SessionEvictedEvent:
    session_id: str
    message_count: int = 0


@dataclass
class PermissionQueuedEvent:
    session_id: str
    permission_id: str
    type: str = ""


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

# Sync or async callables taking the event payload.
Listener = Callable[[Any], Any]


@dataclass
class _Subscription:
    listener: Listener
    priority: int  # lower runs first
    source: str
    order: int


class EventBus:
    """
    Per-slice publish/subscribe.

    Listeners run by ascending priority, then subscription order. A listener
    that raises is logged and skipped; the emitter and the other listeners
    are unaffected, so a broken subscriber cannot leave a slice half-updated.
    """

    def __init__(self) -> None:
        self._subs: dict[str, list[_Subscription]] = {}
        self._counter = itertools.count()

    def on(
        self,
        event: str,
        listener: Listener | None = None,
        priority: int = 0,
        source: str = "",
    ) -> Callable[[], None] | Callable[[Listener], Listener]:
        """
        Subscribe *listener* to *event* and return a callable that removes it.

        Without a listener this works as a decorator and returns the
        decorated function unchanged.
        """
        if listener is None:

            def register(fn: Listener) -> Listener:
                self.on(event, fn, priority=priority, source=source)
                return fn

            return register

        sub = _Subscription(listener, priority, source, next(self._counter))
        bucket = self._subs.setdefault(event, [])
        bucket.append(sub)
        bucket.sort(key=lambda s: (s.priority, s.order))

        def unsubscribe() -> None:
            if sub in self._subs.get(event, ()):
                self._subs[event].remove(sub)

        return unsubscribe

    def off(self, event: str, listener: Listener) -> None:
        """Remove every subscription of *listener* to *event*."""
        if event in self._subs:
            self._subs[event] = [s for s in self._subs[event] if s.listener is not listener]

    def off_by_source(self, source: str) -> int:
        """Drop all subscriptions made by *source*. Returns how many were removed."""
        removed = 0
        for event, subs in self._subs.items():
            kept = [s for s in subs if s.source != source]
            removed += len(subs) - len(kept)
            self._subs[event] = kept
        return removed

    def clear(self, event: str | None = None) -> None:
        if event is None:
            self._subs.clear()
        else:
            self._subs.pop(event, None)

    @property
    def handler_count(self) -> int:
        return sum(len(subs) for subs in self._subs.values())

    def has_handlers(self, event: str) -> bool:
        return bool(self._subs.get(event))

    def _call_each(self, event: str, data: Any) -> Iterator[tuple[_Subscription, Any]]:
        # Iterate over a copy: listeners may unsubscribe while being notified.
        for sub in list(self._subs.get(event, ())):
            try:
                yield sub, sub.listener(data)
            except Exception as e:
                logger.warning("Listener for %s from %r failed: %s", event, sub.source, e)

    async def emit(self, event: str, data: Any = None) -> list[Any]:
        """Notify sync and async listeners; returns their non-None results."""
        results: list[Any] = []
        for sub, outcome in self._call_each(event, data):
            if asyncio.iscoroutine(outcome) or asyncio.isfuture(outcome):
                try:
                    outcome = await outcome
                except Exception as e:
                    logger.warning("Listener for %s from %r failed: %s", event, sub.source, e)
                    continue
            if outcome is not None:
                results.append(outcome)
        return results

    def emit_sync(self, event: str, data: Any = None) -> list[Any]:
        """
        Notify listeners without awaiting anything.

        Slices mutate synchronously and notify through here. Coroutine
        listeners cannot run in this path and are skipped with a warning.
        """
        results: list[Any] = []
        for sub, outcome in self._call_each(event, data):
            if asyncio.iscoroutine(outcome):
                outcome.close()
                logger.warning("Skipped async listener for %s from %r", event, sub.source)
                continue
            if outcome is not None:
                results.append(outcome)
        return results
