"""Tests for the streaming lifecycle tracker."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock

from agent_session_store.config import StreamingConfig
from agent_session_store.events import (
    STATE_CHANGED,
    STREAM_PHASE_CHANGED,
    StateChangedEvent,
    StreamPhaseChangedEvent,
)
from agent_session_store.streaming import StreamingLifecycleTracker


@pytest.fixture
def tracker(clock: FakeClock) -> StreamingLifecycleTracker:
    return StreamingLifecycleTracker(
        StreamingConfig(quiescence_timeout=2.0, completion_timeout=10.0), clock=clock
    )


# ---------------------------------------------------------------------------
# Phase transitions
# ---------------------------------------------------------------------------


class TestTransitions:
    def test_first_part_starts_streaming(self, tracker: StreamingLifecycleTracker) -> None:
        phase = tracker.touch("s1", "m1")

        assert phase == "streaming"
        assert tracker.streaming_message_id("s1") == "m1"
        assert tracker.session_activity_phase("s1") == "busy"

    def test_quiescence_moves_to_cooldown(
        self, tracker: StreamingLifecycleTracker, clock: FakeClock
    ) -> None:
        tracker.touch("s1", "m1")
        clock.advance(2.0)

        assert tracker.sweep() == 1
        assert tracker.phase("m1") == "cooldown"
        assert tracker.session_activity_phase("s1") == "cooldown"

    def test_new_part_revives_cooldown(
        self, tracker: StreamingLifecycleTracker, clock: FakeClock
    ) -> None:
        tracker.touch("s1", "m1")
        clock.advance(3.0)
        tracker.sweep()

        assert tracker.touch("s1", "m1") == "streaming"
        clock.advance(1.0)
        assert tracker.sweep() == 0
        assert tracker.phase("m1") == "streaming"

    def test_completion_timeout(self, tracker: StreamingLifecycleTracker, clock: FakeClock) -> None:
        tracker.touch("s1", "m1")
        clock.advance(2.0)
        tracker.sweep()
        clock.advance(10.0)

        tracker.sweep()

        assert tracker.phase("m1") == "completed"
        assert tracker.streaming_message_id("s1") is None
        assert tracker.session_activity_phase("s1") == "idle"

    def test_sweep_can_skip_cooldown(
        self, tracker: StreamingLifecycleTracker, clock: FakeClock
    ) -> None:
        tracker.touch("s1", "m1")
        clock.advance(30.0)

        assert tracker.sweep() == 2
        assert tracker.phase("m1") == "completed"

    def test_explicit_completion(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.touch("s1", "m1")

        assert tracker.complete("m1")
        assert not tracker.complete("m1")
        assert tracker.phase("m1") == "completed"

    def test_completed_is_terminal(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.touch("s1", "m1")
        tracker.complete("m1")

        assert tracker.touch("s1", "m1") == "completed"
        assert tracker.streaming_message_id("s1") is None

    def test_settle_removes_only_completed(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.touch("s1", "m1")
        assert not tracker.mark_message_stream_settled("m1")

        tracker.complete("m1")
        assert tracker.mark_message_stream_settled("m1")
        assert tracker.lifecycle("m1") is None

    def test_settle_session_drops_its_completed_lifecycles(
        self, tracker: StreamingLifecycleTracker
    ) -> None:
        tracker.touch("s1", "m1")
        tracker.touch("s1", "m2")
        tracker.touch("s2", "m3")
        tracker.complete("m1")
        tracker.complete("m3")

        assert tracker.settle_session("s1") == 1
        assert tracker.lifecycle("m1") is None
        assert tracker.phase("m2") == "streaming"
        assert tracker.phase("m3") == "completed"

    def test_phase_events(self, tracker: StreamingLifecycleTracker, clock: FakeClock) -> None:
        seen: list[StreamPhaseChangedEvent] = []
        tracker.events.on(STREAM_PHASE_CHANGED, seen.append)

        tracker.touch("s1", "m1")
        clock.advance(2.0)
        tracker.sweep()
        tracker.complete("m1")

        assert [(e.previous, e.phase) for e in seen] == [
            (None, "streaming"),
            ("streaming", "cooldown"),
            ("cooldown", "completed"),
        ]

    def test_latest_message_is_streaming_message(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.touch("s1", "m1")
        tracker.touch("s1", "m2")

        assert tracker.streaming_message_id("s1") == "m2"
        tracker.complete("m1")
        assert tracker.streaming_message_id("s1") == "m2"


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------


class TestTimers:
    @pytest.mark.asyncio
    async def test_timers_drive_transitions(self) -> None:
        tracker = StreamingLifecycleTracker(
            StreamingConfig(quiescence_timeout=0.01, completion_timeout=0.01)
        )
        tracker.touch("s1", "m1")

        for _ in range(100):
            if tracker.phase("m1") == "completed":
                break
            await asyncio.sleep(0.01)

        assert tracker.phase("m1") == "completed"
        tracker.close()

    def test_no_loop_needs_sweep(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.touch("s1", "m1")
        assert tracker._timers == {}


# ---------------------------------------------------------------------------
# Operations and aborts
# ---------------------------------------------------------------------------


class TestAbort:
    @pytest.mark.asyncio
    async def test_operation_makes_session_busy(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.begin_operation("s1")
        assert tracker.session_activity_phase("s1") == "busy"

        tracker.end_operation("s1")
        assert tracker.session_activity_phase("s1") == "idle"

    @pytest.mark.asyncio
    async def test_abort_sets_signal_and_completes(
        self, tracker: StreamingLifecycleTracker
    ) -> None:
        signal = tracker.begin_operation("s1")
        tracker.touch("s1", "m1")
        tracker.touch("s2", "m2")

        assert tracker.abort("s1")

        assert signal.is_set()
        assert tracker.phase("m1") == "completed"
        assert tracker.phase("m2") == "streaming"
        assert tracker.is_session_aborted("s1")

    @pytest.mark.asyncio
    async def test_abort_is_idempotent(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.begin_operation("s1")
        tracker.touch("s1", "m1")

        assert tracker.abort("s1")
        assert not tracker.abort("s1")
        assert tracker.phase("m1") == "completed"

    def test_abort_without_activity(self, tracker: StreamingLifecycleTracker) -> None:
        assert not tracker.abort("s1")
        assert not tracker.is_session_aborted("s1")

    @pytest.mark.asyncio
    async def test_acknowledge_and_new_operation_clear_flag(
        self, tracker: StreamingLifecycleTracker
    ) -> None:
        tracker.begin_operation("s1")
        tracker.abort("s1")
        tracker.acknowledge_session_abort("s1")
        assert not tracker.is_session_aborted("s1")

        tracker.abort("s1")  # signal already set, nothing streaming
        tracker.touch("s1", "m1")
        tracker.abort("s1")
        assert tracker.is_session_aborted("s1")
        tracker.begin_operation("s1")
        assert not tracker.is_session_aborted("s1")

    def test_clear_session(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.touch("s1", "m1")
        tracker.clear_session("s1")

        assert tracker.lifecycle("m1") is None
        assert tracker.session_activity_phase("s1") == "idle"


# ---------------------------------------------------------------------------
# Abort confirmation prompt
# ---------------------------------------------------------------------------


class TestAbortPrompt:
    def test_arm_uses_configured_duration(
        self, tracker: StreamingLifecycleTracker, clock: FakeClock
    ) -> None:
        expires_at = tracker.arm_abort_prompt("s1")

        assert expires_at == clock.now + 3.0
        prompt = tracker.abort_prompt()
        assert prompt is not None
        assert prompt.session_id == "s1"

    def test_prompt_expires(self, tracker: StreamingLifecycleTracker, clock: FakeClock) -> None:
        tracker.arm_abort_prompt("s1", duration=1.5)

        clock.advance(1.0)
        assert tracker.abort_prompt() is not None
        clock.advance(0.5)
        assert tracker.abort_prompt() is None

    def test_rearming_replaces_session(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.arm_abort_prompt("s1")
        tracker.arm_abort_prompt("s2")

        prompt = tracker.abort_prompt()
        assert prompt is not None and prompt.session_id == "s2"

    def test_clear(self, tracker: StreamingLifecycleTracker) -> None:
        changes: list[StateChangedEvent] = []
        tracker.arm_abort_prompt("s1")
        tracker.events.on(STATE_CHANGED, changes.append)

        tracker.clear_abort_prompt()
        tracker.clear_abort_prompt()

        assert tracker.abort_prompt() is None
        assert [c.fields for c in changes] == [("abort_prompt",)]

    def test_clear_session_drops_its_prompt(self, tracker: StreamingLifecycleTracker) -> None:
        tracker.arm_abort_prompt("s1")
        tracker.clear_session("s2")
        assert tracker.abort_prompt() is not None

        tracker.clear_session("s1")
        assert tracker.abort_prompt() is None
