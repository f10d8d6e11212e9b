"""
Context-window usage accounting.

Usage is derived from the token counts of a session's last assistant
message, measured against the model's context limit minus an output
reservation. Results are cached per session and keyed by that message id,
so repeated reads during rendering do not recompute.

Example:
    from agent_session_store.usage import calculate_context_usage

    usage = calculate_context_usage(50_000, 100_000, 8_000)
    usage.threshold_limit  # 92000
    usage.percentage       # 54.35
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

from agent_session_store.config import UsageConfig
from agent_session_store.events import STATE_CHANGED, EventBus, StateChangedEvent
from agent_session_store.logging import get_logger
from agent_session_store.models import ContextUsage, Message, MessageTokens

logger = get_logger("usage")

# Upper bound on the output reservation subtracted from the context window.
MAX_OUTPUT_RESERVATION = 32_000


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def calculate_context_usage(
    total_tokens: int,
    context_limit: int,
    output_limit: int,
) -> ContextUsage:
    """
    Compute usage of a context window.

    The output reservation is ``output_limit`` when positive, else the
    32k default, never above 32k and never above the context itself. A zero
    context yields a threshold of 1 and a percentage of 0.
    """
    safe_context = max(int(context_limit or 0), 0)
    has_output = bool(output_limit) and output_limit > 0
    safe_output = int(output_limit) if has_output else 0

    reservation = min(safe_output if has_output else MAX_OUTPUT_RESERVATION, MAX_OUTPUT_RESERVATION)
    normalized_output = min(reservation, safe_context)
    threshold = max(safe_context - normalized_output, 1) if safe_context > 0 else 0
    percentage = (total_tokens / threshold) * 100 if threshold > 0 else 0.0

    return ContextUsage(
        total_tokens=total_tokens,
        percentage=min(max(percentage, 0.0), 100.0),
        context_limit=safe_context,
        output_limit=safe_output,
        normalized_output=normalized_output,
        threshold_limit=threshold or 1,
    )


def extract_tokens_from_message(message: Message) -> int:
    """
    Total tokens reported for a message.

    Sums input, output, reasoning and cache reads/writes from the message
    header, falling back to the latest ``step-finish`` part when the header
    has not been filled in yet.
    """
    total = message.info.tokens.total
    if total > 0:
        return total
    for part in reversed(message.parts):
        if part.type != "step-finish":
            continue
        tokens = part.metadata.get("tokens")
        if isinstance(tokens, dict):
            return MessageTokens.from_dict(tokens).total
    return 0


def last_assistant_message(messages: Sequence[Message]) -> Message | None:
    for message in reversed(messages):
        if message.role == "assistant":
            return message
    return None


# ---------------------------------------------------------------------------
# Tracker slice
# ---------------------------------------------------------------------------


class ContextUsageTracker:
    """
    Per-session context usage cache.

    The cache entry for a session is valid for as long as its last assistant
    message stays the same. When only the limits change (the user switched
    model) the cached token count is rescaled instead of re-extracted.
    """

    def __init__(self, config: UsageConfig | None = None) -> None:
        self.config = config or UsageConfig()
        self.events = EventBus()
        self._usage: dict[str, ContextUsage] = {}
        self._limits: dict[str, tuple[int, int]] = {}

    def _store(self, session_id: str, usage: ContextUsage) -> None:
        if self._usage.get(session_id) == usage:
            return
        self._usage[session_id] = usage
        self.events.emit_sync(
            STATE_CHANGED, StateChangedEvent(slice="usage", session_id=session_id)
        )

    def cached(self, session_id: str) -> ContextUsage | None:
        return self._usage.get(session_id)

    def all(self) -> dict[str, ContextUsage]:
        return dict(self._usage)

    def get_context_usage(
        self,
        session_id: str,
        context_limit: int,
        output_limit: int,
        messages: Sequence[Message],
    ) -> ContextUsage | None:
        """Usage for a session, or ``None`` when nothing can be computed."""
        if not session_id:
            return None

        limits = calculate_context_usage(0, context_limit, output_limit)
        if limits.context_limit == 0:
            return None
        self._limits[session_id] = (context_limit, output_limit)

        last = last_assistant_message(messages)
        if last is None:
            return None

        cached = self._usage.get(session_id)
        if cached is not None and cached.last_message_id == last.id:
            limits_changed = (
                cached.context_limit != limits.context_limit
                or cached.normalized_output != limits.normalized_output
                or cached.threshold_limit != limits.threshold_limit
            )
            if limits_changed and cached.total_tokens > 0:
                rescaled = ContextUsage(
                    total_tokens=cached.total_tokens,
                    percentage=min(cached.total_tokens / limits.threshold_limit * 100, 100.0),
                    context_limit=limits.context_limit,
                    output_limit=limits.output_limit,
                    normalized_output=limits.normalized_output,
                    threshold_limit=limits.threshold_limit,
                    last_message_id=last.id,
                )
                self._store(session_id, rescaled)
                return rescaled
            if not limits_changed and cached.total_tokens > 0:
                return cached

        total = extract_tokens_from_message(last)
        if total == 0:
            return cached

        usage = calculate_context_usage(total, context_limit, output_limit)
        result = ContextUsage(
            total_tokens=total,
            percentage=usage.percentage,
            context_limit=usage.context_limit,
            output_limit=usage.output_limit,
            normalized_output=usage.normalized_output,
            threshold_limit=usage.threshold_limit,
            last_message_id=last.id,
        )
        self._store(session_id, result)
        return result

    def update_session_context_usage(
        self,
        session_id: str,
        context_limit: int,
        output_limit: int,
        messages: Sequence[Message],
    ) -> ContextUsage | None:
        """Recompute usage from the last assistant message, ignoring the cache."""
        last = last_assistant_message(messages)
        if last is None:
            return None
        total = extract_tokens_from_message(last)
        if total == 0:
            return None

        self._limits[session_id] = (context_limit, output_limit)
        usage = calculate_context_usage(total, context_limit, output_limit)
        result = ContextUsage(
            total_tokens=total,
            percentage=usage.percentage,
            context_limit=usage.context_limit,
            output_limit=usage.output_limit,
            normalized_output=usage.normalized_output,
            threshold_limit=usage.threshold_limit,
            last_message_id=last.id,
        )
        self._store(session_id, result)
        return result

    def initialize_session_context_usage(
        self,
        session_id: str,
        context_limit: int,
        output_limit: int,
        messages: Sequence[Message],
    ) -> ContextUsage | None:
        """Compute usage only when the session has none (or only zero) yet."""
        existing = self._usage.get(session_id)
        if existing is None or existing.total_tokens == 0:
            return self.update_session_context_usage(
                session_id, context_limit, output_limit, messages
            )
        return existing

    async def poll_for_token_updates(
        self,
        session_id: str,
        message_id: str,
        get_messages: Callable[[], Sequence[Message]],
        max_attempts: int | None = None,
    ) -> bool:
        """
        Wait for the backend to fill in token counts for *message_id*.

        Messages are re-read through *get_messages* on every attempt. The
        limits last used for the session are reused for the recomputation.
        Returns True once usage was updated.
        """
        attempts = max_attempts if max_attempts is not None else self.config.poll_max_attempts
        await asyncio.sleep(self.config.poll_initial_delay)

        for attempt in range(1, attempts + 1):
            messages = get_messages()
            message = next((m for m in messages if m.id == message_id), None)
            if message is not None and message.role == "assistant":
                if extract_tokens_from_message(message) > 0:
                    context_limit, output_limit = self._limits.get(session_id, (0, 0))
                    self.update_session_context_usage(
                        session_id, context_limit, output_limit, messages
                    )
                    return True
            if attempt < attempts:
                await asyncio.sleep(self.config.poll_interval)

        logger.debug(
            "Token counts for %s in %s did not arrive after %d attempts",
            message_id,
            session_id,
            attempts,
        )
        return False

    def clear_session(self, session_id: str) -> None:
        self._limits.pop(session_id, None)
        if self._usage.pop(session_id, None) is not None:
            self.events.emit_sync(
                STATE_CHANGED, StateChangedEvent(slice="usage", session_id=session_id)
            )
