"""Shared pytest fixtures for agent-session-store tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from agent_session_store import (
    AgentRegistry,
    ComposedStore,
    StateStorage,
    StoreConfig,
    StoreContext,
)
from agent_session_store.config import StreamingConfig, UsageConfig, WindowConfig
from agent_session_store.models import (
    AgentDefinition,
    Message,
    MessageInfo,
    MessageTokens,
    Part,
    PermissionRequest,
    Session,
)
from agent_session_store.transport import BackendClient, MessagePage, StreamPartEvent


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_message(
    session_id: str,
    index: int,
    role: str = "assistant",
    tokens: int = 0,
    **info: Any,
) -> Message:
    """A message with a stable id ``<session>-m<index>`` and one text part."""
    message_id = f"{session_id}-m{index:03d}"
    return Message(
        info=MessageInfo(
            id=message_id,
            session_id=session_id,
            role=role,  # type: ignore[arg-type]
            created_at=index,
            tokens=MessageTokens(input=tokens),
            **info,
        ),
        parts=[Part(id=f"{message_id}-p0", type="text", message_id=message_id, text=f"text {index}")],
    )


def make_messages(session_id: str, count: int, start: int = 0) -> list[Message]:
    """Alternating user/assistant messages."""
    return [
        make_message(session_id, i, role="user" if i % 2 == 0 else "assistant")
        for i in range(start, start + count)
    ]


def make_permission(
    session_id: str = "ses_1",
    permission_id: str = "perm_1",
    type: str = "edit",
) -> PermissionRequest:
    return PermissionRequest(
        id=permission_id,
        type=type,
        session_id=session_id,
        message_id="msg_1",
        title=f"{type} file",
    )


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fake backend
# ---------------------------------------------------------------------------


class FakeBackend(BackendClient):
    """In-memory backend that records every call."""

    def __init__(self) -> None:
        self.messages: dict[str, list[Message]] = {}
        self.sessions: list[Session] = []
        self.files: dict[str, bytes] = {}
        self.stream_events: list[StreamPartEvent] = []
        self.hang_after_events = False
        self.fail_fetch = False
        self.respond_ok = True
        self.fetch_calls: list[dict[str, Any]] = []
        self.sent: list[dict[str, Any]] = []
        self.permission_responses: list[tuple[str, str, str]] = []
        self.aborted: list[str] = []
        self.deleted: list[str] = []
        self.closed = False

    async def fetch_messages(
        self,
        session_id: str,
        limit: int,
        before: str | None = None,
        after: str | None = None,
    ) -> MessagePage:
        self.fetch_calls.append(
            {"session_id": session_id, "limit": limit, "before": before, "after": after}
        )
        if self.fail_fetch:
            raise ConnectionError("backend unavailable")

        messages = self.messages.get(session_id, [])
        ids = [m.id for m in messages]
        if before is not None:
            older = messages[: ids.index(before)]
            return MessagePage(messages=older[-limit:], has_more_above=len(older) > limit)
        if after is not None:
            newer = messages[ids.index(after) + 1 :]
            return MessagePage(messages=newer[:limit], has_more_below=len(newer) > limit)
        return MessagePage(messages=messages[-limit:], has_more_above=len(messages) > limit)

    async def send_message(
        self,
        session_id: str,
        content: str,
        provider_id: str,
        model_id: str,
        agent: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamPartEvent]:
        self.sent.append(
            {
                "session_id": session_id,
                "content": content,
                "provider_id": provider_id,
                "model_id": model_id,
                "agent": agent,
                "attachments": attachments,
            }
        )
        for event in self.stream_events:
            yield event
        if self.hang_after_events:
            await asyncio.Event().wait()

    async def respond_to_permission(
        self,
        session_id: str,
        permission_id: str,
        response: str,
        directory: str | None = None,
    ) -> bool:
        self.permission_responses.append((session_id, permission_id, response))
        return self.respond_ok

    async def abort_session(self, session_id: str, directory: str | None = None) -> bool:
        self.aborted.append(session_id)
        return True

    async def list_sessions(self, directory: str | None = None) -> list[Session] | None:
        return list(self.sessions)

    async def create_session(
        self,
        title: str | None = None,
        parent_id: str | None = None,
        directory: str | None = None,
    ) -> Session | None:
        session = Session(
            id=f"ses_new{len(self.sessions)}", title=title or "", directory=directory
        )
        self.sessions.append(session)
        return session

    async def delete_session(self, session_id: str) -> bool:
        self.deleted.append(session_id)
        return True

    async def update_session_title(self, session_id: str, title: str) -> Session | None:
        return Session(id=session_id, title=title)

    async def read_file(self, path: str, directory: str | None = None) -> bytes | None:
        return self.files.get(path)

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def agents() -> AgentRegistry:
    registry = AgentRegistry(default_agent="build")
    registry.register(AgentDefinition(name="build", edit_permission="ask"))
    registry.register(AgentDefinition(name="plan", tools={"edit": False}))
    return registry


@pytest.fixture
def config() -> StoreConfig:
    return StoreConfig(
        window=WindowConfig(
            max_window=240,
            active_window=180,
            viewport_messages=120,
            page_size=50,
            viewport_margin=10,
            max_materialized_sessions=3,
        ),
        streaming=StreamingConfig(quiescence_timeout=2.0, completion_timeout=10.0),
        usage=UsageConfig(poll_initial_delay=0.0, poll_interval=0.0, poll_max_attempts=3),
    )


@pytest.fixture
def context(
    backend: FakeBackend, config: StoreConfig, agents: AgentRegistry, clock: FakeClock
) -> StoreContext:
    return StoreContext(
        backend=backend, config=config, agents=agents, storage=StateStorage(), clock=clock
    )


@pytest.fixture
def store(context: StoreContext) -> ComposedStore:
    return ComposedStore(context)
