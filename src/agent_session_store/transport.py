"""Backend interface consumed by the session store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal

from agent_session_store.models import (
    Message,
    MessageInfo,
    Part,
    PermissionRequest,
    PermissionResponse,
    Session,
)

StreamEventType = Literal["part", "message", "completed", "permission", "error"]


@dataclass
class MessagePage:
    """One page of messages, oldest first, with pagination flags."""

    messages: list[Message] = field(default_factory=list)
    has_more_above: bool = False
    has_more_below: bool = False


@dataclass
class StreamPartEvent:
    """
    One event of a streamed reply.

    ``part`` events carry a full part snapshot, ``message`` events an
    updated header, ``completed`` marks the end of a message and
    ``permission`` forwards a tool-permission request raised mid-stream.
    """

    type: StreamEventType
    session_id: str
    message_id: str = ""
    part: Part | None = None
    info: MessageInfo | None = None
    permission: PermissionRequest | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamPartEvent:
        """Build an event from a backend ``{"type", "properties"}`` payload."""
        kind = data.get("type", "")
        props = data.get("properties") or {}
        if kind == "message.part.updated":
            part = Part.from_dict(props["part"])
            return cls(
                type="part",
                session_id=part.session_id,
                message_id=part.message_id,
                part=part,
            )
        if kind == "message.updated":
            info = MessageInfo.from_dict(props["info"])
            event_type: StreamEventType = "completed" if info.completed_at else "message"
            return cls(type=event_type, session_id=info.session_id, message_id=info.id, info=info)
        if kind in ("permission.updated", "permission.asked"):
            permission = PermissionRequest.from_dict(props)
            return cls(
                type="permission",
                session_id=permission.session_id,
                message_id=permission.message_id,
                permission=permission,
            )
        if kind == "session.error":
            error = props.get("error") or {}
            message = error.get("data", {}).get("message") if isinstance(error, dict) else None
            return cls(
                type="error",
                session_id=props.get("sessionID", ""),
                error=message or str(error) or "unknown error",
            )
        raise ValueError(f"Unsupported stream event type: {kind!r}")


class BackendClient(ABC):
    """
    Abstract agent backend.

    ``fetch_messages`` and ``send_message`` raise on failure; the store
    converts those into result objects. The remaining calls report failure
    through their return value.
    """

    @abstractmethod
    async def fetch_messages(
        self,
        session_id: str,
        limit: int,
        before: str | None = None,
        after: str | None = None,
    ) -> MessagePage:
        """Fetch up to *limit* messages older than *before* or newer than *after*."""
        ...

    @abstractmethod
    def send_message(
        self,
        session_id: str,
        content: str,
        provider_id: str,
        model_id: str,
        agent: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamPartEvent]:
        """Send a user message and stream the reply events."""
        ...

    @abstractmethod
    async def respond_to_permission(
        self,
        session_id: str,
        permission_id: str,
        response: PermissionResponse,
        directory: str | None = None,
    ) -> bool:
        """Submit a permission decision. Returns True on success."""
        ...

    @abstractmethod
    async def abort_session(self, session_id: str, directory: str | None = None) -> bool:
        """Ask the backend to stop the running operation of a session."""
        ...

    @abstractmethod
    async def list_sessions(self, directory: str | None = None) -> list[Session] | None:
        """List sessions, or ``None`` on failure."""
        ...

    @abstractmethod
    async def create_session(
        self,
        title: str | None = None,
        parent_id: str | None = None,
        directory: str | None = None,
    ) -> Session | None:
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        ...

    @abstractmethod
    async def update_session_title(self, session_id: str, title: str) -> Session | None:
        ...

    @abstractmethod
    async def read_file(self, path: str, directory: str | None = None) -> bytes | None:
        """Read a file from the backend's workspace."""
        ...

    async def close(self) -> None:
        """Release resources. Default does nothing."""
        return None
