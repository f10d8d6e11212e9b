"""Session, message, and bookkeeping data models."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["user", "assistant"]
Direction = Literal["up", "down"]
StreamPhase = Literal["streaming", "cooldown", "completed"]
ActivityPhase = Literal["idle", "busy", "cooldown"]
PermissionResponse = Literal["once", "always", "reject"]
EditPermissionMode = Literal["ask", "allow", "full", "deny"]
SimplePermissionValue = Literal["allow", "ask", "deny"]

# Escalation order for toggling; "deny" is terminal and never part of it.
EDIT_PERMISSION_SEQUENCE: tuple[EditPermissionMode, ...] = ("ask", "allow", "full")
EDIT_PERMISSION_MODES: tuple[EditPermissionMode, ...] = ("ask", "allow", "full", "deny")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    """A chat session as known to the registry."""

    id: str
    directory: str | None = None
    title: str = ""
    created_by_client: bool = False
    created_at: int = 0  # epoch ms
    updated_at: int = 0
    share_url: str | None = None
    parent_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        times = data.get("time") or {}
        share = data.get("share") or {}
        return cls(
            id=data["id"],
            directory=data.get("directory"),
            title=data.get("title", "") or "",
            created_at=times.get("created", 0) or 0,
            updated_at=times.get("updated", 0) or 0,
            share_url=share.get("url") if isinstance(share, dict) else None,
            parent_id=data.get("parentID"),
        )


@dataclass
class MessageTokens:
    """Token accounting reported by the backend for one message."""

    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.reasoning + self.cache_read + self.cache_write

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MessageTokens:
        if not isinstance(data, dict):
            return cls()
        cache = data.get("cache") or {}
        return cls(
            input=int(data.get("input", 0) or 0),
            output=int(data.get("output", 0) or 0),
            reasoning=int(data.get("reasoning", 0) or 0),
            cache_read=int(cache.get("read", 0) or 0),
            cache_write=int(cache.get("write", 0) or 0),
        )


@dataclass
class Part:
    """One element of a message: text, reasoning, tool call, file, step marker."""

    id: str
    type: str
    message_id: str = ""
    session_id: str = ""
    text: str = ""
    tool: str | None = None
    call_id: str | None = None
    state: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Part:
        known = {"id", "type", "messageID", "sessionID", "text", "tool", "callID", "state"}
        return cls(
            id=data["id"],
            type=data.get("type", "text"),
            message_id=data.get("messageID", ""),
            session_id=data.get("sessionID", ""),
            text=data.get("text", "") or "",
            tool=data.get("tool"),
            call_id=data.get("callID"),
            state=dict(data.get("state") or {}),
            metadata={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class MessageInfo:
    """Header of a message, without its parts."""

    id: str
    session_id: str
    role: Role = "assistant"
    created_at: int = field(default_factory=_now_ms)
    completed_at: int | None = None
    provider_id: str | None = None
    model_id: str | None = None
    mode: str | None = None  # agent name the message was produced under
    tokens: MessageTokens = field(default_factory=MessageTokens)
    summary_title: str | None = None
    error: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageInfo:
        times = data.get("time") or {}
        summary = data.get("summary")
        return cls(
            id=data["id"],
            session_id=data.get("sessionID", ""),
            role=data.get("role", "assistant"),
            created_at=times.get("created", 0) or 0,
            completed_at=times.get("completed"),
            provider_id=data.get("providerID"),
            model_id=data.get("modelID"),
            mode=data.get("mode"),
            tokens=MessageTokens.from_dict(data.get("tokens")),
            summary_title=summary.get("title") if isinstance(summary, dict) else None,
            error=data.get("error"),
        )


@dataclass
class Message:
    """A message header plus its ordered parts."""

    info: MessageInfo
    parts: list[Part] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def role(self) -> str:
        return self.info.role

    def upsert_part(self, part: Part) -> None:
        """Replace the part with the same id in place, or append it."""
        for idx, existing in enumerate(self.parts):
            if existing.id == part.id:
                self.parts[idx] = part
                return
        self.parts.append(part)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            info=MessageInfo.from_dict(data["info"]),
            parts=[Part.from_dict(p) for p in data.get("parts", [])],
        )


@dataclass
class SessionMemoryState:
    """Per-session bookkeeping for the in-memory message window."""

    loaded_count: int = 0
    has_more_above: bool = False
    has_more_below: bool = False
    last_accessed_at: float = 0.0
    is_streaming: bool = False
    is_materialized: bool = False
    registered_seq: int = 0


@dataclass
class ViewportAnchor:
    """The message the UI viewport is centered on."""

    index: int
    message_id: str | None = None
    pending: bool = False


@dataclass
class StreamLifecycle:
    """Streaming phase of one in-flight message."""

    message_id: str
    session_id: str
    phase: StreamPhase = "streaming"
    started_at: float = 0.0
    last_update_at: float = 0.0


@dataclass(frozen=True)
class AbortPrompt:
    """A pending "press again to abort" confirmation for one session."""

    session_id: str
    expires_at: float

    def is_active(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class ContextUsage:
    """Context-window usage of a session, derived from its last assistant message."""

    total_tokens: int
    percentage: float
    context_limit: int
    output_limit: int
    normalized_output: int
    threshold_limit: int
    last_message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTokens": self.total_tokens,
            "percentage": self.percentage,
            "contextLimit": self.context_limit,
            "outputLimit": self.output_limit,
            "normalizedOutput": self.normalized_output,
            "thresholdLimit": self.threshold_limit,
            "lastMessageId": self.last_message_id,
        }


@dataclass
class PermissionRequest:
    """A tool-permission request received from the backend."""

    id: str
    type: str
    session_id: str
    message_id: str = ""
    call_id: str | None = None
    title: str = ""
    pattern: str | list[str] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=_now_ms)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionRequest:
        times = data.get("time") or {}
        return cls(
            id=data["id"],
            type=data.get("type", "") or "",
            session_id=data.get("sessionID", ""),
            message_id=data.get("messageID", "") or "",
            call_id=data.get("callID"),
            title=data.get("title", "") or "",
            pattern=data.get("pattern"),
            metadata=dict(data.get("metadata") or {}),
            created_at=times.get("created", 0) or 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "sessionID": self.session_id,
            "messageID": self.message_id,
            "callID": self.call_id,
            "title": self.title,
            "pattern": self.pattern,
            "metadata": self.metadata,
            "time": {"created": self.created_at},
        }


@dataclass(frozen=True)
class ModelSelection:
    """A provider/model pair chosen for a session or an agent."""

    provider_id: str
    model_id: str

    def to_dict(self) -> dict[str, str]:
        return {"providerId": self.provider_id, "modelId": self.model_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelSelection:
        return cls(
            provider_id=data.get("providerId") or data.get("providerID") or "",
            model_id=data.get("modelId") or data.get("modelID") or "",
        )


@dataclass
class AgentDefinition:
    """
    An agent as declared by the backend configuration.

    Attributes:
        name: Agent name (e.g., "build", "plan").
        edit_permission: Declared ``permission.edit`` value, if any.
        bash_permission: A single value or a command-pattern map.
        webfetch_permission: Declared ``permission.webfetch`` value, if any.
        tools: Tool name to enabled flag.
        model: Model the agent is pinned to, if any.
    """

    name: str
    edit_permission: str | None = None
    bash_permission: str | dict[str, str] | None = None
    webfetch_permission: str | None = None
    tools: dict[str, bool] = field(default_factory=dict)
    model: ModelSelection | None = None
    mode: str = "primary"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentDefinition:
        permission = data.get("permission") or {}
        model = data.get("model")
        return cls(
            name=data["name"],
            edit_permission=permission.get("edit"),
            bash_permission=permission.get("bash"),
            webfetch_permission=permission.get("webfetch"),
            tools=dict(data.get("tools") or {}),
            model=ModelSelection.from_dict(model) if isinstance(model, dict) else None,
            mode=data.get("mode", "primary"),
        )


@dataclass
class AttachedFile:
    """A file attached to the next outgoing message."""

    id: str
    filename: str
    mime_type: str
    size: int
    data_url: str
    source: Literal["local", "server"] = "local"
    server_path: str | None = None


@dataclass
class MessageCursor:
    """Last completed message of a session."""

    message_id: str
    completed_at: int
