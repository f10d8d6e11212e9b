"""
Error taxonomy and result objects.

Slice-level failures are caught at the slice boundary and reported through
result objects so that a failure in one session never propagates into the
composed store or another session's state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


class SessionStoreError(Exception):
    """Base class for all session store errors."""


class TransientFetchError(SessionStoreError):
    """A backend fetch or submission failed; local state was left unchanged."""

    def __init__(
        self,
        operation: str,
        session_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.operation = operation
        self.session_id = session_id
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        target = f" for session {session_id!r}" if session_id else ""
        super().__init__(f"{operation} failed{target}{detail}")


class StaleAnchorError(SessionStoreError):
    """The viewport anchor references a message that is no longer loaded."""

    def __init__(self, session_id: str, index: int, loaded: int) -> None:
        self.session_id = session_id
        self.index = index
        self.loaded = loaded
        super().__init__(
            f"Anchor index {index} is outside the {loaded} loaded messages of {session_id!r}"
        )


class PermissionConflict(SessionStoreError):
    """A response arrived for a permission that is no longer pending."""

    def __init__(self, session_id: str, permission_id: str) -> None:
        self.session_id = session_id
        self.permission_id = permission_id
        super().__init__(f"Permission {permission_id!r} is not pending for {session_id!r}")


class AttachmentTooLargeError(SessionStoreError):
    """An attachment exceeds the configured size limit."""

    def __init__(self, filename: str, size: int, limit: int) -> None:
        self.filename = filename
        self.size = size
        self.limit = limit
        super().__init__(
            f'File "{filename}" is too large. Maximum size is {limit // (1024 * 1024)}MB.'
        )


class OperationAbortedError(SessionStoreError):
    """The in-flight send for a session was aborted."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Operation for session {session_id!r} aborted")


SkipReason = Literal["current", "active", "not_materialized"]


@dataclass
class EvictionSkipped:
    """A session eviction refused on purpose. Not an error."""

    session_id: str
    reason: SkipReason


# ---------------------------------------------------------------------------
# Result objects
# ---------------------------------------------------------------------------


@dataclass
class LoadResult:
    """Outcome of a message load or pagination request."""

    success: bool
    session_id: str
    loaded: int = 0
    reason: str = ""  # "already_loaded", "window_full", "no_more", ...
    error: TransientFetchError | None = None

    @classmethod
    def ok(cls, session_id: str, loaded: int = 0, reason: str = "") -> LoadResult:
        return cls(success=True, session_id=session_id, loaded=loaded, reason=reason)

    @classmethod
    def failed(cls, session_id: str, error: TransientFetchError) -> LoadResult:
        return cls(success=False, session_id=session_id, error=error)


@dataclass
class SendResult:
    """Outcome of sending a message and consuming its stream."""

    success: bool
    session_id: str
    message_ids: list[str] = field(default_factory=list)
    aborted: bool = False
    error: SessionStoreError | None = None

    @classmethod
    def ok(cls, session_id: str, message_ids: list[str]) -> SendResult:
        return cls(success=True, session_id=session_id, message_ids=message_ids)

    @classmethod
    def aborted_result(cls, session_id: str, message_ids: list[str]) -> SendResult:
        return cls(
            success=False,
            session_id=session_id,
            message_ids=message_ids,
            aborted=True,
            error=OperationAbortedError(session_id),
        )

    @classmethod
    def failed(cls, session_id: str, error: SessionStoreError) -> SendResult:
        return cls(success=False, session_id=session_id, error=error)


@dataclass
class PermissionResult:
    """Outcome of a permission decision or response."""

    success: bool
    permission_id: str
    action: str = ""  # "auto_approved", "queued", "responded", "ignored"
    error: SessionStoreError | None = None


@dataclass
class SessionResult:
    """Outcome of a session registry operation against the backend."""

    success: bool
    session_id: str | None = None
    data: Any = None
    error: TransientFetchError | None = None
