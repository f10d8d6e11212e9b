"""Session list, current session and working-directory resolution."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Any

from agent_session_store.errors import SessionResult, TransientFetchError
from agent_session_store.events import STATE_CHANGED, EventBus, StateChangedEvent
from agent_session_store.logging import get_logger
from agent_session_store.models import Session

if TYPE_CHECKING:
    from agent_session_store.transport import BackendClient

logger = get_logger("sessions")


def normalize_path(value: str | None) -> str | None:
    """
    Normalize a directory path for comparison.

    Backslashes become slashes and trailing slashes are dropped, except for
    the root itself. Blank values yield None.
    """
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    replaced = trimmed.replace("\\", "/")
    if replaced == "/":
        return "/"
    return replaced.rstrip("/") or "/"


class SessionRegistry:
    """
    Known sessions and the current selection.

    Sessions created through this client are remembered so the store can
    apply client-side defaults to them. A session's working directory is its
    worktree path when one is registered, else its own ``directory``.
    """

    def __init__(self, backend: BackendClient) -> None:
        self.backend = backend
        self.events = EventBus()
        self._sessions: list[Session] = []
        self.current_session_id: str | None = None
        self.last_loaded_directory: str | None = None
        self.is_loading = False
        self.error: str | None = None
        self._client_created: set[str] = set()
        self._worktrees: dict[str, str] = {}

    def _changed(self, session_id: str | None, *fields: str) -> None:
        self.events.emit_sync(
            STATE_CHANGED,
            StateChangedEvent(slice="sessions", session_id=session_id, fields=fields),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions)

    def get_session(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        return next((s for s in self._sessions if s.id == session_id), None)

    def get_sessions_by_directory(self, directory: str) -> list[Session]:
        target = normalize_path(directory)
        if target is None:
            return []
        return [s for s in self._sessions if normalize_path(s.directory) == target]

    def is_client_created(self, session_id: str) -> bool:
        return session_id in self._client_created

    @property
    def client_created(self) -> frozenset[str]:
        return frozenset(self._client_created)

    def get_worktree_path(self, session_id: str) -> str | None:
        return self._worktrees.get(session_id)

    def resolve_directory(self, session_id: str | None) -> str | None:
        """Working directory for backend calls made on behalf of a session."""
        if not session_id:
            return None
        worktree = self._worktrees.get(session_id)
        if worktree and worktree.strip():
            return normalize_path(worktree)
        session = self.get_session(session_id)
        if session is None:
            return None
        return normalize_path(session.directory)

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def set_current_session(self, session_id: str | None) -> None:
        if self.current_session_id == session_id:
            return
        self.current_session_id = session_id
        self._changed(session_id, "current_session_id")

    def mark_client_created(self, session_id: str) -> None:
        if session_id not in self._client_created:
            self._client_created.add(session_id)
            self._changed(session_id, "client_created")

    def set_worktree_path(self, session_id: str, path: str | None) -> None:
        if path:
            self._worktrees[session_id] = path
        else:
            self._worktrees.pop(session_id, None)
        self._changed(session_id, "worktrees")

    def set_session_directory(self, session_id: str, directory: str | None) -> None:
        self.apply_session_metadata(session_id, directory=normalize_path(directory))

    def update_session(self, session: Session) -> None:
        """Insert or replace a session, keeping list order."""
        for idx, existing in enumerate(self._sessions):
            if existing.id == session.id:
                self._sessions[idx] = session
                break
        else:
            self._sessions.insert(0, session)
        self._changed(session.id, "sessions")

    def apply_session_metadata(self, session_id: str, **metadata: Any) -> bool:
        """Patch fields of a known session. Unknown sessions are ignored."""
        session = self.get_session(session_id)
        if session is None:
            return False
        allowed = {k: v for k, v in metadata.items() if hasattr(session, k) and k != "id"}
        self.update_session(replace(session, **allowed))
        return True

    def remove_session(self, session_id: str) -> None:
        self._sessions = [s for s in self._sessions if s.id != session_id]
        self._client_created.discard(session_id)
        self._worktrees.pop(session_id, None)
        if self.current_session_id == session_id:
            self.current_session_id = None
        self._changed(session_id, "sessions", "current_session_id")

    def clear_error(self) -> None:
        if self.error is not None:
            self.error = None
            self._changed(None, "error")

    # ------------------------------------------------------------------
    # Backend operations
    # ------------------------------------------------------------------

    def _failed(
        self,
        operation: str,
        session_id: str | None = None,
        cause: BaseException | None = None,
    ) -> SessionResult:
        error = TransientFetchError(operation, session_id, cause)
        logger.warning("%s", error)
        self.error = str(error)
        self._changed(session_id, "error")
        return SessionResult(success=False, session_id=session_id, error=error)

    async def load_sessions(self, directory: str | None = None) -> SessionResult:
        """Replace the session list with the backend's."""
        self.is_loading = True
        self._changed(None, "is_loading")
        try:
            sessions = await self.backend.list_sessions(directory=directory)
        except Exception as e:
            self.is_loading = False
            return self._failed("load_sessions", cause=e)
        self.is_loading = False
        if sessions is None:
            return self._failed("load_sessions")

        self._sessions = sorted(sessions, key=lambda s: s.updated_at, reverse=True)
        for session in self._sessions:
            session.created_by_client = session.id in self._client_created
        self.last_loaded_directory = normalize_path(directory)
        self.error = None
        self._changed(None, "sessions", "is_loading", "error")
        return SessionResult(success=True, data=self.sessions)

    async def create_session(
        self,
        title: str | None = None,
        directory: str | None = None,
        parent_id: str | None = None,
    ) -> SessionResult:
        """Create a session on the backend and mark it as created here."""
        try:
            session = await self.backend.create_session(
                title=title, parent_id=parent_id, directory=normalize_path(directory)
            )
        except Exception as e:
            return self._failed("create_session", cause=e)
        if session is None:
            return self._failed("create_session")

        session = replace(session, created_by_client=True)
        self._client_created.add(session.id)
        self.update_session(session)
        return SessionResult(success=True, session_id=session.id, data=session)

    async def delete_session(self, session_id: str) -> SessionResult:
        try:
            ok = await self.backend.delete_session(session_id)
        except Exception as e:
            return self._failed("delete_session", session_id, e)
        if not ok:
            return self._failed("delete_session", session_id)
        self.remove_session(session_id)
        return SessionResult(success=True, session_id=session_id)

    async def update_session_title(self, session_id: str, title: str) -> SessionResult:
        try:
            session = await self.backend.update_session_title(session_id, title)
        except Exception as e:
            return self._failed("update_session_title", session_id, e)
        if session is None:
            return self._failed("update_session_title", session_id)
        session.created_by_client = session_id in self._client_created
        self.update_session(session)
        return SessionResult(success=True, session_id=session_id, data=session)
