"""SQLite-backed storage for selection state and message cursors."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from agent_session_store.logging import get_logger
from agent_session_store.models import MessageCursor

logger = get_logger("storage")

# Keys of the persisted slices
CONTEXT_STORE_KEY = "context-store"
PERMISSION_STORE_KEY = "permission-store"


class StateStorage:
    """
    Key to JSON document storage plus per-session message cursors.

    Without a path, or once the database fails, everything is kept in
    memory for the rest of the process. Storage errors are logged and never
    raised.
    """

    def __init__(self, db_path: str | Path | None = None):
        self._db_path: str | None = None
        self._memory: dict[str, str] = {}
        self._cursors: dict[str, MessageCursor] = {}
        if db_path is not None:
            path = Path(db_path).expanduser()
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                self._db_path = str(path)
                self._init_db()
            except (OSError, sqlite3.Error) as e:
                self._fallback(e)

    @property
    def is_persistent(self) -> bool:
        return self._db_path is not None

    def _fallback(self, error: BaseException) -> None:
        if self._db_path is not None:
            logger.warning("State storage unavailable, using memory: %s", error)
        self._db_path = None

    def _init_db(self) -> None:
        """Initialize database tables."""
        with sqlite3.connect(self._db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT DEFAULT '{}'
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS message_cursors (
                    session_id TEXT PRIMARY KEY,
                    message_id TEXT NOT NULL,
                    completed_at INTEGER NOT NULL
                )
            """)
            conn.commit()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get(self, key: str) -> dict[str, Any] | None:
        """Load a stored document. Unreadable documents read as missing."""
        raw: str | None = None
        if self._db_path is not None:
            try:
                with sqlite3.connect(self._db_path) as conn:
                    row = conn.execute("SELECT value FROM state WHERE key = ?", (key,)).fetchone()
                raw = row[0] if row else None
            except sqlite3.Error as e:
                self._fallback(e)
                raw = self._memory.get(key)
        else:
            raw = self._memory.get(key)

        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Discarding unreadable state %r: %s", key, e)
            return None
        return data if isinstance(data, dict) else None

    def set(self, key: str, value: dict[str, Any]) -> None:
        """Store a document, replacing any previous one."""
        raw = json.dumps(value)
        self._memory[key] = raw
        if self._db_path is None:
            return
        try:
            with sqlite3.connect(self._db_path) as conn:
                conn.execute(
                    """INSERT INTO state (key, value) VALUES (?, ?)
                       ON CONFLICT(key) DO UPDATE SET value=excluded.value""",
                    (key, raw),
                )
                conn.commit()
        except sqlite3.Error as e:
            self._fallback(e)

    def delete(self, key: str) -> None:
        self._memory.pop(key, None)
        if self._db_path is None:
            return
        try:
            with sqlite3.connect(self._db_path) as conn:
                conn.execute("DELETE FROM state WHERE key = ?", (key,))
                conn.commit()
        except sqlite3.Error as e:
            self._fallback(e)

    def keys(self) -> list[str]:
        if self._db_path is not None:
            try:
                with sqlite3.connect(self._db_path) as conn:
                    rows = conn.execute("SELECT key FROM state ORDER BY key").fetchall()
                return [r[0] for r in rows]
            except sqlite3.Error as e:
                self._fallback(e)
        return sorted(self._memory)

    # ------------------------------------------------------------------
    # Message cursors
    # ------------------------------------------------------------------

    def save_message_cursor(self, session_id: str, message_id: str, completed_at: int) -> None:
        """Remember the last completed message of a session."""
        if not session_id or not message_id:
            return
        self._cursors[session_id] = MessageCursor(message_id, completed_at)
        if self._db_path is None:
            return
        try:
            with sqlite3.connect(self._db_path) as conn:
                conn.execute(
                    """INSERT INTO message_cursors (session_id, message_id, completed_at)
                       VALUES (?, ?, ?)
                       ON CONFLICT(session_id) DO UPDATE SET
                       message_id=excluded.message_id, completed_at=excluded.completed_at""",
                    (session_id, message_id, completed_at),
                )
                conn.commit()
        except sqlite3.Error as e:
            self._fallback(e)

    def read_message_cursor(self, session_id: str) -> MessageCursor | None:
        if self._db_path is not None:
            try:
                with sqlite3.connect(self._db_path) as conn:
                    row = conn.execute(
                        "SELECT message_id, completed_at FROM message_cursors WHERE session_id = ?",
                        (session_id,),
                    ).fetchone()
                return MessageCursor(row[0], row[1]) if row else None
            except sqlite3.Error as e:
                self._fallback(e)
        return self._cursors.get(session_id)

    def clear_message_cursor(self, session_id: str) -> None:
        self._cursors.pop(session_id, None)
        if self._db_path is None:
            return
        try:
            with sqlite3.connect(self._db_path) as conn:
                conn.execute("DELETE FROM message_cursors WHERE session_id = ?", (session_id,))
                conn.commit()
        except sqlite3.Error as e:
            self._fallback(e)
