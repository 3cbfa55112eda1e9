"""Session manager — chat routing, activity tracking, and turn history.

Sessions are in-memory (chat_id → session id + last activity) and roll
over after an idle timeout. Turns are persisted to the messages table so
history survives restarts; a restart simply starts a fresh session id.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

log = logging.getLogger(__name__)


@dataclass
class _SessionState:
    session_id: str
    last_activity: float


class SessionManager:
    def __init__(self, timeout_hours: float = 4.0, clock: Callable[[], float] = time.time):
        self.timeout_s = timeout_hours * 3600
        self._clock = clock
        self._sessions: dict[str, _SessionState] = {}

    def get_session_id(self, chat_id: str | int) -> str:
        """Return the live session for a chat, starting a new one if idle."""
        key = str(chat_id)
        now = self._clock()
        existing = self._sessions.get(key)
        if existing and now - existing.last_activity < self.timeout_s:
            existing.last_activity = now
            return existing.session_id

        session_id = str(uuid.uuid4())
        self._sessions[key] = _SessionState(session_id, now)
        if existing:
            log.info("Session for chat %s expired, new session %s", key, session_id)
        else:
            log.info("New session for chat %s: %s", key, session_id)
        return session_id

    def clear_session(self, chat_id: str | int) -> str:
        session_id = str(uuid.uuid4())
        self._sessions[str(chat_id)] = _SessionState(session_id, self._clock())
        log.info("Session reset for chat %s: %s", chat_id, session_id)
        return session_id

    def touch(self, chat_id: str | int) -> None:
        state = self._sessions.get(str(chat_id))
        if state:
            state.last_activity = self._clock()

    def get_last_activity(self, chat_id: str | int) -> float | None:
        """Epoch seconds of the last user activity, or None if unknown."""
        state = self._sessions.get(str(chat_id))
        return state.last_activity if state else None

    @property
    def active_count(self) -> int:
        now = self._clock()
        return sum(1 for s in self._sessions.values()
                   if now - s.last_activity < self.timeout_s)


class MessageLog:
    """Persisted chat turns."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def save(self, session_id: str, role: str, content: str) -> int:
        cur = self.conn.execute(
            "INSERT INTO messages (session_id, role, content) VALUES (?, ?, ?)",
            (session_id, role, content),
        )
        self.conn.commit()
        return cur.lastrowid

    def recent(self, session_id: str, limit: int = 20) -> list[dict]:
        """Last `limit` turns of a session, oldest first."""
        rows = self.conn.execute(
            "SELECT role, content FROM messages WHERE session_id = ? "
            "ORDER BY id DESC LIMIT ?",
            (session_id, limit),
        ).fetchall()
        return [{"role": r[0], "content": r[1]} for r in reversed(rows)]

    def count_today(self) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM messages WHERE date(created_at) = date('now')"
        ).fetchone()[0]
