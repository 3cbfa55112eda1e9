"""Check-in log, quiet mode and goal-reminder storage.

Timestamps are SQLite UTC text ("YYYY-MM-DD HH:MM:SS"); callers get
epoch seconds back.
"""

from __future__ import annotations

import calendar
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

GATING_RESULTS = ("text", "call", "skip")


@dataclass
class CheckInLog:
    data_hash: str
    sources: list[str] = field(default_factory=list)
    gating_result: str = "skip"
    user_id: str | None = None
    skip_reason: str | None = None
    urgency: int | None = None
    message_sent: str | None = None
    tokens_used: int | None = None
    id: int | None = None
    created_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "data_hash": self.data_hash,
            "sources": list(self.sources),
            "gating_result": self.gating_result,
            "skip_reason": self.skip_reason,
            "urgency": self.urgency,
            "message_sent": self.message_sent,
            "tokens_used": self.tokens_used,
            "created_at": self.created_at,
        }


def sqlite_ts_to_epoch(value: str) -> float:
    """Parse SQLite's UTC datetime('now') text into epoch seconds."""
    return float(calendar.timegm(time.strptime(value[:19], "%Y-%m-%d %H:%M:%S")))


def epoch_to_sqlite_ts(ts: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(ts))


class CheckInRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ─── Logs ────────────────────────────────────────────────────

    def save_log(self, entry: CheckInLog) -> int:
        if entry.gating_result not in GATING_RESULTS:
            raise ValueError(f"Invalid gating_result: {entry.gating_result!r}")
        cur = self.conn.execute(
            "INSERT INTO check_in_logs (user_id, data_hash, sources, gating_result, "
            "skip_reason, urgency, message_sent, tokens_used) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.user_id,
                entry.data_hash,
                json.dumps(entry.sources),
                entry.gating_result,
                entry.skip_reason,
                entry.urgency,
                entry.message_sent,
                entry.tokens_used,
            ),
        )
        self.conn.commit()
        return cur.lastrowid

    def get_recent_logs(self, limit: int) -> list[CheckInLog]:
        """Newest first."""
        rows = self.conn.execute(
            "SELECT id, user_id, data_hash, sources, gating_result, skip_reason, "
            "urgency, message_sent, tokens_used, created_at "
            "FROM check_in_logs ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            CheckInLog(
                id=r[0],
                user_id=r[1],
                data_hash=r[2],
                sources=json.loads(r[3]) if r[3] else [],
                gating_result=r[4],
                skip_reason=r[5],
                urgency=r[6],
                message_sent=r[7],
                tokens_used=r[8],
                created_at=r[9],
            )
            for r in rows
        ]

    def get_last_sent_time(self) -> float | None:
        """Epoch seconds of the newest delivered (text/call) check-in."""
        row = self.conn.execute(
            "SELECT created_at FROM check_in_logs "
            "WHERE gating_result IN ('text', 'call') ORDER BY id DESC LIMIT 1"
        ).fetchone()
        if row is None or not row[0]:
            return None
        return sqlite_ts_to_epoch(row[0])

    # ─── Goal Reminders ──────────────────────────────────────────

    def get_recently_reminded_goal_ids(self, window_minutes: float) -> list[int]:
        rows = self.conn.execute(
            "SELECT goal_id FROM goal_reminders "
            "WHERE datetime(reminded_at, '+' || ? || ' minutes') > datetime('now')",
            (float(window_minutes),),
        ).fetchall()
        return [r[0] for r in rows]

    def mark_goals_reminded(self, goal_ids: list[int]) -> None:
        if not goal_ids:
            return
        self.conn.executemany(
            "INSERT INTO goal_reminders (goal_id, reminded_at) VALUES (?, datetime('now')) "
            "ON CONFLICT(goal_id) DO UPDATE SET reminded_at = datetime('now')",
            [(gid,) for gid in goal_ids],
        )
        self.conn.commit()

    # ─── Quiet Mode ──────────────────────────────────────────────

    def set_quiet_mode(self, user_id: str, until_ts: float) -> None:
        self.conn.execute(
            "INSERT INTO quiet_mode (user_id, until) VALUES (?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET until = excluded.until, "
            "set_at = datetime('now')",
            (user_id, epoch_to_sqlite_ts(until_ts)),
        )
        self.conn.commit()
        log.info("Quiet mode for %s until %s UTC", user_id, epoch_to_sqlite_ts(until_ts))

    def clear_quiet_mode(self, user_id: str) -> None:
        self.conn.execute("DELETE FROM quiet_mode WHERE user_id = ?", (user_id,))
        self.conn.commit()

    def is_quiet_mode(self, user_id: str) -> bool:
        return self.quiet_until(user_id) is not None

    def quiet_until(self, user_id: str) -> float | None:
        row = self.conn.execute(
            "SELECT until FROM quiet_mode "
            "WHERE user_id = ? AND datetime(until) > datetime('now')",
            (user_id,),
        ).fetchone()
        return sqlite_ts_to_epoch(row[0]) if row else None
