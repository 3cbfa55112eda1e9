"""Goal storage — the user's goals with optional YYYY-MM-DD deadlines."""

from __future__ import annotations

import logging
import sqlite3
from datetime import date

log = logging.getLogger(__name__)

GOAL_STATUSES = ("active", "completed", "paused", "cancelled")


class GoalRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def add_goal(self, title: str, deadline: str | None = None,
                 description: str | None = None) -> int:
        title = title.strip()
        if not title:
            raise ValueError("Goal title is required")
        if deadline:
            # Reject anything that isn't a real calendar date
            date.fromisoformat(deadline)
        cur = self.conn.execute(
            "INSERT INTO goals (title, description, deadline) VALUES (?, ?, ?)",
            (title, description, deadline or None),
        )
        self.conn.commit()
        log.info("Goal #%d added: %s (deadline %s)", cur.lastrowid, title, deadline or "none")
        return cur.lastrowid

    def get_active_goals(self) -> list[dict]:
        """Active goals, dated ones first by nearest deadline."""
        rows = self.conn.execute(
            "SELECT id, title, description, status, deadline FROM goals "
            "WHERE status = 'active' "
            "ORDER BY CASE WHEN deadline IS NOT NULL THEN 0 ELSE 1 END, deadline ASC, id DESC"
        ).fetchall()
        return [
            {"id": r[0], "title": r[1], "description": r[2], "status": r[3], "deadline": r[4]}
            for r in rows
        ]

    def get_goal(self, goal_id: int) -> dict | None:
        r = self.conn.execute(
            "SELECT id, title, description, status, deadline FROM goals WHERE id = ?",
            (goal_id,),
        ).fetchone()
        if r is None:
            return None
        return {"id": r[0], "title": r[1], "description": r[2], "status": r[3], "deadline": r[4]}

    def set_status(self, goal_id: int, status: str) -> bool:
        if status not in GOAL_STATUSES:
            raise ValueError(f"Invalid goal status: {status!r}")
        cur = self.conn.execute(
            "UPDATE goals SET status = ?, updated_at = datetime('now') WHERE id = ?",
            (status, goal_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def count_active(self) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM goals WHERE status = 'active'"
        ).fetchone()[0]
