"""Schema management for the daemon database.

Creates and migrates 5 tables:

  Chat:
    messages        — persisted user/assistant turns per session
    goals           — user goals with optional deadlines

  Proactive check-ins:
    check_in_logs   — one row per completed check (skip, text or call)
    quiet_mode      — per-user do-not-disturb window
    goal_reminders  — last time each goal was mentioned in a check-in
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

log = logging.getLogger(__name__)

_CHECK_IN_LOGS_DDL = """
    CREATE TABLE IF NOT EXISTS check_in_logs (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id       TEXT,
        data_hash     TEXT NOT NULL,
        sources       TEXT NOT NULL,
        gating_result TEXT NOT NULL CHECK(gating_result IN ('text', 'call', 'skip')),
        skip_reason   TEXT,
        urgency       INTEGER,
        message_sent  TEXT,
        tokens_used   INTEGER,
        created_at    TEXT DEFAULT (datetime('now'))
    )
"""

_CHECK_IN_LOGS_INDEXES = """
    CREATE INDEX IF NOT EXISTS idx_check_in_created ON check_in_logs (created_at DESC);
    CREATE INDEX IF NOT EXISTS idx_check_in_user ON check_in_logs (user_id);
"""


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create all tables if they don't exist.

    Safe to call on every startup — all statements use IF NOT EXISTS.
    Enables WAL mode for concurrent read/write performance.
    """
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA wal_autocheckpoint=1000")

    conn.executescript(_CHECK_IN_LOGS_DDL + ";" + _CHECK_IN_LOGS_INDEXES + """
        -- Chat turns, grouped by session id
        CREATE TABLE IF NOT EXISTS messages (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id  TEXT NOT NULL,
            role        TEXT NOT NULL CHECK(role IN ('user', 'assistant', 'system')),
            content     TEXT NOT NULL,
            created_at  TEXT DEFAULT (datetime('now'))
        );
        CREATE INDEX IF NOT EXISTS idx_messages_session ON messages (session_id, id);

        -- Goals (deadline is YYYY-MM-DD)
        CREATE TABLE IF NOT EXISTS goals (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            title       TEXT NOT NULL,
            description TEXT,
            status      TEXT NOT NULL DEFAULT 'active'
                        CHECK(status IN ('active', 'completed', 'paused', 'cancelled')),
            deadline    TEXT,
            created_at  TEXT DEFAULT (datetime('now')),
            updated_at  TEXT DEFAULT (datetime('now'))
        );
        CREATE INDEX IF NOT EXISTS idx_goals_status ON goals (status);

        -- Do-not-disturb until a UTC timestamp
        CREATE TABLE IF NOT EXISTS quiet_mode (
            user_id TEXT PRIMARY KEY,
            until   TEXT NOT NULL,
            set_at  TEXT DEFAULT (datetime('now'))
        );

        -- One row per goal, upserted on every reminder
        CREATE TABLE IF NOT EXISTS goal_reminders (
            goal_id     INTEGER PRIMARY KEY,
            reminded_at TEXT NOT NULL DEFAULT (datetime('now'))
        );
    """)
    conn.commit()


def migrate_check_in_logs_add_call(conn: sqlite3.Connection) -> bool:
    """Allow 'call' in check_in_logs.gating_result on older databases.

    SQLite can't alter a CHECK constraint, so the table is recreated.
    Returns True if a migration ran. Safe to call repeatedly.
    """
    row = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name='check_in_logs'"
    ).fetchone()
    if row is None or "'call'" in row[0]:
        return False

    log.info("Migrating check_in_logs: adding 'call' to gating_result")
    conn.executescript(
        "BEGIN;"
        + _CHECK_IN_LOGS_DDL.replace("check_in_logs", "check_in_logs_new", 1)
        + """;
        INSERT INTO check_in_logs_new
            (id, user_id, data_hash, sources, gating_result, skip_reason,
             urgency, message_sent, tokens_used, created_at)
        SELECT id, user_id, data_hash, sources, gating_result, skip_reason,
               urgency, message_sent, tokens_used, created_at
        FROM check_in_logs;
        DROP TABLE check_in_logs;
        ALTER TABLE check_in_logs_new RENAME TO check_in_logs;
        """
        + _CHECK_IN_LOGS_INDEXES
        + "COMMIT;"
    )
    return True


def open_db(path: str | Path) -> sqlite3.Connection:
    """Open (or create) the database and bring the schema up to date."""
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    migrate_check_in_logs_add_call(conn)
    ensure_schema(conn)
    return conn
