import sqlite3
from contextlib import contextmanager
from typing import Optional

from . import config


def _connect(db_path: Optional[str] = None):
    # Autocommit mode; multi-statement writes open their own transaction
    return sqlite3.connect(
        db_path or config.get_db_path(), timeout=30, isolation_level=None
    )


@contextmanager
def transaction(conn, immediate: bool = True):
    """Run a block inside BEGIN [IMMEDIATE] ... COMMIT, rolling back on error.

    IMMEDIATE takes the write lock up front so a read-modify-write inside the
    block cannot interleave with another writer.
    """
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def _init_db(db_path: Optional[str] = None):
    conn = _connect(db_path)
    cur = conn.cursor()
    cur.execute("PRAGMA journal_mode=WAL")
    cur.execute(
        """CREATE TABLE IF NOT EXISTS procedure (
            id TEXT PRIMARY KEY,
            context_id TEXT NOT NULL,
            name TEXT NOT NULL,
            category TEXT,
            status TEXT NOT NULL, -- draft|active|archived
            version INTEGER NOT NULL,
            data_json TEXT NOT NULL,
            analytics_state_json TEXT, -- bounded windows behind the analytics summary
            created_at TEXT,
            updated_at TEXT
        )"""
    )
    # One immutable snapshot per procedure version so pinned versions stay readable
    cur.execute(
        """CREATE TABLE IF NOT EXISTS procedure_version (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            procedure_id TEXT NOT NULL,
            version INTEGER NOT NULL,
            snapshot_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(procedure_id, version)
        )"""
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS completion (
            id TEXT PRIMARY KEY,
            procedure_id TEXT NOT NULL,
            context_id TEXT NOT NULL,
            scheduled_date TEXT NOT NULL,
            assigned_to TEXT,
            status TEXT NOT NULL,
            row_version INTEGER NOT NULL DEFAULT 0,
            data_json TEXT NOT NULL,
            created_at TEXT,
            updated_at TEXT
        )"""
    )
    # At most one occurrence per (procedure, date, assignee)
    cur.execute(
        """CREATE UNIQUE INDEX IF NOT EXISTS completion_slot
            ON completion (procedure_id, scheduled_date, COALESCE(assigned_to, ''))"""
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS completion_context_date ON completion (context_id, scheduled_date)"
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS template (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            is_public INTEGER NOT NULL DEFAULT 1,
            usage_count INTEGER NOT NULL DEFAULT 0,
            rating REAL NOT NULL DEFAULT 0,
            data_json TEXT NOT NULL,
            created_at TEXT
        )"""
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS procedure_audit (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            procedure_id TEXT NOT NULL,
            action TEXT NOT NULL, -- create|update|archive|delete|analytics
            before_json TEXT,
            after_json TEXT,
            performed_at TEXT NOT NULL
        )"""
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS completion_audit (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            completion_id TEXT NOT NULL,
            procedure_id TEXT,
            action TEXT NOT NULL, -- create|start|complete_step|skip_step|finish|...
            before_json TEXT,
            after_json TEXT,
            performed_at TEXT NOT NULL
        )"""
    )
    conn.close()
