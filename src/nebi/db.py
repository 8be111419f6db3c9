"""Single-file SQLite database used by the local server."""

from __future__ import annotations

import sqlite3
from pathlib import Path

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    error TEXT,
    created_at TEXT NOT NULL,
    finished_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
"""


def connect(driver: str, dsn: str) -> sqlite3.Connection:
    """Open the database and apply migrations.

    The connection is shared between the HTTP handlers and the worker
    thread, so callers must serialize access to it.
    """
    if driver != "sqlite":
        raise ValueError(f"Unsupported database driver {driver!r} (supported: sqlite)")
    if dsn != ":memory:":
        Path(dsn).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(dsn, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if dsn != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    migrate(conn)
    return conn


def migrate(conn: sqlite3.Connection) -> None:
    conn.executescript(_SCHEMA)
    conn.commit()
