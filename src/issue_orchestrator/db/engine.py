"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS assignments (
    id TEXT PRIMARY KEY,
    item_id INTEGER NOT NULL UNIQUE,
    item_title TEXT NOT NULL,
    item_body TEXT DEFAULT '',
    provider TEXT NOT NULL,
    branch_name TEXT NOT NULL,
    workdir TEXT NOT NULL,
    instance_token TEXT UNIQUE,
    process_id INTEGER,
    status TEXT DEFAULT 'assigned' CHECK (status IN (
        'assigned', 'in-progress', 'dev-complete', 'blocked', 'failed',
        'merge-review', 'stage-ready', 'merged'
    )),
    exclusive INTEGER DEFAULT 0,
    coordinator INTEGER DEFAULT 0,
    tracker_ref TEXT,
    result_ref TEXT,
    assigned_at TEXT DEFAULT (datetime('now')),
    started_at TEXT,
    last_activity TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_assignments_status ON assignments(status);
CREATE INDEX IF NOT EXISTS idx_assignments_provider ON assignments(provider, status);

CREATE TABLE IF NOT EXISTS work_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    assignment_id TEXT NOT NULL REFERENCES assignments(id) ON DELETE CASCADE,
    instance_token TEXT,
    started_at TEXT DEFAULT (datetime('now')),
    ended_at TEXT,
    summary TEXT,
    prompt TEXT
);

CREATE TABLE IF NOT EXISTS assignment_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_events_item ON assignment_events(item_id);
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
