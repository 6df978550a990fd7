"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'open' CHECK (status IN ('open', 'in_progress', 'review', 'done', 'cancelled')),
    priority INTEGER DEFAULT 2,
    complexity TEXT DEFAULT 'simple' CHECK (complexity IN ('trivial', 'simple', 'moderate', 'complex')),
    size TEXT DEFAULT 'm' CHECK (size IN ('xs', 's', 'm', 'l', 'xl')),
    labels TEXT DEFAULT '[]',
    consumed INTEGER DEFAULT 0,
    consume_pid INTEGER,
    reason TEXT,
    last_review_issues TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    blocked_by_task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    PRIMARY KEY (task_id, blocked_by_task_id)
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    agent TEXT NOT NULL,
    model TEXT,
    status TEXT DEFAULT 'running' CHECK (status IN ('running', 'completed', 'failed', 'cancelled')),
    pid INTEGER,
    exit_code INTEGER,
    cost_usd REAL,
    session_id TEXT,
    output TEXT,
    seq INTEGER NOT NULL,
    started_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    ended_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_runs_task ON runs(task_id, seq);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
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
