"""Run log: one row per execution attempt of a task."""

import logging
import secrets
import sqlite3
from datetime import datetime
from typing import Callable

from agent_dispatch.core.tasks import NOW_SQL
from agent_dispatch.db.models import RUN_STATUSES, Run

logger = logging.getLogger(__name__)

ORPHANED_OUTPUT = "[Run orphaned - dispatcher exited before the process completed]"

_UPDATABLE_FIELDS = {
    "agent", "model", "status", "pid", "exit_code", "cost_usd", "session_id", "output",
}


def _generate_id(db: sqlite3.Connection) -> str:
    while True:
        candidate = f"r-{secrets.token_hex(3)}"
        if not db.execute("SELECT id FROM runs WHERE id = ?", (candidate,)).fetchone():
            return candidate


def create_run(
    db: sqlite3.Connection,
    task_id: str,
    agent: str,
    model: str | None = None,
    pid: int | None = None,
) -> str:
    """Record the start of a run. Returns the new run ID."""
    run_id = _generate_id(db)
    seq = db.execute(
        "SELECT COALESCE(MAX(seq), 0) + 1 FROM runs WHERE task_id = ?", (task_id,)
    ).fetchone()[0]
    db.execute(
        """INSERT INTO runs (id, task_id, agent, model, pid, seq)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (run_id, task_id, agent, model, pid, seq),
    )
    db.commit()
    return run_id


def update_run(db: sqlite3.Connection, run_id: str, ended: bool = False, **fields) -> Run | None:
    """Update fields on a run. ``ended=True`` stamps ``ended_at``."""
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update run fields: {', '.join(sorted(unknown))}")
    if "status" in fields and fields["status"] not in RUN_STATUSES:
        raise ValueError(f"Invalid run status: {fields['status']}")

    set_parts = [f"{k} = ?" for k in fields]
    if ended:
        set_parts.append(f"ended_at = {NOW_SQL}")
    if not set_parts:
        return get_run(db, run_id)

    db.execute(
        f"UPDATE runs SET {', '.join(set_parts)} WHERE id = ?",
        list(fields.values()) + [run_id],
    )
    db.commit()
    return get_run(db, run_id)


def update_latest_run(db: sqlite3.Connection, task_id: str, ended: bool = False, **fields) -> Run | None:
    """Update the most recent run of a task, if it has one."""
    run = get_latest_run(db, task_id)
    if not run:
        return None
    return update_run(db, run.id, ended=ended, **fields)


def get_run(db: sqlite3.Connection, run_id: str) -> Run | None:
    """Get a run by its ID."""
    row = db.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
    if not row:
        return None
    return _row_to_run(row)


def get_latest_run(db: sqlite3.Connection, task_id: str) -> Run | None:
    """Get the most recent run for a task."""
    row = db.execute(
        "SELECT * FROM runs WHERE task_id = ? ORDER BY seq DESC LIMIT 1",
        (task_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_run(row)


def list_runs(
    db: sqlite3.Connection,
    task_id: str | None = None,
    status: str | None = None,
) -> list[Run]:
    """List runs, newest first, optionally filtered by task and status."""
    query = "SELECT * FROM runs WHERE 1=1"
    params: list = []
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY started_at DESC, seq DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_run(r) for r in rows]


def cleanup_orphaned_runs(db: sqlite3.Connection, is_alive: Callable[[int], bool]) -> int:
    """Close out runs left ``running`` by a dispatcher that died.

    A run is orphaned when it has no end time and its PID is unknown or no
    longer alive. Orphaned runs are marked failed with exit code -1.
    Returns the number of runs cleaned up.
    """
    rows = db.execute(
        "SELECT id, pid FROM runs WHERE status = 'running' AND ended_at IS NULL"
    ).fetchall()

    cleaned = 0
    for row in rows:
        pid = row["pid"]
        if pid is not None and is_alive(pid):
            continue
        db.execute(
            f"""UPDATE runs
                SET status = 'failed', exit_code = -1, output = ?, ended_at = {NOW_SQL}
                WHERE id = ?""",
            (ORPHANED_OUTPUT, row["id"]),
        )
        cleaned += 1
        logger.info("Closed orphaned run %s (pid=%s)", row["id"], pid)

    db.commit()
    return cleaned


def _row_to_run(row: sqlite3.Row) -> Run:
    return Run(
        id=row["id"],
        task_id=row["task_id"],
        agent=row["agent"],
        model=row["model"],
        status=row["status"],
        pid=row["pid"],
        exit_code=row["exit_code"],
        cost_usd=row["cost_usd"],
        session_id=row["session_id"],
        output=row["output"],
        started_at=_parse_dt(row["started_at"]),
        ended_at=_parse_dt(row["ended_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
