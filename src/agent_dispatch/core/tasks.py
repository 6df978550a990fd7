"""Task store operations."""

import json
import secrets
import sqlite3
from datetime import datetime
from typing import Callable

from agent_dispatch.db.models import COMPLEXITIES, SIZES, TASK_STATUSES, Task, TaskEvent

NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%f', 'now')"

NEEDS_HUMAN_LABEL = "needs-human"

_UPDATABLE_FIELDS = {
    "title", "description", "status", "priority", "complexity", "size",
    "consumed", "consume_pid", "reason", "last_review_issues",
}


def _generate_id(db: sqlite3.Connection, prefix: str = "t") -> str:
    """Generate a short unique task ID such as ``t-3fa9c1``."""
    while True:
        candidate = f"{prefix}-{secrets.token_hex(3)}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    priority: int = 2,
    complexity: str = "simple",
    size: str = "m",
    labels: list[str] | None = None,
    blocked_by: list[str] | None = None,
) -> Task:
    """Create a new open task."""
    if complexity not in COMPLEXITIES:
        raise ValueError(f"Invalid complexity: {complexity}")
    if size not in SIZES:
        raise ValueError(f"Invalid size: {size}")

    blocker_ids = []
    for blocker_id in blocked_by or []:
        blocker = find_task(db, blocker_id)
        if not blocker:
            raise ValueError(f"Blocking task not found: {blocker_id}")
        if blocker.id not in blocker_ids:
            blocker_ids.append(blocker.id)

    task_id = _generate_id(db)
    priority = max(0, min(4, priority))

    db.execute(
        """INSERT INTO tasks (id, title, description, priority, complexity, size, labels)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (task_id, title, description, priority, complexity, size, json.dumps(labels or [])),
    )
    for blocker_id in blocker_ids:
        db.execute(
            "INSERT INTO task_dependencies (task_id, blocked_by_task_id) VALUES (?, ?)",
            (task_id, blocker_id),
        )

    _log_event(db, task_id, "created", None, "open")
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by exact ID with its blockers."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _with_blockers(db, _row_to_task(row))


def find_task(db: sqlite3.Connection, id_or_prefix: str) -> Task | None:
    """Find a task by exact ID or by an unambiguous ID prefix.

    Prefixes may omit the ``t-`` part. Raises ValueError if the prefix
    matches more than one task.
    """
    task = get_task(db, id_or_prefix)
    if task:
        return task

    patterns = [id_or_prefix + "%"]
    if not id_or_prefix.startswith("t-"):
        patterns.append("t-" + id_or_prefix + "%")

    matches: dict[str, sqlite3.Row] = {}
    for pattern in patterns:
        for row in db.execute("SELECT * FROM tasks WHERE id LIKE ?", (pattern,)).fetchall():
            matches[row["id"]] = row

    if not matches:
        return None
    if len(matches) > 1:
        ids = ", ".join(sorted(matches))
        raise ValueError(f"Ambiguous task ID '{id_or_prefix}' matches: {ids}")
    row = next(iter(matches.values()))
    return _with_blockers(db, _row_to_task(row))


def _require(db: sqlite3.Connection, task_id: str) -> Task:
    task = find_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    return task


def list_tasks(
    db: sqlite3.Connection,
    status: str | None = None,
) -> list[Task]:
    """List tasks, optionally filtered by status."""
    query = "SELECT * FROM tasks"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY priority ASC, created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_with_blockers(db, _row_to_task(r)) for r in rows]


def get_ready_tasks(db: sqlite3.Connection) -> list[Task]:
    """Get open tasks whose blockers are all closed.

    Tasks labelled ``needs-human`` are never ready: they are work for an
    operator, not for an agent.
    """
    ready = []
    for task in list_tasks(db, status="open"):
        if NEEDS_HUMAN_LABEL in task.labels:
            continue
        if any(not _is_resolved(db, blocker_id) for blocker_id in task.blocked_by):
            continue
        ready.append(task)
    ready.sort(key=lambda t: (t.created_at or datetime.min))
    return ready


def get_blocked_tasks(db: sqlite3.Connection) -> list[Task]:
    """Get open tasks that still have an unresolved blocker."""
    return [
        task
        for task in list_tasks(db, status="open")
        if any(not _is_resolved(db, blocker_id) for blocker_id in task.blocked_by)
    ]


def get_failed_tasks(
    db: sqlite3.Connection,
    is_alive: Callable[[int], bool],
    exclude_pids: list[int] | None = None,
) -> list[Task]:
    """Get consumed tasks that were left in progress by a failed or dead run.

    A task is failed when it is ``in_progress``, was picked up by the
    orchestrator, and either its recorded process is gone or its latest run
    ended with a non-zero exit code. PIDs in ``exclude_pids`` are processes the
    caller is still supervising and never count as failed.
    """
    excluded = set(exclude_pids or [])
    failed = []
    for task in list_tasks(db, status="in_progress"):
        if not task.consumed:
            continue
        pid = task.consume_pid
        if pid is not None:
            if pid in excluded or is_alive(pid):
                continue
            failed.append(task)
            continue
        run = db.execute(
            "SELECT exit_code, status FROM runs WHERE task_id = ? ORDER BY seq DESC LIMIT 1",
            (task.id,),
        ).fetchone()
        if run is None or run["status"] == "running":
            continue
        if run["exit_code"] is None or run["exit_code"] != 0:
            failed.append(task)
    return failed


def start_task(db: sqlite3.Connection, task_id: str) -> Task:
    """Move a task to in_progress."""
    return _set_status(db, _require(db, task_id), "in_progress")


def reopen_task(db: sqlite3.Connection, task_id: str) -> Task:
    """Move a task back to open and release it from the orchestrator."""
    task = _require(db, task_id)
    db.execute(
        f"""UPDATE tasks
            SET consumed = 0, consume_pid = NULL, completed_at = NULL, reason = NULL,
                updated_at = {NOW_SQL}
            WHERE id = ?""",
        (task.id,),
    )
    return _set_status(db, task, "open")


def done_task(db: sqlite3.Connection, task_id: str, reason: str | None = None) -> Task:
    """Mark a task as done."""
    task = _require(db, task_id)
    db.execute(
        f"""UPDATE tasks
            SET reason = ?, consume_pid = NULL, last_review_issues = NULL,
                completed_at = {NOW_SQL}, updated_at = {NOW_SQL}
            WHERE id = ?""",
        (reason, task.id),
    )
    return _set_status(db, task, "done")


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task:
    """Update task fields.

    Accepts any column in ``_UPDATABLE_FIELDS`` plus ``add_labels`` and
    ``remove_labels``. A ``status`` change is logged as a status event.
    """
    task = _require(db, task_id)

    labels = list(task.labels)
    for label in fields.pop("add_labels", None) or []:
        if label not in labels:
            labels.append(label)
    for label in fields.pop("remove_labels", None) or []:
        if label in labels:
            labels.remove(label)

    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
    if "status" in fields and fields["status"] not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {fields['status']}")
    if "priority" in fields:
        fields["priority"] = max(0, min(4, int(fields["priority"])))
    if "consumed" in fields:
        fields["consumed"] = 1 if fields["consumed"] else 0
    if "last_review_issues" in fields:
        issues = fields["last_review_issues"]
        fields["last_review_issues"] = json.dumps(list(issues)) if issues else None

    new_status = fields.pop("status", None)
    updates = dict(fields)
    if labels != task.labels:
        updates["labels"] = json.dumps(labels)
        _log_event(db, task.id, "labels_changed", ",".join(task.labels), ",".join(labels))

    if updates:
        set_parts = [f"{k} = ?" for k in updates]
        set_parts.append(f"updated_at = {NOW_SQL}")
        db.execute(
            f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
            list(updates.values()) + [task.id],
        )

    if new_status is not None and new_status != task.status:
        return _set_status(db, task, new_status)

    db.commit()
    return get_task(db, task.id)


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    blocker_id: str,
) -> Task:
    """Block ``task_id`` on ``blocker_id``."""
    task = _require(db, task_id)
    blocker = find_task(db, blocker_id)
    if not blocker:
        raise ValueError(f"Blocking task not found: {blocker_id}")
    if blocker.id == task.id:
        raise ValueError("A task cannot block itself")
    if blocker.id in task.blocked_by:
        return task
    if _reaches(db, blocker.id, task.id):
        raise ValueError(f"Dependency would create a cycle: {task.id} -> {blocker.id}")

    db.execute(
        "INSERT INTO task_dependencies (task_id, blocked_by_task_id) VALUES (?, ?)",
        (task.id, blocker.id),
    )
    _log_event(db, task.id, "dependency_added", None, blocker.id)
    db.commit()
    return get_task(db, task.id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    blocker_id: str,
) -> Task:
    """Remove a blocker from a task."""
    task = _require(db, task_id)
    blocker = find_task(db, blocker_id)
    target = blocker.id if blocker else blocker_id
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND blocked_by_task_id = ?",
        (task.id, target),
    )
    _log_event(db, task.id, "dependency_removed", target, None)
    db.commit()
    return get_task(db, task.id)


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _set_status(db: sqlite3.Connection, task: Task, status: str) -> Task:
    db.execute(
        f"UPDATE tasks SET status = ?, updated_at = {NOW_SQL} WHERE id = ?",
        (status, task.id),
    )
    _log_event(db, task.id, "status_changed", task.status, status)
    db.commit()
    return get_task(db, task.id)


def _is_resolved(db: sqlite3.Connection, blocker_id: str) -> bool:
    row = db.execute("SELECT status FROM tasks WHERE id = ?", (blocker_id,)).fetchone()
    # A deleted blocker no longer blocks anything
    return row is None or row["status"] in ("done", "cancelled")


def _reaches(db: sqlite3.Connection, start_id: str, target_id: str) -> bool:
    """True if ``start_id`` is (transitively) blocked by ``target_id``."""
    seen = set()
    stack = [start_id]
    while stack:
        current = stack.pop()
        if current == target_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        rows = db.execute(
            "SELECT blocked_by_task_id FROM task_dependencies WHERE task_id = ?",
            (current,),
        ).fetchall()
        stack.extend(r["blocked_by_task_id"] for r in rows)
    return False


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _with_blockers(db: sqlite3.Connection, task: Task) -> Task:
    rows = db.execute(
        "SELECT blocked_by_task_id FROM task_dependencies WHERE task_id = ? ORDER BY rowid",
        (task.id,),
    ).fetchall()
    task.blocked_by = [r["blocked_by_task_id"] for r in rows]
    return task


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"] if row["priority"] is not None else 2,
        complexity=row["complexity"] or "simple",
        size=row["size"] or "m",
        labels=json.loads(row["labels"] or "[]"),
        consumed=bool(row["consumed"]),
        consume_pid=row["consume_pid"],
        reason=row["reason"],
        last_review_issues=json.loads(row["last_review_issues"] or "[]"),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
