"""MCP server that lets agents inspect and report on their tasks."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agent_dispatch.config import Config, get_config
from agent_dispatch.core import runs as runs_mod
from agent_dispatch.core import tasks as tasks_mod
from agent_dispatch.core.scoring import sort_ready_tasks
from agent_dispatch.db.engine import init_db


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("agent-dispatch", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _find(db: sqlite3.Connection, task_id: str):
    """Resolve a task ID or prefix; returns (task, error dict)."""
    try:
        task = tasks_mod.find_task(db, task_id)
    except ValueError as e:
        return None, {"error": str(e)}
    if not task:
        return None, {"error": f"Task not found: {task_id}"}
    return task, None


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task, including blockers and history. Accepts an ID prefix."""
    app = _ctx(ctx)
    task, error = _find(app.db, task_id)
    if error:
        return error
    result = _task_to_dict(task)
    result["events"] = [
        {"event_type": e.event_type, "old_value": e.old_value, "new_value": e.new_value}
        for e in tasks_mod.get_task_events(app.db, task.id)
    ]
    return result


@mcp.tool()
def list_tasks(ctx: Context, status: str | None = None) -> list[dict]:
    """List tasks, optionally filtered by status (open, in_progress, review, done, cancelled)."""
    app = _ctx(ctx)
    return [_task_to_dict(t) for t in tasks_mod.list_tasks(app.db, status=status)]


@mcp.tool()
def get_ready_tasks(ctx: Context) -> list[dict]:
    """Get open tasks with no unresolved blockers, in the order the dispatcher picks them."""
    app = _ctx(ctx)
    return [_task_to_dict(t) for t in sort_ready_tasks(tasks_mod.get_ready_tasks(app.db))]


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    priority: int = 2,
    complexity: str = "simple",
    size: str = "m",
    labels: list[str] | None = None,
    blocked_by: list[str] | None = None,
) -> dict:
    """Create a new task.

    Priority: 0 (most urgent) to 4. Complexity: trivial, simple, moderate,
    complex. Size: xs, s, m, l, xl.
    """
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db, title, description,
            priority=priority, complexity=complexity, size=size,
            labels=labels, blocked_by=blocked_by,
        )
    except ValueError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def done_task(ctx: Context, task_id: str, reason: str | None = None) -> dict:
    """Mark a task as done. Call this when you have finished the task you were given."""
    app = _ctx(ctx)
    task, error = _find(app.db, task_id)
    if error:
        return error
    return _task_to_dict(tasks_mod.done_task(app.db, task.id, reason=reason))


@mcp.tool()
def reopen_task(ctx: Context, task_id: str) -> dict:
    """Reopen a task so the dispatcher picks it up again."""
    app = _ctx(ctx)
    task, error = _find(app.db, task_id)
    if error:
        return error
    return _task_to_dict(tasks_mod.reopen_task(app.db, task.id))


@mcp.tool()
def add_dependency(ctx: Context, task_id: str, blocked_by_id: str) -> dict:
    """Block a task on another task. Rejects self-blocks and cycles."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.add_dependency(app.db, task_id, blocked_by_id)
    except ValueError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


# ── Run Tools ─────────────────────────────────────────────────────────────────


@mcp.tool()
def get_latest_run(ctx: Context, task_id: str) -> dict:
    """Get the most recent run of a task: agent, status, exit code, cost."""
    app = _ctx(ctx)
    task, error = _find(app.db, task_id)
    if error:
        return error
    run = runs_mod.get_latest_run(app.db, task.id)
    if not run:
        return {"error": f"No runs for task: {task.id}"}
    return {
        "id": run.id,
        "task_id": run.task_id,
        "agent": run.agent,
        "model": run.model,
        "status": run.status,
        "pid": run.pid,
        "exit_code": run.exit_code,
        "cost_usd": run.cost_usd,
        "session_id": run.session_id,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "ended_at": run.ended_at.isoformat() if run.ended_at else None,
    }


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": f"P{task.priority}",
        "complexity": task.complexity,
        "size": task.size,
        "labels": task.labels,
        "blocked_by": task.blocked_by,
        "reason": task.reason,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }
