"""Read-only JSON API over the task store and run log."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from agent_dispatch.config import get_config
from agent_dispatch.core import runs as runs_mod
from agent_dispatch.core import tasks as tasks_mod
from agent_dispatch.core.scoring import sort_ready_tasks, task_score
from agent_dispatch.core.supervisor import ProcessSupervisor
from agent_dispatch.db.engine import init_db
from agent_dispatch.db.models import TASK_STATUSES


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    status_filter = request.query_params.get("status")
    if status_filter and status_filter not in TASK_STATUSES:
        return JSONResponse({"error": f"Invalid status: {status_filter}"}, status_code=400)
    db = _get_db()
    try:
        tasks = tasks_mod.list_tasks(db, status=status_filter)
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        try:
            task = tasks_mod.find_task(db, task_id)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        td = _task_dict(task)
        td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task.id)]
        td["runs"] = [_run_dict(r) for r in runs_mod.list_runs(db, task_id=task.id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_ready_tasks(request: Request):
    db = _get_db()
    try:
        ready = sort_ready_tasks(tasks_mod.get_ready_tasks(db))
        result = []
        for task in ready:
            td = _task_dict(task)
            td["score"] = task_score(task)
            result.append(td)
        return JSONResponse(result)
    finally:
        db.close()


async def api_failed_tasks(request: Request):
    db = _get_db()
    try:
        failed = tasks_mod.get_failed_tasks(db, ProcessSupervisor.is_process_alive)
        return JSONResponse([_task_dict(t) for t in failed])
    finally:
        db.close()


async def api_list_runs(request: Request):
    task_id = request.query_params.get("task_id")
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        runs = runs_mod.list_runs(db, task_id=task_id, status=status_filter)
        return JSONResponse([_run_dict(r) for r in runs])
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status,
        "description": t.description,
        "priority": t.priority,
        "complexity": t.complexity,
        "size": t.size,
        "labels": t.labels,
        "blocked_by": t.blocked_by,
        "consumed": t.consumed,
        "consume_pid": t.consume_pid,
        "reason": t.reason,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "completed_at": _iso(t.completed_at),
    }


def _run_dict(r) -> dict:
    return {
        "id": r.id,
        "task_id": r.task_id,
        "agent": r.agent,
        "model": r.model,
        "status": r.status,
        "pid": r.pid,
        "exit_code": r.exit_code,
        "cost_usd": r.cost_usd,
        "session_id": r.session_id,
        "started_at": _iso(r.started_at),
        "ended_at": _iso(r.ended_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/ready", api_ready_tasks),
        Route("/api/failed", api_failed_tasks),
        Route("/api/runs", api_list_runs),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
