"""CLI entry point for agent dispatch."""

import importlib
import json
import logging
import sys

import click

from agent_dispatch.config import get_config
from agent_dispatch.core import runs as runs_mod
from agent_dispatch.core import tasks as tasks_mod
from agent_dispatch.core.agent_config import load_agent_config, write_default_config
from agent_dispatch.core.health import AgentHealthTracker
from agent_dispatch.core.orchestrator import Orchestrator
from agent_dispatch.core.scoring import sort_ready_tasks, task_score
from agent_dispatch.core.supervisor import ProcessSupervisor
from agent_dispatch.db.engine import get_db
from agent_dispatch.db.models import COMPLEXITIES, RUN_STATUSES, SIZES, TASK_STATUSES
from agent_dispatch.errors import ConfigurationError
from agent_dispatch.integrations.slack import SlackNotifier


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _resolve(db, task_id):
    """Find a task by ID or prefix, exiting with an error if there is none."""
    try:
        task = tasks_mod.find_task(db, task_id)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if not task:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)
    return task


@click.group()
def main():
    """dispatch - autonomous agent task dispatcher"""
    pass


@main.command("init")
def init_command():
    """Create the database and a default agents config."""
    config = get_config()
    with _get_db():
        click.echo(f"Database: {config.db_path}")
    path = config.agents_config_path
    if write_default_config(path):
        click.echo(f"Agents config written: {path}")
    else:
        click.echo(f"Agents config already exists: {path}")


# ── Task Commands ─────────────────────────────────────────────────────────────


STATUS_ICONS = {
    "open": "○",
    "in_progress": "●",
    "review": "◐",
    "done": "✓",
    "cancelled": "✗",
}


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", default=2, type=int, help="Priority 0 (most urgent) to 4")
@click.option("--complexity", "-c", default="simple", type=click.Choice(COMPLEXITIES))
@click.option("--size", "-s", default="m", type=click.Choice(SIZES))
@click.option("--label", "labels", multiple=True, help="Label (repeatable)")
@click.option("--blocked-by", default=None, help="Comma-separated task IDs that block this one")
def task_add(title, description, priority, complexity, size, labels, blocked_by):
    """Create a new task."""
    blockers = [b.strip() for b in blocked_by.split(",")] if blocked_by else None
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db, title, description,
                priority=priority, complexity=complexity, size=size,
                labels=list(labels), blocked_by=blockers,
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority} | {task.complexity} | {task.size}")
        if task.blocked_by:
            click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")


@task_group.command("list")
@click.option("--status", default=None, type=click.Choice(TASK_STATUSES), help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            click.echo(_task_line(task))


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details, runs and history."""
    with _get_db() as db:
        task = _resolve(db, task_id)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Priority: P{task.priority} | Complexity: {task.complexity} | Size: {task.size}")
        click.echo(f"  Score: {task_score(task)}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.labels:
            click.echo(f"  Labels: {', '.join(task.labels)}")
        if task.blocked_by:
            click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")
        if task.consumed:
            click.echo(f"  Consumed: yes (pid {task.consume_pid or '-'})")
        if task.reason:
            click.echo(f"  Reason: {task.reason}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")

        runs = runs_mod.list_runs(db, task_id=task.id)
        if runs:
            click.echo("  Runs:")
            for run in runs:
                click.echo(f"    {_run_line(run)}")

        events = tasks_mod.get_task_events(db, task.id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("ready")
def task_ready():
    """List ready tasks in dispatch order."""
    with _get_db() as db:
        ready = sort_ready_tasks(tasks_mod.get_ready_tasks(db))
        if not ready:
            click.echo("No ready tasks.")
            return
        for task in ready:
            click.echo(f"  [{task_score(task):>3}] {task.id}: {task.title}")


@task_group.command("failed")
def task_failed():
    """List tasks left in progress by a failed or dead run."""
    with _get_db() as db:
        failed = tasks_mod.get_failed_tasks(db, ProcessSupervisor.is_process_alive)
        if not failed:
            click.echo("No failed tasks.")
            return
        for task in failed:
            reason = f" - {task.reason}" if task.reason else ""
            click.echo(f"  ✗ {task.id}: {task.title}{reason}")


@task_group.command("done")
@click.argument("task_id")
@click.option("--reason", "-r", default=None, help="Why the task is done")
def task_done(task_id, reason):
    """Mark a task as done."""
    with _get_db() as db:
        task = _resolve(db, task_id)
        tasks_mod.done_task(db, task.id, reason=reason)
        click.echo(f"Completed task: {task.id}")


@task_group.command("reopen")
@click.argument("task_id")
def task_reopen(task_id):
    """Reopen a task so the dispatcher picks it up again."""
    with _get_db() as db:
        task = _resolve(db, task_id)
        tasks_mod.reopen_task(db, task.id)
        click.echo(f"Reopened task: {task.id}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("blocker_id")
def task_add_dep(task_id, blocker_id):
    """Block a task on another task."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, task_id, blocker_id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Added dependency: {task.id} is blocked by {blocker_id}")
        click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("blocker_id")
def task_remove_dep(task_id, blocker_id):
    """Remove a blocker from a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.remove_dependency(db, task_id, blocker_id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Removed dependency: {task.id} no longer blocked by {blocker_id}")
        if task.blocked_by:
            click.echo(f"  Remaining blockers: {', '.join(task.blocked_by)}")
        else:
            click.echo("  No remaining blockers")


# ── Run Commands ─────────────────────────────────────────────────────────────


@main.group("run")
def run_group():
    """Inspect agent runs."""
    pass


@run_group.command("list")
@click.option("--task", "task_id", default=None, help="Only runs of this task")
@click.option("--status", default=None, type=click.Choice(RUN_STATUSES))
def run_list(task_id, status):
    """List runs, newest first."""
    with _get_db() as db:
        if task_id:
            task_id = _resolve(db, task_id).id
        runs = runs_mod.list_runs(db, task_id=task_id, status=status)
        if not runs:
            click.echo("No runs found.")
            return
        for run in runs:
            click.echo(f"  {run.task_id} {_run_line(run)}")


@run_group.command("show")
@click.argument("run_id")
@click.option("--output", "show_output", is_flag=True, help="Print the captured output")
def run_show(run_id, show_output):
    """Show one run."""
    with _get_db() as db:
        run = runs_mod.get_run(db, run_id)
        if not run:
            click.echo(f"Run not found: {run_id}", err=True)
            sys.exit(1)
        click.echo(f"Run {run.id} for task '{run.task_id}'")
        click.echo(f"  Agent: {run.agent}" + (f" ({run.model})" if run.model else ""))
        click.echo(f"  Status: {run.status}")
        click.echo(f"  PID: {run.pid}")
        if run.started_at:
            click.echo(f"  Started: {run.started_at}")
        if run.ended_at:
            click.echo(f"  Ended: {run.ended_at}")
        if run.exit_code is not None:
            click.echo(f"  Exit code: {run.exit_code}")
        if run.cost_usd is not None:
            click.echo(f"  Cost: ${run.cost_usd:.4f}")
        if run.session_id:
            click.echo(f"  Session: {run.session_id}")
        if show_output and run.output:
            click.echo(run.output)


# ── Agents & Dispatcher ──────────────────────────────────────────────────────


def _load_agents():
    config = get_config()
    try:
        return load_agent_config(config.agents_config_path)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command("agents")
def agents_command():
    """Show configured agents and complexity routing."""
    agent_config = _load_agents()
    for name in agent_config.get_agent_names():
        agent = agent_config.get_agent_definition(name)
        model = f" model={agent.model}" if agent.model else ""
        click.echo(
            f"  {name}: {agent.command}{model} "
            f"(max_concurrent={agent.max_concurrent}, max_attempts={agent.max_attempts})"
        )
    click.echo("Routing:")
    for complexity in COMPLEXITIES:
        try:
            click.echo(f"  {complexity} -> {agent_config.get_agent_for_complexity(complexity)}")
        except ConfigurationError:
            click.echo(f"  {complexity} -> (none)")


def _load_review_service(path: str):
    """Import ``module:factory`` and call the factory."""
    module_name, _, attr = path.partition(":")
    if not attr:
        raise click.BadParameter("expected 'module:factory'", param_hint="--review-service")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


@main.command("consume")
@click.option("--review", is_flag=True, help="Send successful runs to the review service")
@click.option("--review-service", default=None, help="Review service factory as 'module:factory'")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--idle-interval", default=2.0, type=float, help="Seconds to wait when there is no work")
def consume_command(review, review_service, verbose, idle_interval):
    """Run the dispatcher until interrupted (Ctrl+C twice to force).

    Send SIGUSR1 to pause picking up new tasks and SIGUSR2 to resume.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = get_config()
    agent_config = _load_agents()

    service = _load_review_service(review_service) if review_service else None
    if review and service is None:
        click.echo("No --review-service given; successful tasks will be auto-completed.", err=True)

    notifier = None
    if config.slack_bot_token and config.slack_channel:
        notifier = SlackNotifier(config.slack_bot_token, config.slack_channel)

    supervisor = ProcessSupervisor(agent_config, config.output_path)
    supervisor.register_signal_handlers()

    with _get_db() as db:
        orchestrator = Orchestrator(
            db,
            agent_config,
            supervisor,
            AgentHealthTracker(),
            project_path=config.project_path,
            review_service=service,
            review_enabled=review,
            notifier=notifier,
            poll_interval=config.poll_interval,
            idle_interval=idle_interval,
            shutdown_grace=config.shutdown_grace,
        )
        orchestrator.register_signal_handlers()
        orchestrator.run()


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Serve the read-only JSON API."""
    from agent_dispatch.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}/api/tasks")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agent_dispatch.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_line(task) -> str:
    icon = STATUS_ICONS.get(task.status, "?")
    blockers = f" [blocked by: {', '.join(task.blocked_by)}]" if task.blocked_by else ""
    labels = f" [{', '.join(task.labels)}]" if task.labels else ""
    return f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status}){labels}{blockers}"


def _run_line(run) -> str:
    exit_code = f" exit={run.exit_code}" if run.exit_code is not None else ""
    cost = f" ${run.cost_usd:.4f}" if run.cost_usd is not None else ""
    return f"{run.id} [{run.status.upper()}] agent={run.agent}{exit_code}{cost}"


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": f"P{task.priority}",
        "complexity": task.complexity,
        "size": task.size,
        "labels": task.labels,
        "blocked_by": task.blocked_by,
        "reason": task.reason,
        "description": task.description,
    }


if __name__ == "__main__":
    main()
