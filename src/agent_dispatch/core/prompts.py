"""Prompt construction for spawned agents."""

import sqlite3

from agent_dispatch.core.tasks import get_task
from agent_dispatch.db.models import Task


def build_task_prompt(db: sqlite3.Connection, task: Task) -> str:
    """Build the prompt handed to an agent for one task."""
    parts = []
    parts.append(f"# Task: {task.title}")
    parts.append(f"Task ID: {task.id}")
    parts.append(f"Priority: P{task.priority} | Complexity: {task.complexity} | Size: {task.size}")
    if task.labels:
        parts.append(f"Labels: {', '.join(task.labels)}")

    if task.description:
        parts.append(f"\n## Description\n{task.description}")

    if task.blocked_by:
        parts.append("\n## Dependencies")
        for dep_id in task.blocked_by:
            dep = get_task(db, dep_id)
            if dep:
                line = f"- {dep.title} ({dep.id}): {dep.status}"
                if dep.reason:
                    line += f" - {dep.reason}"
                parts.append(line)

    if task.last_review_issues:
        parts.append("\n## Review issues")
        parts.append("A previous attempt completed this task but failed review:")
        for issue in task.last_review_issues:
            parts.append(f"- {issue}")
        parts.append("Fix only these issues rather than redoing the task from scratch.")

    parts.append(
        "\n## Reporting\n"
        "You have access to the agent-dispatch MCP tools. Use them to:\n"
        f"- Mark the task finished: call `done_task` with task_id='{task.id}' and a short reason.\n"
        "- File follow-up work: call `create_task`, and `add_dependency` if it blocks this task.\n"
        "- Inspect related tasks: call `get_task`.\n"
        f"Without MCP access, run `dispatch task done {task.id} --reason \"...\"` instead.\n"
        "\n"
        "Do not start other agents. The dispatcher schedules all work."
    )

    parts.append(
        "\n## Completion\n"
        "When you are finished, provide a brief summary of what was accomplished, "
        "any files changed, and any issues encountered. "
        "Exit with a non-zero status if you could not complete the task."
    )

    return "\n".join(parts)
