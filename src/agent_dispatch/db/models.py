"""Data models for agent dispatch."""

from dataclasses import dataclass, field
from datetime import datetime

TASK_STATUSES = ("open", "in_progress", "review", "done", "cancelled")
COMPLEXITIES = ("trivial", "simple", "moderate", "complex")
SIZES = ("xs", "s", "m", "l", "xl")
RUN_STATUSES = ("running", "completed", "failed", "cancelled")


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: str = "open"
    priority: int = 2
    complexity: str = "simple"
    size: str = "m"
    labels: list[str] = field(default_factory=list)
    consumed: bool = False
    consume_pid: int | None = None
    reason: str | None = None
    last_review_issues: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    blocked_by: list[str] = field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.status in ("done", "cancelled")


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Run:
    id: str = ""
    task_id: str = ""
    agent: str = ""
    model: str | None = None
    status: str = "running"
    pid: int | None = None
    exit_code: int | None = None
    cost_usd: float | None = None
    session_id: str | None = None
    output: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
