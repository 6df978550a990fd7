"""Task scoring and selection order.

Lower score means the task is picked first. The weights are 100:10:1 so that
one step of priority always outweighs the full complexity range (max 30) and
one step of complexity always outweighs the full size range (max 4).
"""

from datetime import datetime
from typing import Iterable

from agent_dispatch.db.models import Task

PRIORITY_WEIGHT = 100
COMPLEXITY_WEIGHT = 10

COMPLEXITY_WEIGHTS = {"trivial": 0, "simple": 1, "moderate": 2, "complex": 3}
SIZE_WEIGHTS = {"xs": 0, "s": 1, "m": 2, "l": 3, "xl": 4}

DEFAULT_COMPLEXITY = "simple"
DEFAULT_SIZE = "m"


def task_score(task: Task) -> int:
    """Score a task: ``priority*100 + complexity*10 + size``."""
    complexity = COMPLEXITY_WEIGHTS.get(task.complexity, COMPLEXITY_WEIGHTS[DEFAULT_COMPLEXITY])
    size = SIZE_WEIGHTS.get(task.size, SIZE_WEIGHTS[DEFAULT_SIZE])
    return task.priority * PRIORITY_WEIGHT + complexity * COMPLEXITY_WEIGHT + size


def sort_ready_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Order ready tasks for selection: score, then priority, then oldest first."""
    return sorted(
        tasks,
        key=lambda t: (task_score(t), t.priority, t.created_at or datetime.min),
    )
