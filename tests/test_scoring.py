"""Tests for task scoring and selection order."""

from datetime import datetime, timedelta

from agent_dispatch.core.scoring import sort_ready_tasks, task_score
from agent_dispatch.db.models import Task

BASE = datetime(2026, 1, 1, 12, 0, 0)


def _task(task_id, priority=2, complexity="simple", size="m", age=0):
    return Task(
        id=task_id,
        title=task_id,
        priority=priority,
        complexity=complexity,
        size=size,
        created_at=BASE + timedelta(seconds=age),
    )


class TestTaskScore:
    def test_formula(self):
        assert task_score(_task("a", priority=1, complexity="moderate", size="l")) == 123

    def test_bounds(self):
        assert task_score(_task("a", priority=0, complexity="trivial", size="xs")) == 0
        assert task_score(_task("a", priority=4, complexity="complex", size="xl")) == 434

    def test_unknown_values_fall_back(self):
        assert task_score(_task("a", priority=0, complexity="weird", size="huge")) == 12

    def test_priority_dominates_complexity_and_size(self):
        urgent_big = _task("a", priority=0, complexity="complex", size="xl")
        normal_tiny = _task("b", priority=1, complexity="trivial", size="xs")
        assert task_score(urgent_big) < task_score(normal_tiny)

    def test_complexity_dominates_size(self):
        simple_big = _task("a", complexity="simple", size="xl")
        moderate_tiny = _task("b", complexity="moderate", size="xs")
        assert task_score(simple_big) < task_score(moderate_tiny)


class TestSortReadyTasks:
    def test_lower_score_first(self):
        tasks = [_task("low", priority=3), _task("high", priority=0), _task("mid", priority=1)]
        assert [t.id for t in sort_ready_tasks(tasks)] == ["high", "mid", "low"]

    def test_ties_broken_by_age(self):
        newer = _task("newer", age=10)
        older = _task("older", age=0)
        assert [t.id for t in sort_ready_tasks([newer, older])] == ["older", "newer"]

    def test_missing_created_at_sorts_first_among_ties(self):
        dated = _task("dated")
        undated = Task(id="undated", title="undated")
        assert [t.id for t in sort_ready_tasks([dated, undated])] == ["undated", "dated"]

    def test_does_not_mutate_input(self):
        tasks = [_task("b", priority=3), _task("a", priority=0)]
        sort_ready_tasks(tasks)
        assert [t.id for t in tasks] == ["b", "a"]
