"""Tests for the dispatch loop and its retry/escalation policy."""

import signal
import sys
import tempfile
import time
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from agent_dispatch.core import runs as runs_mod
from agent_dispatch.core import tasks as tasks_mod
from agent_dispatch.core.agent_config import AgentConfig
from agent_dispatch.core.classifier import classify
from agent_dispatch.core.health import AgentHealthTracker, FailureKind
from agent_dispatch.core.orchestrator import AUTO_CLOSED_LABEL, Orchestrator, ReadyTaskCache
from agent_dispatch.core.review import ReviewResult
from agent_dispatch.core.supervisor import (
    CompletionResult,
    ManagedProcess,
    ProcessSupervisor,
    SpawnResult,
)
from agent_dispatch.db.engine import init_db
from agent_dispatch.db.models import COMPLEXITIES
from agent_dispatch.errors import SpawnError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSupervisor:
    """In-memory stand-in for ProcessSupervisor; tests decide when processes exit."""

    def __init__(self, agent_config):
        self.agent_config = agent_config
        self.processes: dict[str, ManagedProcess] = {}
        self.finished: list[CompletionResult] = []
        self.spawned: list[str] = []
        self.prompts: dict[str, str] = {}
        self.spawn_error: str | None = None
        self.shutdown_calls: list[float] = []
        self.alive_pids: set[int] = set()
        self._next_pid = 1000
        self._shutdown = False
        self._force = False

    def get_active_count(self, agent_name=None):
        return sum(1 for p in self.processes.values() if agent_name in (None, p.agent_name))

    def can_spawn(self, agent_name):
        return self.get_active_count(agent_name) < self.agent_config.get_agent_limit(agent_name)

    def get_active_processes(self):
        return list(self.processes.values())

    def is_tracking(self, task_id):
        return task_id in self.processes

    def spawn(self, task, prompt, workdir, agent_override=None, run_id=None):
        if self.spawn_error:
            return SpawnResult(
                success=False,
                error=SpawnError("cannot start", reason=self.spawn_error, agent=agent_override),
            )
        self._next_pid += 1
        process = ManagedProcess(
            task_id=task.id,
            agent_name=agent_override,
            run_id=run_id,
            popen=None,
            pid=self._next_pid,
            started_at=0.0,
            started_wall=datetime.now(),
            stdout_path=Path("stdout.log"),
            stderr_path=Path("stderr.log"),
        )
        self.processes[task.id] = process
        self.spawned.append(task.id)
        self.prompts[task.id] = prompt
        return SpawnResult(success=True, process=process)

    def finish(self, task_id, exit_code=0, output="", interrupted=False):
        process = self.processes[task_id]
        self.finished.append(CompletionResult(
            task_id=task_id,
            agent_name=process.agent_name,
            run_id=process.run_id,
            exit_code=exit_code,
            completion_type=classify(exit_code, output),
            duration=1.0,
            output=output,
            message=output or None,
            interrupted=interrupted,
        ))

    def poll(self):
        results, self.finished = self.finished, []
        for result in results:
            self.processes.pop(result.task_id, None)
        return results

    def shutdown(self, grace_seconds=30.0):
        self.shutdown_calls.append(grace_seconds)
        for task_id in list(self.processes):
            self.finish(task_id, exit_code=-15, interrupted=True)

    def request_shutdown(self, force=False):
        self._shutdown = True
        self._force = self._force or force

    def is_shutting_down(self):
        return self._shutdown

    def is_force_shutdown(self):
        return self._force

    def is_process_alive(self, pid):
        return pid in self.alive_pids


class FakeReviewService:
    def __init__(self, accept=True, error=None):
        self.accept = accept
        self.error = error
        self.triggered: list[str] = []
        self.results: dict[str, ReviewResult] = {}

    def trigger_review(self, task_id, agent_name):
        if self.error:
            raise self.error
        self.triggered.append(task_id)
        return self.accept

    def get_pending_reviews(self):
        return list(self.triggered)

    def is_review_complete(self, task_id):
        return task_id in self.results

    def get_review_result(self, task_id):
        return self.results.get(task_id)


def make_config(max_concurrent=2, max_attempts=3):
    return AgentConfig.from_dict({
        "complexity": {"trivial": "fast", "simple": "fast", "moderate": "deep"},
        "agents": {
            "fast": {
                "command": "fast-agent",
                "max_concurrent": max_concurrent,
                "max_attempts": max_attempts,
            },
            "deep": {"command": "deep-agent", "model": "big"},
        },
    })


class Harness:
    def __init__(self, db, path, config=None, sleep=None, **kwargs):
        self.db = db
        self.clock = FakeClock()
        self.config = config or make_config()
        self.supervisor = FakeSupervisor(self.config)
        self.health = AgentHealthTracker(clock=self.clock)
        self.notifier = MagicMock()
        self.orch = Orchestrator(
            db,
            self.config,
            self.supervisor,
            self.health,
            project_path=path,
            notifier=self.notifier,
            clock=self.clock,
            sleep=sleep or (lambda seconds: None),
            **kwargs,
        )

    def task(self, task_id):
        return tasks_mod.get_task(self.db, task_id)


@pytest.fixture
def env():
    with tempfile.TemporaryDirectory() as tmp:
        db = init_db(Path(tmp) / "test.db")
        yield db, Path(tmp)
        db.close()


@pytest.fixture
def h(env):
    db, path = env
    return Harness(db, path)


class TestReadyTaskCache:
    def test_caches_until_ttl(self):
        clock = FakeClock()
        loads = []
        cache = ReadyTaskCache(ttl=2.0, clock=clock)

        def loader():
            loads.append(1)
            return []

        cache.get(loader)
        clock.advance(1.9)
        cache.get(loader)
        assert len(loads) == 1
        clock.advance(0.1)
        cache.get(loader)
        assert len(loads) == 2

    def test_invalidate_forces_reload(self):
        loads = []
        cache = ReadyTaskCache(ttl=2.0, clock=FakeClock())
        cache.get(lambda: loads.append(1) or [])
        cache.invalidate()
        cache.get(lambda: loads.append(1) or [])
        assert len(loads) == 2


class TestSpawning:
    def test_spawn_marks_task_and_run(self, h):
        task = tasks_mod.create_task(h.db, "Work")
        assert h.orch.try_spawn_task(task)

        pid = h.supervisor.processes[task.id].pid
        current = h.task(task.id)
        assert current.status == "in_progress"
        assert current.consumed
        assert current.consume_pid == pid

        run = runs_mod.get_latest_run(h.db, task.id)
        assert run.agent == "fast"
        assert run.pid == pid
        assert run.status == "running"
        assert h.supervisor.processes[task.id].run_id == run.id

    def test_prompt_mentions_task(self, h):
        task = tasks_mod.create_task(h.db, "Write docs", description="All of them")
        h.orch.try_spawn_task(task)
        prompt = h.supervisor.prompts[task.id]
        assert task.id in prompt
        assert "All of them" in prompt
        assert "done_task" in prompt

    def test_score_order_and_capacity(self, env):
        db, path = env
        h = Harness(db, path, config=make_config(max_concurrent=1))
        low = tasks_mod.create_task(db, "Low", priority=3)
        high = tasks_mod.create_task(db, "High", priority=0)
        tasks_mod.create_task(db, "Mid", priority=1)
        deep = tasks_mod.create_task(db, "Deep", priority=4, complexity="moderate")

        assert h.orch.fill_slots() == 2
        assert h.supervisor.spawned == [high.id, deep.id]

        h.orch.tick()
        assert h.supervisor.get_active_count("fast") == 1
        assert h.task(low.id).status == "open"

    def test_agent_override(self, h):
        task = tasks_mod.create_task(h.db, "Work")
        h.orch.try_spawn_task(task, agent_override="deep")
        assert runs_mod.get_latest_run(h.db, task.id).agent == "deep"
        assert runs_mod.get_latest_run(h.db, task.id).model == "big"

    def test_unrouted_complexity_skipped(self, h):
        task = tasks_mod.create_task(h.db, "Hard", complexity="complex")
        assert not h.orch.try_spawn_task(task)
        assert h.task(task.id).status == "open"
        assert runs_mod.get_latest_run(h.db, task.id) is None

    def test_stale_task_not_spawned(self, h):
        task = tasks_mod.create_task(h.db, "Work")
        tasks_mod.done_task(h.db, task.id)
        assert not h.orch.try_spawn_task(task)
        assert h.supervisor.spawned == []

    def test_spawn_failure_reopens_task(self, h):
        h.supervisor.spawn_error = "binary_not_found"
        task = tasks_mod.create_task(h.db, "Work")
        assert not h.orch.try_spawn_task(task)

        current = h.task(task.id)
        assert current.status == "open"
        assert not current.consumed
        run = runs_mod.get_latest_run(h.db, task.id)
        assert run.status == "failed"
        assert run.ended_at is not None
        assert h.health.get_backoff_seconds("fast") == 30

    def test_capacity_race_not_counted_against_health(self, h):
        h.supervisor.spawn_error = "at_capacity"
        task = tasks_mod.create_task(h.db, "Work")
        assert not h.orch.try_spawn_task(task)
        assert h.health.is_available("fast")

    def test_unexpected_spawn_error_does_not_stop_loop(self, h):
        broken = tasks_mod.create_task(h.db, "Broken", priority=0)
        other = tasks_mod.create_task(h.db, "Other", priority=1, complexity="moderate")
        real_spawn = h.supervisor.spawn

        def spawn(task, *args, **kwargs):
            if task.id == broken.id:
                raise RuntimeError("exec format error")
            return real_spawn(task, *args, **kwargs)

        with patch.object(h.supervisor, "spawn", side_effect=spawn):
            h.orch.tick()

        assert h.task(broken.id).status == "open"
        assert h.task(broken.id).consume_pid is None
        run = runs_mod.get_latest_run(h.db, broken.id)
        assert run.status == "failed"
        assert "exec format error" in run.output
        assert h.health.get_backoff_seconds("fast") == 30
        assert h.supervisor.spawned == [other.id]

    def test_dispatch_error_skips_only_that_task(self, h):
        first = tasks_mod.create_task(h.db, "First", priority=0)
        second = tasks_mod.create_task(h.db, "Second", priority=1)
        real_try = h.orch.try_spawn_task

        def try_spawn(task, *args, **kwargs):
            if task.id == first.id:
                raise RuntimeError("database is locked")
            return real_try(task, *args, **kwargs)

        with patch.object(h.orch, "try_spawn_task", side_effect=try_spawn):
            assert h.orch.fill_slots() == 1
        assert h.supervisor.spawned == [second.id]

    def test_session_id_recorded_while_running(self, h):
        task = tasks_mod.create_task(h.db, "Work")
        h.orch.fill_slots()
        assert runs_mod.get_latest_run(h.db, task.id).session_id is None

        session_id = "0f8fad5b-d9cb-469f-a165-70867728950e"
        h.supervisor.processes[task.id].session_id = session_id
        h.orch.tick()
        assert runs_mod.get_latest_run(h.db, task.id).session_id == session_id

        with patch("agent_dispatch.core.orchestrator.update_run") as update:
            h.orch.tick()
        update.assert_not_called()

    def test_backoff_skips_agent(self, h):
        h.health.record_failure("fast", FailureKind.CRASH)
        task = tasks_mod.create_task(h.db, "Work")
        assert not h.orch.try_spawn_task(task)
        h.clock.advance(31)
        assert h.orch.try_spawn_task(task)

    def test_pause_and_resume(self, h):
        tasks_mod.create_task(h.db, "Work")
        h.orch.pause()
        assert h.orch.is_paused
        h.orch.tick()
        assert h.supervisor.spawned == []
        h.orch.resume()
        h.orch.tick()
        assert len(h.supervisor.spawned) == 1

    def test_pause_signals(self, h):
        with patch("agent_dispatch.core.orchestrator.signal.signal") as install:
            h.orch.register_signal_handlers()
        handlers = {call.args[0]: call.args[1] for call in install.call_args_list}
        assert set(handlers) == {signal.SIGUSR1, signal.SIGUSR2}

        task = tasks_mod.create_task(h.db, "Work")
        handlers[signal.SIGUSR1](signal.SIGUSR1, None)
        assert h.orch.is_paused
        h.orch.tick()
        assert h.supervisor.spawned == []

        handlers[signal.SIGUSR2](signal.SIGUSR2, None)
        assert not h.orch.is_paused
        h.orch.tick()
        assert h.supervisor.spawned == [task.id]


class TestSuccess:
    def test_auto_complete(self, h):
        task = tasks_mod.create_task(h.db, "Work")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 0, "all done")
        h.orch.tick()

        current = h.task(task.id)
        assert current.status == "done"
        assert AUTO_CLOSED_LABEL in current.labels
        assert "Auto-completed" in current.reason
        assert current.consume_pid is None

        run = runs_mod.get_latest_run(h.db, task.id)
        assert run.status == "completed"
        assert run.exit_code == 0
        assert run.ended_at is not None
        assert h.health.get_health("fast").total_successes == 1

    def test_already_done_is_bookkeeping_only(self, h):
        task = tasks_mod.create_task(h.db, "Work")
        h.orch.fill_slots()
        tasks_mod.done_task(h.db, task.id, reason="Finished by agent")
        h.supervisor.finish(task.id, 0)
        h.orch.tick()

        current = h.task(task.id)
        assert current.status == "done"
        assert current.reason == "Finished by agent"
        assert AUTO_CLOSED_LABEL not in current.labels
        assert runs_mod.get_latest_run(h.db, task.id).status == "completed"

    def test_review_triggered(self, env):
        db, path = env
        review = FakeReviewService()
        h = Harness(db, path, review_service=review, review_enabled=True)
        task = tasks_mod.create_task(db, "Work")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 0)
        h.orch.tick()

        assert review.triggered == [task.id]
        assert h.task(task.id).status == "review"

    def test_review_disabled_auto_completes(self, env):
        db, path = env
        review = FakeReviewService()
        h = Harness(db, path, review_service=review, review_enabled=False)
        task = tasks_mod.create_task(db, "Work")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 0)
        h.orch.tick()

        assert review.triggered == []
        assert h.task(task.id).status == "done"

    @pytest.mark.parametrize("review", [
        FakeReviewService(accept=False),
        FakeReviewService(error=RuntimeError("reviewer down")),
    ])
    def test_review_failure_falls_back_to_auto_complete(self, env, review):
        db, path = env
        h = Harness(db, path, review_service=review, review_enabled=True)
        task = tasks_mod.create_task(db, "Work")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 0)
        h.orch.tick()

        current = h.task(task.id)
        assert current.status == "done"
        assert AUTO_CLOSED_LABEL in current.labels

    def test_completed_reviews_applied(self, env):
        db, path = env
        review = FakeReviewService()
        h = Harness(db, path, review_service=review, review_enabled=True)
        passed = tasks_mod.create_task(db, "Good")
        failed = tasks_mod.create_task(db, "Bad")
        h.orch.fill_slots()
        h.supervisor.finish(passed.id, 0)
        h.supervisor.finish(failed.id, 0)
        h.orch.tick()
        assert h.task(passed.id).status == "review"
        assert h.task(failed.id).status == "review"

        review.results[passed.id] = ReviewResult(passed=True)
        review.results[failed.id] = ReviewResult(passed=False, issues=["missing tests"])
        h.orch.pause()
        h.orch.tick()

        assert h.task(passed.id).status == "done"
        assert h.task(passed.id).reason == "Review passed"
        assert h.task(passed.id).last_review_issues == []
        assert h.task(failed.id).status == "open"
        assert h.task(failed.id).last_review_issues == ["missing tests"]

        h.orch.resume()
        h.orch.tick()
        assert h.supervisor.spawned.count(failed.id) == 2
        prompt = h.supervisor.prompts[failed.id]
        assert "## Review issues" in prompt
        assert "- missing tests" in prompt


class TestFailures:
    def test_retry_then_escalate(self, h):
        task = tasks_mod.create_task(h.db, "Flaky")
        h.orch.fill_slots()

        for attempt in range(2):
            h.supervisor.finish(task.id, 1, "boom")
            h.orch.tick()
            current = h.task(task.id)
            assert current.status == "open"
            assert not current.consumed
            assert h.orch._retry_attempts[task.id] == attempt + 1
            h.clock.advance(600)
            h.orch.tick()
            assert h.task(task.id).status == "in_progress"

        h.supervisor.finish(task.id, 1, "boom")
        h.orch.tick()

        current = h.task(task.id)
        assert current.status == "in_progress"
        assert current.consumed
        assert current.consume_pid is None
        assert current.reason.startswith("Failed after 3 attempt(s)")
        assert task.id not in h.orch._retry_attempts
        assert len(h.supervisor.spawned) == 3
        assert [t.id for t in tasks_mod.get_failed_tasks(h.db, lambda pid: False)] == [task.id]
        assert all(r.status == "failed" for r in runs_mod.list_runs(h.db, task_id=task.id))

        h.notifier.escalate.assert_called_once()
        escalated_task, agent_name, reason = h.notifier.escalate.call_args.args
        assert escalated_task.id == task.id
        assert agent_name == "fast"
        assert "boom" in reason

    def test_human_reopen_gets_fresh_budget(self, env):
        db, path = env
        h = Harness(db, path, config=make_config(max_attempts=1))
        task = tasks_mod.create_task(db, "Flaky")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 1, "boom")
        h.orch.tick()
        assert h.task(task.id).status == "in_progress"

        tasks_mod.reopen_task(db, task.id)
        h.clock.advance(600)
        h.orch.tick()
        assert len(h.supervisor.spawned) == 2

    def test_network_error_reopens_with_backoff(self, h):
        task = tasks_mod.create_task(h.db, "Fetch")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 1, "Error: connect ECONNREFUSED")
        h.orch.tick()

        assert h.task(task.id).status == "open"
        assert h.health.get_backoff_seconds("fast") == 30
        assert len(h.supervisor.spawned) == 1

        h.clock.advance(31)
        h.orch.tick()
        assert len(h.supervisor.spawned) == 2

    def test_failure_after_agent_marked_done(self, h):
        task = tasks_mod.create_task(h.db, "Work")
        h.orch.fill_slots()
        tasks_mod.done_task(h.db, task.id)
        h.supervisor.finish(task.id, 1, "crashed on exit")
        h.orch.tick()
        assert h.task(task.id).status == "done"
        h.notifier.escalate.assert_not_called()

    def test_escalation_errors_are_contained(self, env):
        db, path = env
        h = Harness(db, path, config=make_config(max_attempts=1))
        h.notifier.escalate.side_effect = RuntimeError("slack down")
        task = tasks_mod.create_task(db, "Work")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 1, "boom")
        h.orch.tick()
        assert h.task(task.id).reason.startswith("Failed after 1 attempt(s)")


class TestPermissionBlocked:
    DENIED = "Permission to use Bash has been denied"

    def _human_tasks(self, db):
        return [
            t for t in tasks_mod.list_tasks(db, status="open")
            if tasks_mod.NEEDS_HUMAN_LABEL in t.labels
        ]

    def test_creates_human_task_and_blocks(self, h):
        task = tasks_mod.create_task(h.db, "Deploy")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 1, self.DENIED)
        h.orch.tick()

        [human] = self._human_tasks(h.db)
        assert human.title == "Configure agent permissions for fast"
        assert human.priority == 0

        current = h.task(task.id)
        assert current.status == "open"
        assert current.blocked_by == [human.id]
        assert tasks_mod.get_ready_tasks(h.db) == []

        health = h.health.get_health_status("fast")
        assert health.backoff_seconds == 0
        assert health.consecutive_failures == 1
        h.notifier.escalate.assert_called_once()
        assert len(h.supervisor.spawned) == 1

    def test_human_task_reused(self, h):
        first = tasks_mod.create_task(h.db, "One")
        second = tasks_mod.create_task(h.db, "Two")
        h.orch.fill_slots()
        h.supervisor.finish(first.id, 1, self.DENIED)
        h.supervisor.finish(second.id, 1, self.DENIED)
        h.orch.tick()

        [human] = self._human_tasks(h.db)
        assert h.task(first.id).blocked_by == [human.id]
        assert h.task(second.id).blocked_by == [human.id]

    def test_unblocked_when_human_done(self, h):
        task = tasks_mod.create_task(h.db, "Deploy")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 1, self.DENIED)
        h.orch.tick()

        [human] = self._human_tasks(h.db)
        tasks_mod.done_task(h.db, human.id)
        h.clock.advance(5)
        h.orch.tick()
        assert len(h.supervisor.spawned) == 2

    def test_clears_retry_counter(self, h):
        task = tasks_mod.create_task(h.db, "Deploy")
        h.orch.fill_slots()
        h.supervisor.finish(task.id, 1, "boom")
        h.orch.tick()
        assert h.orch._retry_attempts[task.id] == 1

        h.clock.advance(600)
        h.orch.tick()
        h.supervisor.finish(task.id, 1, self.DENIED)
        h.orch.tick()
        assert task.id not in h.orch._retry_attempts


class TestRecoveryAndShutdown:
    def test_recover(self, h):
        dead = tasks_mod.create_task(h.db, "Dead")
        alive = tasks_mod.create_task(h.db, "Alive")
        for task, pid in ((dead, 111), (alive, 222)):
            tasks_mod.start_task(h.db, task.id)
            tasks_mod.update_task(h.db, task.id, consumed=True, consume_pid=pid)
            runs_mod.create_run(h.db, task.id, "fast", pid=pid)
        h.supervisor.alive_pids = {222}

        assert h.orch.recover() == 1

        assert h.task(dead.id).status == "open"
        assert h.task(alive.id).status == "in_progress"
        dead_run = runs_mod.get_latest_run(h.db, dead.id)
        assert dead_run.status == "failed"
        assert dead_run.exit_code == -1
        assert runs_mod.get_latest_run(h.db, alive.id).status == "running"

    def test_run_shuts_down_and_finalizes(self, env):
        db, path = env
        h = Harness(db, path, sleep=lambda seconds: h.orch.stop())
        task = tasks_mod.create_task(db, "Long job")

        h.orch.run()

        assert h.supervisor.shutdown_calls == [30.0]
        current = h.task(task.id)
        assert current.status == "open"
        assert not current.consumed
        assert runs_mod.get_latest_run(db, task.id).status == "cancelled"
        assert h.health.get_health("fast").total_runs == 0

    def test_forced_shutdown_skips_grace(self, env):
        db, path = env
        h = Harness(db, path, sleep=lambda seconds: h.orch.stop(force=True))
        tasks_mod.create_task(db, "Long job")
        h.orch.run()
        assert h.supervisor.shutdown_calls == [0.0]

    def test_no_spawns_after_shutdown_requested(self, h):
        tasks_mod.create_task(h.db, "Work")
        h.orch.stop()
        h.orch.tick()
        assert h.supervisor.spawned == []

    def test_handler_error_does_not_stop_loop(self, h):
        first = tasks_mod.create_task(h.db, "One")
        second = tasks_mod.create_task(h.db, "Two")
        h.orch.fill_slots()
        h.supervisor.finish(first.id, 0)
        h.supervisor.finish(second.id, 0)

        with patch.object(h.orch, "_auto_complete", side_effect=[RuntimeError("boom"), None]) as auto:
            h.orch.tick()
        assert auto.call_count == 2


SCRIPTED_AGENT = (
    "import re, sys\n"
    "m = re.search(r'<<(.*?)>>', sys.argv[1], re.S)\n"
    "if m:\n"
    "    exec(m.group(1))\n"
)


class TestEndToEnd:
    def test_real_processes(self, env):
        db, path = env
        config = AgentConfig.from_dict({
            "complexity": {c: "py" for c in COMPLEXITIES},
            "agents": {
                "py": {
                    "command": sys.executable,
                    "prompt_args": ["-c", SCRIPTED_AGENT],
                    "max_attempts": 1,
                },
            },
        })
        supervisor = ProcessSupervisor(config, path / "runs")
        orch = Orchestrator(db, config, supervisor, project_path=path)
        good = tasks_mod.create_task(db, "Good", description="<<print('hello')>>")
        bad = tasks_mod.create_task(db, "Bad", description="<<import sys; sys.exit(4)>>")

        try:
            deadline = time.monotonic() + 15
            while time.monotonic() < deadline:
                orch.tick()
                if supervisor.get_active_count() == 0 and len(runs_mod.list_runs(db, status="running")) == 0 \
                        and len(runs_mod.list_runs(db)) == 2:
                    break
                time.sleep(0.05)
        finally:
            supervisor.shutdown(grace_seconds=1)

        assert tasks_mod.get_task(db, good.id).status == "done"
        good_run = runs_mod.get_latest_run(db, good.id)
        assert good_run.exit_code == 0
        assert "hello" in good_run.output

        bad_task = tasks_mod.get_task(db, bad.id)
        assert bad_task.status == "in_progress"
        assert bad_task.reason.startswith("Failed after 1 attempt(s)")
        assert runs_mod.get_latest_run(db, bad.id).exit_code == 4

    def test_unlaunchable_prompt_does_not_stop_loop(self, env):
        db, path = env
        config = AgentConfig.from_dict({
            "complexity": {c: "py" for c in COMPLEXITIES},
            "agents": {"py": {"command": sys.executable, "prompt_args": ["-c", SCRIPTED_AGENT]}},
        })
        supervisor = ProcessSupervisor(config, path / "runs")
        orch = Orchestrator(db, config, supervisor, project_path=path)
        good = tasks_mod.create_task(db, "Good", priority=0, description="<<import time; time.sleep(5)>>")
        bad = tasks_mod.create_task(db, "Bad", priority=1, description="nul\x00byte")

        try:
            orch.tick()
            assert supervisor.is_tracking(good.id)
            assert tasks_mod.get_task(db, good.id).status == "in_progress"
        finally:
            supervisor.shutdown(grace_seconds=1)

        bad_task = tasks_mod.get_task(db, bad.id)
        assert bad_task.status == "open"
        assert bad_task.consume_pid is None
        run = runs_mod.get_latest_run(db, bad.id)
        assert run.status == "failed"
        assert "null" in run.output
