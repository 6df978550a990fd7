"""The dispatch loop: select ready tasks, spawn agents, act on completions."""

import logging
import signal
import sqlite3
import time
from collections import Counter
from pathlib import Path
from typing import Callable

from agent_dispatch.core.agent_config import AgentConfig
from agent_dispatch.core.classifier import CompletionType
from agent_dispatch.core.health import AgentHealthTracker, FailureKind, format_backoff
from agent_dispatch.core.prompts import build_task_prompt
from agent_dispatch.core.review import ReviewService
from agent_dispatch.core.runs import cleanup_orphaned_runs, create_run, update_run
from agent_dispatch.core.scoring import sort_ready_tasks
from agent_dispatch.core.supervisor import CompletionResult, ProcessSupervisor, SpawnResult
from agent_dispatch.core.tasks import (
    NEEDS_HUMAN_LABEL,
    add_dependency,
    create_task,
    done_task,
    get_ready_tasks,
    get_task,
    list_tasks,
    reopen_task,
    start_task,
    update_task,
)
from agent_dispatch.db.models import Task
from agent_dispatch.errors import ConfigurationError, SpawnError

logger = logging.getLogger(__name__)

AUTO_CLOSED_LABEL = "auto-closed"
PERMISSION_TASK_TITLE = "Configure agent permissions for {agent}"

# Spawn failures that say something about the agent rather than the moment
_SPAWN_FAILURES_COUNTED = ("binary_not_found", "spawn_failed")


class ReadyTaskCache:
    """Holds the ready-task list for ``ttl`` seconds between store reads."""

    def __init__(self, ttl: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._tasks: list[Task] | None = None
        self._loaded_at = 0.0

    def get(self, loader: Callable[[], list[Task]]) -> list[Task]:
        now = self._clock()
        if self._tasks is None or now - self._loaded_at >= self.ttl:
            self._tasks = loader()
            self._loaded_at = now
        return list(self._tasks)

    def invalidate(self):
        self._tasks = None


class Orchestrator:
    """Single-threaded control loop around a ``ProcessSupervisor``.

    Each tick polls finished processes and applies the retry/escalation
    policy to them, applies finished reviews, then spawns ready tasks in
    score order while agent capacity and health allow.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        agent_config: AgentConfig,
        supervisor: ProcessSupervisor,
        health: AgentHealthTracker | None = None,
        project_path: Path | str = ".",
        review_service: ReviewService | None = None,
        review_enabled: bool = False,
        notifier=None,
        poll_interval: float = 0.1,
        idle_interval: float = 2.0,
        cache_ttl: float = 2.0,
        shutdown_grace: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.agent_config = agent_config
        self.supervisor = supervisor
        self.health = health or AgentHealthTracker()
        self.project_path = Path(project_path)
        self.review_service = review_service
        self.review_enabled = review_enabled
        self.notifier = notifier
        self.poll_interval = poll_interval
        self.idle_interval = idle_interval
        self.shutdown_grace = shutdown_grace
        self._clock = clock
        self._sleep = sleep
        self._cache = ReadyTaskCache(cache_ttl, clock)
        self._retry_attempts: dict[str, int] = {}
        # run_id -> session id already written to the run log
        self._recorded_sessions: dict[str, str] = {}
        self._paused = False
        self.stats: Counter = Counter()

    # ── Loop ────────────────────────────────────────────────────────────

    def recover(self) -> int:
        """Clean up after a previous dispatcher that exited uncleanly.

        Returns the number of tasks reopened.
        """
        is_alive = self.supervisor.is_process_alive
        orphaned = cleanup_orphaned_runs(self.db, is_alive)

        reopened = 0
        for task in list_tasks(self.db, status="in_progress"):
            if not task.consumed or task.consume_pid is None:
                continue
            if is_alive(task.consume_pid):
                continue
            reopen_task(self.db, task.id)
            reopened += 1
            logger.info("Reopened task %s (pid %d no longer running)", task.id, task.consume_pid)

        if orphaned or reopened:
            logger.info("Recovery: %d orphaned run(s) closed, %d task(s) reopened", orphaned, reopened)
        self._cache.invalidate()
        return reopened

    def run(self):
        """Run until shutdown is requested, then stop children and finalize them."""
        self.recover()
        logger.info(
            "Dispatcher started (agents: %s, review %s)",
            ", ".join(self.agent_config.get_agent_names()),
            "on" if self.review_enabled and self.review_service else "off",
        )
        try:
            while not self.supervisor.is_shutting_down():
                if self.tick():
                    self._sleep(self.poll_interval)
                else:
                    self._idle_wait()
        finally:
            self._shutdown()

    def _idle_wait(self):
        waited = 0.0
        while waited < self.idle_interval and not self.supervisor.is_shutting_down():
            self._sleep(self.poll_interval)
            waited += self.poll_interval

    def _shutdown(self):
        grace = 0.0 if self.supervisor.is_force_shutdown() else self.shutdown_grace
        self.supervisor.shutdown(grace)
        for result in self.supervisor.poll():
            self._safe_handle(result)
        logger.info(
            "Dispatcher stopped (spawned %d, completed %d, retried %d, escalated %d)",
            self.stats["spawned"], self.stats["completed"],
            self.stats["retried"], self.stats["escalated"],
        )

    def tick(self) -> bool:
        """One loop iteration. Returns False when there is nothing to do."""
        for result in self.supervisor.poll():
            self._safe_handle(result)

        self._record_session_ids()
        self._check_completed_reviews()

        if self._paused or self.supervisor.is_shutting_down():
            return self.supervisor.get_active_count() > 0

        self.fill_slots()
        return self.supervisor.get_active_count() > 0 or bool(self._ready_tasks())

    def _ready_tasks(self) -> list[Task]:
        return self._cache.get(lambda: get_ready_tasks(self.db))

    def _record_session_ids(self):
        """Persist session ids found mid-run so a crashed dispatcher's runs can be resumed."""
        for process in self.supervisor.get_active_processes():
            session_id = process.session_id
            if session_id is None or self._recorded_sessions.get(process.run_id) == session_id:
                continue
            try:
                update_run(self.db, process.run_id, session_id=session_id)
            except Exception:
                logger.exception("Could not record session for run %s", process.run_id)
                continue
            self._recorded_sessions[process.run_id] = session_id
            logger.debug("Run %s session %s", process.run_id, session_id)

    def fill_slots(self) -> int:
        """Spawn ready tasks in score order. Returns the number spawned."""
        spawned = 0
        for task in sort_ready_tasks(self._ready_tasks()):
            if self.supervisor.is_shutting_down():
                break
            try:
                if self.try_spawn_task(task):
                    spawned += 1
            except Exception:
                logger.exception("Failed to dispatch task %s", task.id)
                self._cache.invalidate()
        return spawned

    def try_spawn_task(self, task: Task, agent_override: str | None = None) -> bool:
        """Start one task on its agent if capacity and health allow."""
        if self.supervisor.is_shutting_down():
            return False

        current = get_task(self.db, task.id)
        if current is None or current.status != "open" or current.consume_pid is not None:
            self._cache.invalidate()
            return False
        if self.supervisor.is_tracking(current.id):
            return False

        try:
            agent_name = agent_override or self.agent_config.get_agent_for_complexity(current.complexity)
            agent = self.agent_config.get_agent_definition(agent_name)
        except ConfigurationError as e:
            logger.error("Cannot route task %s: %s", current.id, e)
            return False

        if not self.supervisor.can_spawn(agent_name):
            logger.debug("Agent %s at capacity, skipping task %s", agent_name, current.id)
            return False

        backoff = self.health.get_backoff_seconds(agent_name)
        if backoff:
            logger.debug(
                "Agent %s backing off for %s, skipping task %s",
                agent_name, format_backoff(backoff), current.id,
            )
            return False

        start_task(self.db, current.id)
        update_task(self.db, current.id, consumed=True)
        self._cache.invalidate()
        run_id = create_run(self.db, current.id, agent_name, model=agent.model)

        try:
            prompt = build_task_prompt(self.db, current)
            result = self.supervisor.spawn(
                current, prompt, self.project_path, agent_override=agent_name, run_id=run_id
            )
        except Exception as e:
            logger.exception("Unexpected error spawning %s for task %s", agent_name, current.id)
            result = SpawnResult(
                success=False,
                error=SpawnError(f"Failed to start {agent_name}: {e}", "spawn_failed", agent_name),
            )
        if not result.success:
            error = result.error
            logger.warning("Could not spawn %s for task %s: %s", agent_name, current.id, error)
            update_run(self.db, run_id, ended=True, status="failed", output=str(error))
            reopen_task(self.db, current.id)
            if error is not None and error.reason in _SPAWN_FAILURES_COUNTED:
                self.health.record_failure(agent_name, FailureKind.CRASH)
            return False

        pid = result.process.pid
        update_run(self.db, run_id, pid=pid)
        update_task(self.db, current.id, consume_pid=pid)
        self.stats["spawned"] += 1
        return True

    # ── Completions ─────────────────────────────────────────────────────

    def _safe_handle(self, result: CompletionResult):
        try:
            self.handle_completion(result)
        except Exception:
            logger.exception("Failed to handle completion of task %s", result.task_id)

    def handle_completion(self, result: CompletionResult):
        """Finalize a run and apply the outcome to its task."""
        self._finalize_run(result)
        self._recorded_sessions.pop(result.run_id, None)
        self._cache.invalidate()

        task = get_task(self.db, result.task_id)
        if task is None:
            logger.warning("Task %s vanished while its run was active", result.task_id)
            return
        if task.consume_pid is not None:
            task = update_task(self.db, task.id, consume_pid=None)

        if result.interrupted:
            self._handle_interrupted(task, result)
            return

        match result.completion_type:
            case CompletionType.SUCCESS:
                self._handle_success(task, result)
            case CompletionType.FAILED | CompletionType.NETWORK_ERROR:
                self._retry_or_escalate(task, result)
            case CompletionType.PERMISSION_BLOCKED:
                self._handle_permission_blocked(task, result)
            case _:
                raise ValueError(f"Unhandled completion type: {result.completion_type}")

    def _finalize_run(self, result: CompletionResult):
        if result.interrupted:
            status = "cancelled"
        elif result.is_success:
            status = "completed"
        else:
            status = "failed"
        update_run(
            self.db,
            result.run_id,
            ended=True,
            status=status,
            exit_code=result.exit_code,
            cost_usd=result.cost_usd,
            session_id=result.session_id,
            output=result.output,
        )

    def _handle_success(self, task: Task, result: CompletionResult):
        self.health.record_success(result.agent_name)
        self._retry_attempts.pop(task.id, None)
        self.stats["completed"] += 1

        if task.status in ("done", "cancelled", "review"):
            logger.info("Task %s already %s; run %s recorded", task.id, task.status, result.run_id)
            return

        if self.review_enabled and self.review_service is not None:
            try:
                triggered = self.review_service.trigger_review(task.id, result.agent_name)
            except Exception:
                logger.exception("Review trigger failed for task %s", task.id)
                triggered = False
            if triggered:
                update_task(self.db, task.id, status="review")
                logger.info("Task %s sent to review", task.id)
                return
            logger.warning("Review not started for task %s; auto-completing", task.id)

        self._auto_complete(task, result)

    def _auto_complete(self, task: Task, result: CompletionResult):
        update_task(self.db, task.id, add_labels=[AUTO_CLOSED_LABEL])
        done_task(
            self.db, task.id,
            reason=f"Auto-completed after run {result.run_id} ({result.agent_name} exit 0)",
        )
        logger.info("Task %s auto-completed", task.id)

    def _retry_or_escalate(self, task: Task, result: CompletionResult):
        self.health.record_failure(result.agent_name, result.to_failure_kind())

        if task.is_closed or task.status == "review":
            logger.info("Task %s already %s; failed run %s recorded", task.id, task.status, result.run_id)
            return

        max_attempts = self.agent_config.get_agent_max_attempts(result.agent_name)
        attempts = self._retry_attempts.get(task.id, 0)
        if attempts < max_attempts - 1:
            self._retry_attempts[task.id] = attempts + 1
            reopen_task(self.db, task.id)
            self.stats["retried"] += 1
            logger.warning(
                "Task %s %s (exit %d); retry %d of %d",
                task.id, result.completion_type.value, result.exit_code,
                attempts + 1, max_attempts - 1,
            )
            return

        # Left in_progress and consumed so it shows up as failed
        self._retry_attempts.pop(task.id, None)
        reason = f"Failed after {max_attempts} attempt(s): {result.message or result.completion_type.value}"
        update_task(self.db, task.id, reason=reason)
        logger.error("Task %s exhausted its retries on %s", task.id, result.agent_name)
        self._escalate(task, result.agent_name, reason)

    def _handle_permission_blocked(self, task: Task, result: CompletionResult):
        self._retry_attempts.pop(task.id, None)
        self.health.record_failure(result.agent_name, FailureKind.PERMISSION)

        if task.is_closed or task.status == "review":
            return

        human_task = self._permission_task(result.agent_name, result)
        add_dependency(self.db, task.id, human_task.id)
        reopen_task(self.db, task.id)
        logger.warning(
            "Task %s blocked on permissions for %s; waiting on %s",
            task.id, result.agent_name, human_task.id,
        )
        self._escalate(
            task, result.agent_name,
            f"Agent lacks permissions; see {human_task.id}",
        )

    def _permission_task(self, agent_name: str, result: CompletionResult) -> Task:
        """The open needs-human task for ``agent_name``, created if missing."""
        title = PERMISSION_TASK_TITLE.format(agent=agent_name)
        for existing in list_tasks(self.db, status="open"):
            if existing.title == title and NEEDS_HUMAN_LABEL in existing.labels:
                return existing
        description = (
            f"Agent '{agent_name}' was blocked by a permission check while working on "
            f"task {result.task_id}.\n\n"
            f"Last output:\n{result.message or '(none)'}\n\n"
            "Grant the missing permission in the agent's configuration, then mark this task done."
        )
        return create_task(
            self.db, title,
            description=description,
            priority=0,
            complexity="trivial",
            size="xs",
            labels=[NEEDS_HUMAN_LABEL],
        )

    def _handle_interrupted(self, task: Task, result: CompletionResult):
        if task.status == "in_progress":
            reopen_task(self.db, task.id)
        logger.info("Task %s interrupted by shutdown; run %s cancelled", task.id, result.run_id)

    def _escalate(self, task: Task, agent_name: str, reason: str):
        self.stats["escalated"] += 1
        if self.notifier is None:
            return
        try:
            self.notifier.escalate(task, agent_name, reason)
        except Exception:
            logger.exception("Failed to send escalation for task %s", task.id)

    # ── Reviews ─────────────────────────────────────────────────────────

    def _check_completed_reviews(self):
        if self.review_service is None:
            return
        try:
            pending = self.review_service.get_pending_reviews()
        except Exception:
            logger.exception("Could not list pending reviews")
            return

        for task_id in pending:
            try:
                if not self.review_service.is_review_complete(task_id):
                    continue
                review = self.review_service.get_review_result(task_id)
            except Exception:
                logger.exception("Could not read review for task %s", task_id)
                continue
            if review is None:
                continue

            task = get_task(self.db, task_id)
            if task is None or task.status != "review":
                continue
            if review.passed:
                done_task(self.db, task_id, reason="Review passed")
                logger.info("Task %s passed review", task_id)
            else:
                update_task(self.db, task_id, last_review_issues=review.issues)
                reopen_task(self.db, task_id)
                logger.warning(
                    "Task %s failed review (%d issue(s)); reopened", task_id, len(review.issues)
                )
            self._cache.invalidate()

    # ── Control ─────────────────────────────────────────────────────────

    def pause(self):
        self._paused = True
        logger.info("Dispatcher paused")

    def resume(self):
        self._paused = False
        self._cache.invalidate()
        logger.info("Dispatcher resumed")

    @property
    def is_paused(self) -> bool:
        return self._paused

    def register_signal_handlers(self):
        """SIGUSR1 pauses task selection, SIGUSR2 resumes it. Main thread only."""
        signal.signal(signal.SIGUSR1, self._handle_pause_signal)
        signal.signal(signal.SIGUSR2, self._handle_pause_signal)

    def _handle_pause_signal(self, signum, frame):
        # Flags only; running processes keep being polled
        self._paused = signum == signal.SIGUSR1
        self._cache.invalidate()

    def stop(self, force: bool = False):
        self.supervisor.request_shutdown(force=force)
