"""Process supervision: spawn agent subprocesses, poll them, shut them down."""

import json
import logging
import os
import re
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from agent_dispatch.core.agent_config import AgentConfig
from agent_dispatch.core.classifier import CompletionType, classify_with_reason
from agent_dispatch.core.health import FailureKind
from agent_dispatch.db.models import Task
from agent_dispatch.errors import ConfigurationError, SpawnError

logger = logging.getLogger(__name__)

OUTPUT_TAIL_BYTES = 256 * 1024
SESSION_SCAN_BYTES = 64 * 1024
MESSAGE_MAX_CHARS = 500

SESSION_ID_PATTERNS = (
    re.compile(r"Session ID:\s*([a-f0-9-]{36})"),
    re.compile(r"""session_id["']?\s*[:=]\s*["']?([a-f0-9-]{36})"""),
)


@dataclass
class ManagedProcess:
    task_id: str
    agent_name: str
    run_id: str
    popen: subprocess.Popen
    pid: int
    started_at: float
    started_wall: datetime
    stdout_path: Path
    stderr_path: Path
    model: str | None = None
    session_id: str | None = None
    terminated: bool = False
    head_scanned: bool = False


@dataclass
class SpawnResult:
    success: bool
    process: ManagedProcess | None = None
    error: SpawnError | None = None


@dataclass(frozen=True)
class CompletionResult:
    task_id: str
    agent_name: str
    run_id: str
    exit_code: int
    completion_type: CompletionType
    duration: float
    session_id: str | None = None
    cost_usd: float | None = None
    output: str = ""
    model: str | None = None
    message: str | None = None
    interrupted: bool = False

    @property
    def is_success(self) -> bool:
        return self.completion_type is CompletionType.SUCCESS

    @property
    def is_retryable(self) -> bool:
        return self.completion_type in (CompletionType.FAILED, CompletionType.NETWORK_ERROR)

    def to_failure_kind(self) -> FailureKind | None:
        """Health failure kind for this completion, None for a success."""
        match self.completion_type:
            case CompletionType.SUCCESS:
                return None
            case CompletionType.FAILED:
                return FailureKind.CRASH
            case CompletionType.NETWORK_ERROR:
                return FailureKind.NETWORK
            case CompletionType.PERMISSION_BLOCKED:
                return FailureKind.PERMISSION
            case _:
                raise ValueError(f"Unknown completion type: {self.completion_type}")


class ProcessSupervisor:
    """Owns every agent subprocess from spawn until it is polled as finished.

    All methods except the signal handler are called from the control loop.
    The signal handler only flips the shutdown flags.
    """

    def __init__(
        self,
        agent_config: AgentConfig,
        output_dir: Path,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.agent_config = agent_config
        self.output_dir = Path(output_dir)
        self._clock = clock
        self._sleep = sleep
        self._processes: dict[str, ManagedProcess] = {}
        self._shutdown_requested = False
        self._force_shutdown = False

    # ── Capacity ────────────────────────────────────────────────────────

    def get_active_count(self, agent_name: str | None = None) -> int:
        if agent_name is None:
            return len(self._processes)
        return sum(1 for p in self._processes.values() if p.agent_name == agent_name)

    def can_spawn(self, agent_name: str) -> bool:
        return self.get_active_count(agent_name) < self.agent_config.get_agent_limit(agent_name)

    def get_active_processes(self) -> list[ManagedProcess]:
        return list(self._processes.values())

    def get_tracked_pids(self) -> list[int]:
        return [p.pid for p in self._processes.values()]

    def is_tracking(self, task_id: str) -> bool:
        return task_id in self._processes

    # ── Spawning ────────────────────────────────────────────────────────

    def spawn(
        self,
        task: Task,
        prompt: str,
        workdir: Path | str,
        agent_override: str | None = None,
        run_id: str | None = None,
    ) -> SpawnResult:
        """Launch the agent for ``task``.

        Never raises for expected failures; they come back as a failed
        ``SpawnResult`` carrying a ``SpawnError``.
        """
        if self.is_tracking(task.id):
            return _failed(f"Task {task.id} already has a live process", "already_running")

        try:
            agent_name = agent_override or self.agent_config.get_agent_for_complexity(task.complexity)
            agent = self.agent_config.get_agent_definition(agent_name)
            cmd = self.agent_config.build_command(agent_name, prompt)
        except ConfigurationError as e:
            return _failed(str(e), "config", agent_override)

        if not self.can_spawn(agent_name):
            return _failed(
                f"Agent {agent_name} is at capacity ({self.agent_config.get_agent_limit(agent_name)})",
                "at_capacity", agent_name,
            )

        binary = shutil.which(agent.command)
        if binary is None:
            return _failed(f"Agent binary not found: {agent.command}", "binary_not_found", agent_name)
        cmd[0] = binary

        run_key = run_id or datetime.now().strftime("%Y%m%d-%H%M%S")
        run_dir = self.output_dir / task.id / run_key
        stdout_path = run_dir / "stdout.log"
        stderr_path = run_dir / "stderr.log"

        try:
            run_dir.mkdir(parents=True, exist_ok=True)
            with open(stdout_path, "wb") as out, open(stderr_path, "wb") as err:
                popen = subprocess.Popen(
                    cmd,
                    cwd=str(workdir),
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    env={**os.environ, **agent.env},
                    # Own process group so a terminal Ctrl+C reaches only the dispatcher
                    start_new_session=True,
                )
        # ValueError covers an argument or env value with an embedded NUL
        except (OSError, ValueError) as e:
            return _failed(f"Failed to start {agent_name}: {e}", "spawn_failed", agent_name)

        process = ManagedProcess(
            task_id=task.id,
            agent_name=agent_name,
            run_id=run_key,
            popen=popen,
            pid=popen.pid,
            started_at=self._clock(),
            started_wall=datetime.now(),
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            model=agent.model,
        )
        self._processes[task.id] = process
        logger.info(
            "Spawned %s for task %s (pid %d, %d/%d slots)",
            agent_name, task.id, popen.pid,
            self.get_active_count(agent_name), self.agent_config.get_agent_limit(agent_name),
        )
        return SpawnResult(success=True, process=process)

    # ── Polling ─────────────────────────────────────────────────────────

    def poll(self) -> list[CompletionResult]:
        """Collect processes that have exited since the last poll.

        Each exited process is reported exactly once and then forgotten.
        """
        results = []
        for task_id, process in list(self._processes.items()):
            exit_code = process.popen.poll()
            if exit_code is None:
                if process.session_id is None and not process.head_scanned:
                    _scan_running(process)
                continue
            del self._processes[task_id]
            results.append(self._build_result(process, exit_code))
        return results

    def _build_result(self, process: ManagedProcess, exit_code: int) -> CompletionResult:
        stdout = _read_tail(process.stdout_path)
        stderr = _read_tail(process.stderr_path)
        output = "\n".join(part for part in (stdout, stderr) if part)

        completion_type, matched = classify_with_reason(exit_code, output)
        data = _parse_result_json(stdout)

        session_id = process.session_id
        cost_usd = None
        message = None
        if data:
            session_id = session_id or data.get("session_id")
            cost = data.get("total_cost_usd", data.get("cost_usd"))
            if isinstance(cost, (int, float)):
                cost_usd = float(cost)
            if isinstance(data.get("result"), str):
                message = data["result"][:MESSAGE_MAX_CHARS]
        if session_id is None:
            session_id = _scan_session_id(stdout)
        if message is None:
            message = _last_line(stderr) or _last_line(stdout)

        duration = self._clock() - process.started_at
        log = logger.info if completion_type is CompletionType.SUCCESS else logger.warning
        log(
            "Task %s (%s, pid %d) exited %d after %.1fs: %s%s",
            process.task_id, process.agent_name, process.pid, exit_code, duration,
            completion_type.value, f" [{matched}]" if matched else "",
        )

        return CompletionResult(
            task_id=process.task_id,
            agent_name=process.agent_name,
            run_id=process.run_id,
            exit_code=exit_code,
            completion_type=completion_type,
            duration=duration,
            session_id=session_id,
            cost_usd=cost_usd,
            output=output,
            model=process.model,
            message=message,
            interrupted=process.terminated,
        )

    # ── Signals & shutdown ──────────────────────────────────────────────

    def register_signal_handlers(self):
        """Install SIGINT/SIGTERM handlers. Must be called from the main thread."""
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _handle_signal(self, signum, frame):
        if self._shutdown_requested:
            self._force_shutdown = True
        self._shutdown_requested = True

    def request_shutdown(self, force: bool = False):
        self._shutdown_requested = True
        if force:
            self._force_shutdown = True

    def is_shutting_down(self) -> bool:
        return self._shutdown_requested

    def is_force_shutdown(self) -> bool:
        return self._force_shutdown

    def kill(self, task_id: str, grace: float = 5.0) -> bool:
        """Terminate one task's process. The next ``poll`` reports it."""
        process = self._processes.get(task_id)
        if process is None:
            return False
        self._terminate([process], grace)
        return True

    def shutdown(self, grace_seconds: float = 30.0):
        """SIGTERM every child, wait up to ``grace_seconds``, SIGKILL the rest.

        Processes stay in the table so the following ``poll`` finalizes them.
        """
        processes = self.get_active_processes()
        if not processes:
            return
        logger.info(
            "Stopping %d agent process(es), grace period %.0fs", len(processes), grace_seconds
        )
        self._terminate(processes, grace_seconds)

    def _terminate(self, processes: list[ManagedProcess], grace: float):
        for process in processes:
            process.terminated = True
            _signal_group(process, signal.SIGTERM)

        deadline = self._clock() + grace
        while self._clock() < deadline and not self._force_shutdown:
            if all(p.popen.poll() is not None for p in processes):
                return
            self._sleep(0.1)

        for process in processes:
            if process.popen.poll() is None:
                logger.warning("Killing task %s (pid %d)", process.task_id, process.pid)
                _signal_group(process, signal.SIGKILL)
                try:
                    process.popen.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    logger.error("Process %d did not exit after SIGKILL", process.pid)

    @staticmethod
    def is_process_alive(pid: int | None) -> bool:
        """Check if a process is still running."""
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True  # Process exists but we can't signal it


def _failed(message: str, reason: str, agent: str | None = None) -> SpawnResult:
    return SpawnResult(success=False, error=SpawnError(message, reason=reason, agent=agent))


def _signal_group(process: ManagedProcess, sig: int):
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass  # Already exited
    except PermissionError:
        process.popen.send_signal(sig)


def _read_head(path: Path, limit: int = SESSION_SCAN_BYTES) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read(limit)
    except OSError:
        return b""


def _scan_running(process: ManagedProcess):
    """Look for a session id in the head of a live process's stdout."""
    head = _read_head(process.stdout_path)
    process.session_id = _scan_session_id(head.decode("utf-8", errors="replace"))
    # A full head cannot change any more
    process.head_scanned = len(head) >= SESSION_SCAN_BYTES


def _read_tail(path: Path, limit: int = OUTPUT_TAIL_BYTES) -> str:
    """Read at most the last ``limit`` bytes of a capture file."""
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - limit))
            return f.read().decode("utf-8", errors="replace")
    except OSError:
        return ""


def _scan_session_id(text: str) -> str | None:
    for pattern in SESSION_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def _parse_result_json(stdout: str) -> dict | None:
    """Find the agent's JSON result: the whole output, or its last JSON line."""
    text = stdout.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass
    for line in reversed(text.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _last_line(text: str) -> str | None:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()[:MESSAGE_MAX_CHARS]
    return None
