"""Per-agent health tracking and exponential backoff.

Health lives in memory for the lifetime of one dispatcher process. It is
mutated only by the orchestrator's control thread, after a completion has
been classified, so no locking is needed.
"""

import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 30
BACKOFF_MAX_SECONDS = 480

# consecutive_failures thresholds, checked from most severe down
UNHEALTHY_THRESHOLD = 5
DEGRADED_THRESHOLD = 2
WARNING_THRESHOLD = 1


class FailureKind(enum.Enum):
    CRASH = "crash"
    NETWORK = "network"
    TIMEOUT = "timeout"
    PERMISSION = "permission"

    @property
    def triggers_backoff(self) -> bool:
        # Permission failures need an operator, not a cooldown
        return self is not FailureKind.PERMISSION


def calculate_backoff(failures: int, base: int = BACKOFF_BASE_SECONDS, cap: int = BACKOFF_MAX_SECONDS) -> int:
    """Backoff window for ``failures`` consecutive failures: ``base * 2**(n-1)``, capped."""
    if failures <= 0:
        return 0
    # Avoid computing huge powers for long failure streaks
    exponent = min(failures - 1, 32)
    return min(base * (2 ** exponent), cap)


def format_backoff(seconds: int) -> str:
    """Format seconds as ``45s`` or ``2m 15s``."""
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}m {secs}s"


@dataclass
class AgentHealth:
    agent: str
    consecutive_failures: int = 0
    backoff_failures: int = 0
    last_success_at: float | None = None
    last_failure_at: float | None = None
    backoff_until: float | None = None
    total_runs: int = 0
    total_successes: int = 0

    @property
    def total_failures(self) -> int:
        return self.total_runs - self.total_successes

    @property
    def success_rate(self) -> float | None:
        if self.total_runs == 0:
            return None
        return self.total_successes / self.total_runs

    @property
    def status(self) -> str:
        if self.consecutive_failures >= UNHEALTHY_THRESHOLD:
            return "unhealthy"
        if self.consecutive_failures >= DEGRADED_THRESHOLD:
            return "degraded"
        if self.consecutive_failures >= WARNING_THRESHOLD:
            return "warning"
        return "healthy"


@dataclass(frozen=True)
class HealthStatus:
    agent: str
    status: str
    consecutive_failures: int
    backoff_seconds: int
    success_rate: float | None
    total_runs: int = 0


class AgentHealthTracker:
    """Tracks success/failure streaks per agent and derives backoff windows."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._health: dict[str, AgentHealth] = {}

    def _get(self, agent: str) -> AgentHealth:
        health = self._health.get(agent)
        if health is None:
            health = AgentHealth(agent=agent)
            self._health[agent] = health
        return health

    def record_success(self, agent: str):
        health = self._get(agent)
        if health.consecutive_failures:
            logger.info(
                "Agent %s recovered after %d consecutive failure(s)",
                agent, health.consecutive_failures,
            )
        health.consecutive_failures = 0
        health.backoff_failures = 0
        health.backoff_until = None
        health.last_success_at = self._clock()
        health.total_runs += 1
        health.total_successes += 1

    def record_failure(self, agent: str, failure_kind: FailureKind):
        now = self._clock()
        health = self._get(agent)
        health.consecutive_failures += 1
        health.last_failure_at = now
        health.total_runs += 1

        if not failure_kind.triggers_backoff:
            logger.info(
                "Agent %s failure (%s) recorded without backoff", agent, failure_kind.value
            )
            return

        health.backoff_failures += 1
        window = calculate_backoff(health.backoff_failures)
        health.backoff_until = now + window
        logger.warning(
            "Agent %s failure (%s), %d consecutive; backing off %s",
            agent, failure_kind.value, health.consecutive_failures, format_backoff(window),
        )

    def get_backoff_seconds(self, agent: str) -> int:
        """Seconds left in the agent's backoff window, 0 when not backing off."""
        health = self._health.get(agent)
        if health is None or health.backoff_until is None:
            return 0
        remaining = health.backoff_until - self._clock()
        if remaining <= 0:
            return 0
        return math.ceil(remaining)

    def is_available(self, agent: str) -> bool:
        return self.get_backoff_seconds(agent) == 0

    def get_health(self, agent: str) -> AgentHealth:
        """Raw health record; a fresh record for agents never seen."""
        return self._health.get(agent) or AgentHealth(agent=agent)

    def get_health_status(self, agent: str) -> HealthStatus:
        health = self.get_health(agent)
        return HealthStatus(
            agent=agent,
            status=health.status,
            consecutive_failures=health.consecutive_failures,
            backoff_seconds=self.get_backoff_seconds(agent),
            success_rate=health.success_rate,
            total_runs=health.total_runs,
        )

    def get_all_health_status(self) -> list[HealthStatus]:
        return [self.get_health_status(agent) for agent in sorted(self._health)]

    def clear_health(self, agent: str):
        self._health.pop(agent, None)
