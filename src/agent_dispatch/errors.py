"""Shared error types for agent dispatch."""


class DispatchError(Exception):
    """Base exception for dispatch errors."""


class ConfigurationError(DispatchError):
    """Agent configuration is missing, invalid, or cannot route a task."""


class SpawnError(DispatchError):
    """A worker process could not be launched for a task.

    ``reason`` is one of ``at_capacity``, ``already_running``,
    ``binary_not_found``, ``config`` or ``spawn_failed``. Spawn errors are
    recoverable: the candidate task is skipped for the current cycle.
    """

    def __init__(self, message: str, reason: str = "spawn_failed", agent: str | None = None):
        super().__init__(message)
        self.reason = reason
        self.agent = agent
