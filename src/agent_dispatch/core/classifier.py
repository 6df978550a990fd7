"""Completion classification for finished agent runs."""

import enum
import re

NETWORK_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "connection timed out",
    "connection error",
    "econnrefused",
    "econnreset",
    "etimedout",
    "enotfound",
    "eai_again",
    "getaddrinfo",
    "could not resolve host",
    "name or service not known",
    "temporary failure in name resolution",
    "network is unreachable",
    "host is unreachable",
    "no route to host",
    "network error",
    "socket hang up",
    "request timed out",
    "timeout",
)

PERMISSION_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"permission.{0,40}denied", re.IGNORECASE),
    re.compile(r"blocked.{0,40}tool", re.IGNORECASE),
    re.compile(r"requires?.{0,40}approval", re.IGNORECASE),
    re.compile(r"not allowed to (run|use|execute)", re.IGNORECASE),
)


class CompletionType(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    NETWORK_ERROR = "network_error"
    PERMISSION_BLOCKED = "permission_blocked"


def classify(exit_code: int, output: str) -> CompletionType:
    """Classify a finished run from its exit code and captured output."""
    completion_type, _ = classify_with_reason(exit_code, output)
    return completion_type


def classify_with_reason(exit_code: int, output: str) -> tuple[CompletionType, str | None]:
    """Classify a run and return the pattern that decided it, if any.

    Network signatures are checked before permission signatures, so output
    containing both is treated as a transient network failure.
    """
    if exit_code == 0:
        return CompletionType.SUCCESS, None

    haystack = (output or "").lower()
    for pattern in NETWORK_PATTERNS:
        if pattern in haystack:
            return CompletionType.NETWORK_ERROR, pattern

    for regex in PERMISSION_PATTERNS:
        if regex.search(output or ""):
            return CompletionType.PERMISSION_BLOCKED, regex.pattern

    return CompletionType.FAILED, None
