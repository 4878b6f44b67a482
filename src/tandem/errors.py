"""Exception taxonomy and textual failure classification.

Only precondition and resource problems are raised out of a run; execution,
merge and cleanup failures are recorded as data against a single task.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class Phase(str, Enum):
    ANALYSIS = "analysis"
    EXECUTION = "execution"
    MERGE = "merge"
    CLEANUP = "cleanup"


class TandemError(RuntimeError):
    """Base class for errors raised by tandem."""


class PreconditionError(TandemError):
    """An operation was refused before it caused any side effect."""


class CapacityError(PreconditionError):
    """The active-workspace cap has been reached."""


class ResourceError(TandemError):
    """The host cannot support parallel execution right now."""

    def __init__(self, message: str, status: Any = None) -> None:
        super().__init__(message)
        self.status = status


class WorkspaceError(TandemError):
    """The version-control system refused to materialize a workspace."""


class MergeError(TandemError):
    """A real merge failed after a clean dry-run merge."""


MERGE_CONFLICT_PATTERNS: tuple[str, ...] = (
    "conflict",
    "automatic merge failed",
    "fix conflicts",
    "could not apply",
)

TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
)

SPAWN_FAILURE_PATTERNS: tuple[str, ...] = (
    "not found",
    "no such file or directory",
    "permission denied",
    "exec format error",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_merge_conflict(text: str) -> bool:
    """Return ``True`` for textual git merge/cherry-pick conflict output."""
    if not text:
        return False
    return _contains_any(text, MERGE_CONFLICT_PATTERNS)


def looks_like_timeout(text: str) -> bool:
    if not text:
        return False
    return _contains_any(text, TIMEOUT_PATTERNS)


def looks_like_spawn_failure(text: str) -> bool:
    """Return ``True`` when the agent process could not be started at all."""
    if not text:
        return False
    return _contains_any(text, SPAWN_FAILURE_PATTERNS)
