"""Error taxonomy for planning, persistence, and execution failures.

Every error carries a machine-readable ``kind`` and a CLI ``exit_code`` so the
command line can report failures without parsing messages.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping


class WavefrontError(Exception):
    """Base class for all orchestration errors."""

    kind: str = "Error"
    exit_code: int = 1

    def to_dict(self) -> dict[str, object]:
        return {"error": self.kind, "message": str(self)}


class CyclicDependency(WavefrontError):
    """The dependency graph contains a cycle; no plan can be built."""

    kind = "CyclicDependency"
    exit_code = 3

    def __init__(self, task_ids: Iterable[str]) -> None:
        self.task_ids = list(task_ids)
        super().__init__(f"Cyclic dependency between tasks: {', '.join(self.task_ids)}")

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["task_ids"] = self.task_ids
        return data


class Corrupt(WavefrontError):
    """The persisted task store could not be parsed."""

    kind = "Corrupt"
    exit_code = 4


class NotFound(WavefrontError):
    """A task, wave, or future-work id does not exist."""

    kind = "NotFound"
    exit_code = 5


class TaskTimeout(WavefrontError):
    """A worker exceeded its deadline."""

    kind = "Timeout"
    exit_code = 6


class VerificationFailed(WavefrontError):
    """Claimed artifacts did not match what exists on disk."""

    kind = "VerificationFailed"
    exit_code = 7


class Blocked(WavefrontError):
    """Tasks exhausted their retries, or predecessors are not complete."""

    kind = "Blocked"
    exit_code = 8

    def __init__(self, message: str, blocked: Mapping[str, str] | None = None) -> None:
        self.blocked = dict(blocked or {})
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["blocked"] = self.blocked
        return data


class InvalidTransition(WavefrontError):
    """A status change would violate the task lifecycle."""

    kind = "InvalidTransition"
    exit_code = 9


class ArtifactsRequired(WavefrontError):
    """A task was marked ``pass`` without artifacts and no collector is configured."""

    kind = "ArtifactsRequired"
    exit_code = 10


class LockTimeout(WavefrontError):
    """The store lock could not be acquired within the configured wait."""

    kind = "LockTimeout"
    exit_code = 11


# ── Failure text classification ──────────────────────────────────────

TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "etimedout",
    "deadline exceeded",
    "stalled",
)

EXTERNAL_FAILURE_PATTERNS: tuple[str, ...] = (
    "command not found",
    "enoent",
    "eacces",
    "permission denied",
    "network",
    "econnreset",
    "rate limit",
    "429",
    "too many requests",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_timeout(text: str) -> bool:
    """Return ``True`` when text describes a deadline/timeout failure."""
    if not text:
        return False
    return _contains_any(text, TIMEOUT_PATTERNS)


def looks_like_external_failure(text: str) -> bool:
    """Return ``True`` when failure looks infrastructural rather than task-related."""
    if not text:
        return False
    if looks_like_timeout(text):
        return True
    return _contains_any(text, EXTERNAL_FAILURE_PATTERNS)
