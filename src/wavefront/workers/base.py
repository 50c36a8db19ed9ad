"""Base class for task workers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from wavefront.tasks.io import artifacts_to_dict
from wavefront.tasks.model import Artifacts

WORKER_STATUSES = ("pass", "fail", "blocked")


@dataclass
class WorkerContext:
    """Everything a worker receives for one dispatch of one task."""

    task_id: str
    description: str = ""
    file_footprint: list[str] = field(default_factory=list)
    # Verified artifacts only, keyed by predecessor task id.
    predecessor_artifacts: dict[str, Artifacts] = field(default_factory=dict)
    attempt: int = 1
    timeout: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "description": self.description,
            "file_footprint": list(self.file_footprint),
            "predecessor_artifacts": {
                tid: artifacts_to_dict(a) for tid, a in self.predecessor_artifacts.items()
            },
            "attempt": self.attempt,
            "timeout": self.timeout,
        }


@dataclass
class WorkerResult:
    """Uniform result from any worker invocation."""

    status: str = "fail"
    artifacts: Artifacts = field(default_factory=Artifacts)
    notes: str = ""
    error: str = ""
    duration_ms: int = 0

    @property
    def passed(self) -> bool:
        return self.status == "pass"


class WorkerBase(ABC):
    """Abstract worker.  Subclasses implement ``run``.

    ``run`` is called from executor threads; implementations must not touch
    the task store.
    """

    name: str = "base"

    @abstractmethod
    def run(self, context: WorkerContext) -> WorkerResult:
        """Perform the task described by *context* and report the outcome."""
        ...

    def check_available(self) -> str | None:
        """Return an error message if the worker cannot run, else None."""
        return None
