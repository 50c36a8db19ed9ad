"""Task, plan, and artifact data models used across analysis, storage, and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from wavefront.errors import NotFound

SCHEMA_VERSION = "1.0"


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


def normalize_path(path: str) -> str:
    """Canonical form for footprint and artifact paths (POSIX, no leading ``./``)."""
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASS = "pass"
    BLOCKED = "blocked"


@dataclass
class Artifacts:
    """Outputs a worker claims to have produced."""

    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    exports_added: list[str] = field(default_factory=list)
    test_files: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def files(self) -> list[str]:
        """Every claimed path, de-duplicated, in claim order."""
        seen: set[str] = set()
        ordered: list[str] = []
        for path in [*self.files_created, *self.files_modified, *self.test_files]:
            if path not in seen:
                seen.add(path)
                ordered.append(path)
        return ordered

    def is_empty(self) -> bool:
        return not (
            self.files_created or self.files_modified or self.exports_added or self.test_files
        )


@dataclass
class UnverifiedClaim:
    kind: str  # "file" or "export"
    value: str
    reason: str
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Verification:
    """Partition of a task's claims into confirmed artifacts and unverified claims."""

    verified: Artifacts = field(default_factory=Artifacts)
    unverified_claims: list[UnverifiedClaim] = field(default_factory=list)
    verified_at: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def flagged_unverified(self) -> bool:
        return bool(self.unverified_claims)


@dataclass
class Parallelization:
    """Derived scheduling facts for one parent task."""

    blocked_by: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    can_parallel_with: list[str] = field(default_factory=list)
    shared_files: list[str] = field(default_factory=list)
    isolation_score: float = 1.0
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Task:
    id: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    type: str = ""
    parent: str | None = None
    file_footprint: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    order: int | None = None
    estimated_minutes: float = 1.0
    parallelization: Parallelization | None = None
    artifacts: Artifacts | None = None
    verification: Verification | None = None
    started_at: str | None = None
    completed_at: str | None = None
    duration_minutes: float | None = None
    attempts: int = 0
    blocker: str | None = None
    notes: str = ""
    progress_percent: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_parent(self) -> bool:
        if self.type:
            return self.type == "parent"
        return "." not in self.id

    @property
    def parent_id(self) -> str | None:
        if self.is_parent:
            return None
        if self.parent:
            return self.parent
        return self.id.rsplit(".", 1)[0]

    @property
    def blocked_by(self) -> list[str]:
        return list(self.parallelization.blocked_by) if self.parallelization else []


@dataclass
class FutureTask:
    """Work discovered after planning, kept apart from the active task list."""

    id: str
    description: str = ""
    source: str = ""
    priority: str = ""
    file_context: list[str] = field(default_factory=list)
    created_at: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Wave:
    wave_id: int
    tasks: list[str] = field(default_factory=list)
    rationale: str = ""
    estimated_minutes: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionPlan:
    waves: list[Wave] = field(default_factory=list)
    mode: str = "parallel_waves"
    sequential_minutes: float = 0.0
    parallel_minutes: float = 0.0
    estimated_parallel_speedup: float = 1.0
    max_concurrency: int = 0
    actual_parallel_speedup: float | None = None
    fingerprint: str = ""
    created_at: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def get_wave(self, wave_id: int) -> Wave:
        for wave in self.waves:
            if wave.wave_id == wave_id:
                return wave
        raise NotFound(f"Wave {wave_id} not in plan (waves: 1..{len(self.waves)})")

    def wave_of(self, task_id: str) -> int | None:
        for wave in self.waves:
            if task_id in wave.tasks:
                return wave.wave_id
        return None


@dataclass
class TaskSet:
    spec: str = ""
    tasks: list[Task] = field(default_factory=list)
    future_tasks: list[FutureTask] = field(default_factory=list)
    plan: ExecutionPlan | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    updated: str = ""
    version: str = SCHEMA_VERSION
    extra: dict[str, Any] = field(default_factory=dict)

    def pending_ids(self) -> list[str]:
        return [t.id for t in self.parent_tasks() if t.status != TaskStatus.PASS]

    def get_task(self, task_id: str) -> Task | None:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def require(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return task

    def parent_tasks(self) -> list[Task]:
        return [t for t in self.tasks if t.is_parent]

    def subtasks_of(self, parent_id: str) -> list[Task]:
        return [t for t in self.tasks if not t.is_parent and t.parent_id == parent_id]

    def effective_footprint(self, task: Task) -> set[str]:
        """The parent's own footprint joined with all of its subtasks' footprints."""
        paths = {normalize_path(p) for p in task.file_footprint if p.strip()}
        for sub in self.subtasks_of(task.id):
            paths.update(normalize_path(p) for p in sub.file_footprint if p.strip())
        return paths

    def get_future(self, future_id: str) -> FutureTask:
        for item in self.future_tasks:
            if item.id == future_id:
                return item
        raise NotFound(f"Future task {future_id} not found")
