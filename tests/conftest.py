"""Shared fixtures for wavefront tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use wavefront.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Union

import pytest

from wavefront.config import Config
from wavefront.io_utils import write_text
from wavefront.store import TaskStore
from wavefront.tasks.model import Artifacts, Task, TaskSet, TaskStatus
from wavefront.workers.base import WorkerBase, WorkerContext, WorkerResult

_ENV_VARS = (
    "WAVEFRONT_STATE_DIR",
    "WAVEFRONT_WORKER_CMD",
    "WAVEFRONT_MAX_PARALLEL",
    "WAVEFRONT_MAX_RETRIES",
    "WAVEFRONT_TASK_TIMEOUT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's WAVEFRONT_* settings out of tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _make_task(
    id: str,
    footprint: list[str] | None = None,
    depends_on: list[str] | None = None,
    order: int | None = None,
    estimate: float = 1.0,
    status: TaskStatus = TaskStatus.PENDING,
    description: str = "",
) -> Task:
    return Task(
        id=id,
        description=description or f"Task {id}",
        status=status,
        file_footprint=footprint or [],
        depends_on=depends_on or [],
        order=order,
        estimated_minutes=estimate,
    )


def _make_task_set(tasks: list[Task], spec: str = "test") -> TaskSet:
    return TaskSet(spec=spec, tasks=tasks)


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def make_task_set():
    """Factory fixture that creates TaskSet instances."""
    return _make_task_set


@pytest.fixture
def cfg(tmp_path: Path) -> Config:
    """Fast-polling config rooted in tmp_path."""
    return Config(
        project_dir=str(tmp_path),
        max_parallel=3,
        max_retries=1,
        task_timeout=5,
        timeout_grace=0.5,
        poll_interval=0.01,
    )


@pytest.fixture
def store(cfg: Config) -> TaskStore:
    return TaskStore.from_config(cfg)


@pytest.fixture
def seed(store: TaskStore):
    """Create the store from a list of tasks."""

    def _seed(tasks: list[Task]) -> TaskSet:
        ts = _make_task_set(tasks)
        store.create(ts)
        return ts

    return _seed


# ── Fake worker ─────────────────────────────────────────────────────

Step = Union[str, Callable[[WorkerContext], WorkerResult]]


class FakeWorker(WorkerBase):
    """Scripted in-process worker.

    ``script`` maps task id to a list of steps, one per attempt (the last step
    repeats). A step is ``"pass"`` (write the first footprint file, or
    ``out/<id>.txt``, and claim it), ``"fail"``, ``"blocked"``, ``"raise"``,
    ``"hang"`` (sleep ``hang_seconds``), or a callable returning a result.
    """

    name = "fake"

    def __init__(
        self,
        root: Path,
        script: dict[str, list[Step]] | None = None,
        *,
        delay: float = 0.0,
        hang_seconds: float = 2.0,
    ) -> None:
        self.root = root
        self.script = script or {}
        self.delay = delay
        self.hang_seconds = hang_seconds
        self.calls: list[WorkerContext] = []
        self.events: list[tuple[str, str]] = []
        self.max_active = 0
        self._active = 0
        # task id -> most simultaneous runs of that task
        self.max_active_by_task: dict[str, int] = {}
        self._active_by_task: dict[str, int] = {}
        self._lock = threading.Lock()

    def attempts_for(self, task_id: str) -> int:
        return sum(1 for c in self.calls if c.task_id == task_id)

    def _step(self, context: WorkerContext) -> Step:
        steps = self.script.get(context.task_id)
        if not steps:
            return "pass"
        seen = self.attempts_for(context.task_id)
        return steps[min(seen - 1, len(steps) - 1)]

    def run(self, context: WorkerContext) -> WorkerResult:
        with self._lock:
            self.calls.append(context)
            self.events.append(("start", context.task_id))
            self._active += 1
            self.max_active = max(self.max_active, self._active)
            tid = context.task_id
            self._active_by_task[tid] = self._active_by_task.get(tid, 0) + 1
            self.max_active_by_task[tid] = max(self.max_active_by_task.get(tid, 0), self._active_by_task[tid])
        try:
            if self.delay:
                time.sleep(self.delay)
            step = self._step(context)
            if callable(step):
                return step(context)
            if step == "pass":
                path = context.file_footprint[0] if context.file_footprint else f"out/{context.task_id}.txt"
                target = self.root / path
                target.parent.mkdir(parents=True, exist_ok=True)
                write_text(target, f"written by {context.task_id}\n")
                return WorkerResult(status="pass", artifacts=Artifacts(files_modified=[path]))
            if step == "raise":
                raise RuntimeError(f"worker crashed on {context.task_id}")
            if step == "hang":
                time.sleep(self.hang_seconds)
                return WorkerResult(status="pass", artifacts=Artifacts())
            if step == "blocked":
                return WorkerResult(status="blocked", notes=f"{context.task_id} needs input")
            return WorkerResult(status="fail", error=f"{context.task_id} failed")
        finally:
            with self._lock:
                self._active -= 1
                self._active_by_task[context.task_id] -= 1
                self.events.append(("end", context.task_id))


@pytest.fixture
def fake_worker(tmp_path: Path):
    """Factory fixture for FakeWorker rooted in tmp_path."""

    def _make(script: dict[str, list[Step]] | None = None, **kwargs) -> FakeWorker:
        return FakeWorker(tmp_path, script, **kwargs)

    return _make
