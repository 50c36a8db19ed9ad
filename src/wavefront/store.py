"""Durable task store: locked read-modify-write, atomic saves, bounded recovery history.

Layout under the state directory::

    tasks.json          canonical document
    recovery/           last N previous versions of tasks.json
    progress.jsonl      append-only progress log
    .lock               held around every read-modify-write
"""

from __future__ import annotations

import json
import re
import shutil
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wavefront import log
from wavefront.errors import ArtifactsRequired, Corrupt, InvalidTransition, NotFound
from wavefront.io_utils import atomic_write_text, open_text, read_text
from wavefront.lock import StoreLock
from wavefront.tasks.io import dumps_task_set, loads_task_set
from wavefront.tasks.model import (
    Artifacts,
    FutureTask,
    Task,
    TaskSet,
    TaskStatus,
    UnverifiedClaim,
    Verification,
    now_iso,
    parse_iso,
)

if TYPE_CHECKING:
    from wavefront.config import Config
    from wavefront.verifier import ArtifactVerifier

ArtifactCollector = Callable[[Task], Artifacts]

_ALLOWED: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.PASS, TaskStatus.BLOCKED},
    TaskStatus.IN_PROGRESS: {TaskStatus.PASS, TaskStatus.BLOCKED},
    TaskStatus.BLOCKED: {TaskStatus.PENDING},
    TaskStatus.PASS: set(),
}

INTERRUPTED_NOTE = "interrupted; reverted to pending"


@dataclass
class RecoveryInfo:
    recovered: bool = False
    source: Path | None = None
    data_loss: bool = False


# ── status transitions ───────────────────────────────────────────────

def _unchecked_verification(artifacts: Artifacts) -> Verification:
    claims = [UnverifiedClaim("file", p, "not verified") for p in artifacts.files()]
    claims += [UnverifiedClaim("export", s, "not verified") for s in artifacts.exports_added]
    return Verification(verified=Artifacts(), unverified_claims=claims, verified_at=now_iso())


def apply_status(
    task: Task,
    status: TaskStatus,
    *,
    artifacts: Artifacts | None = None,
    verification: Verification | None = None,
    blocker: str | None = None,
    notes: str = "",
    duration_minutes: float | None = None,
    collector: ArtifactCollector | None = None,
    verifier: ArtifactVerifier | None = None,
) -> Task:
    """Move *task* to *status*, keeping timestamps and attempt counts in step."""
    current = task.status
    if status != current and status not in _ALLOWED[current]:
        raise InvalidTransition(f"Task {task.id}: {current.value} -> {status.value} is not allowed")

    now = now_iso()
    if status == TaskStatus.IN_PROGRESS and current != TaskStatus.IN_PROGRESS:
        if task.started_at is None:
            task.started_at = now
        task.attempts += 1
        task.completed_at = None
    elif status == TaskStatus.PASS and current != TaskStatus.PASS:
        if artifacts is None and collector is not None:
            artifacts = collector(task)
        if artifacts is None:
            raise ArtifactsRequired(f"Task {task.id} cannot pass without artifacts")
        task.artifacts = artifacts
        if verification is None:
            verification = verifier.verify(artifacts) if verifier else _unchecked_verification(artifacts)
        task.verification = verification
        task.completed_at = now
        if task.started_at is None:
            task.started_at = now
        if duration_minutes is None:
            elapsed = parse_iso(now) - parse_iso(task.started_at)
            duration_minutes = elapsed.total_seconds() / 60
        task.duration_minutes = round(max(duration_minutes, 0.0), 2)
        task.blocker = None

    if status == TaskStatus.BLOCKED:
        task.blocker = blocker or task.blocker or "blocked"
    elif current == TaskStatus.BLOCKED:
        task.blocker = None

    if notes:
        task.notes = notes
    task.status = status
    return task


def refresh_summary(ts: TaskSet) -> dict[str, Any]:
    """Recompute the document summary and per-parent subtask progress."""
    total = len(ts.tasks)
    counts = {s: 0 for s in TaskStatus}
    for task in ts.tasks:
        counts[task.status] += 1
    for parent in ts.parent_tasks():
        subs = ts.subtasks_of(parent.id)
        if subs:
            done = sum(1 for s in subs if s.status == TaskStatus.PASS)
            parent.progress_percent = done * 100 // len(subs)
    parents = len(ts.parent_tasks())
    ts.summary = {
        "total_tasks": total,
        "parent_tasks": parents,
        "subtasks": total - parents,
        "completed": counts[TaskStatus.PASS],
        "in_progress": counts[TaskStatus.IN_PROGRESS],
        "blocked": counts[TaskStatus.BLOCKED],
        "pending": counts[TaskStatus.PENDING],
        "overall_percent": counts[TaskStatus.PASS] * 100 // total if total else 0,
    }
    return ts.summary


# ── store ────────────────────────────────────────────────────────────

class TaskStore:
    """Single source of truth for task status and artifacts."""

    def __init__(
        self,
        path: Path,
        *,
        backup_limit: int = 5,
        lock_timeout: float = 10.0,
        lock_stale_after: float = 300.0,
        collector: ArtifactCollector | None = None,
        verifier: ArtifactVerifier | None = None,
    ) -> None:
        self.path = path
        self.backup_limit = max(backup_limit, 0)
        self.recovery_dir = path.parent / "recovery"
        self.progress_path = path.parent / "progress.jsonl"
        self.lock = StoreLock(path.parent / ".lock", timeout=lock_timeout, stale_after=lock_stale_after)
        self.collector = collector
        self.verifier = verifier

    @classmethod
    def from_config(cls, cfg: Config, *, verifier: ArtifactVerifier | None = None) -> TaskStore:
        return cls(
            cfg.store_file,
            backup_limit=cfg.backup_limit,
            lock_timeout=cfg.lock_timeout,
            lock_stale_after=cfg.lock_stale_after,
            verifier=verifier,
        )

    def exists(self) -> bool:
        return self.path.is_file()

    # ── read ─────────────────────────────────────────────────────

    def load(self) -> TaskSet:
        """Parse the canonical file. Raises :class:`Corrupt` rather than returning an empty set."""
        if not self.path.is_file():
            raise NotFound(f"No task store at {self.path}")
        try:
            text = read_text(self.path)
        except UnicodeDecodeError as e:
            raise Corrupt(f"{self.path}: not valid UTF-8") from e
        return loads_task_set(text)

    def backups(self) -> list[Path]:
        """Recovery snapshots, newest first."""
        if not self.recovery_dir.is_dir():
            return []
        return sorted(self.recovery_dir.glob("tasks-*.json"), reverse=True)

    def load_or_recover(self, *, persist: bool = True) -> tuple[TaskSet, RecoveryInfo]:
        """Load, falling back to the newest parseable recovery snapshot on corruption.

        With ``persist=False`` nothing is written, which keeps read-only callers
        read-only. If no snapshot parses, an empty set is returned and
        ``data_loss`` is set: the caller must re-plan.
        """
        try:
            return self.load(), RecoveryInfo()
        except Corrupt as e:
            log.warn(f"Task store is corrupt ({e}); scanning recovery history")

        for snapshot in self.backups():
            try:
                ts = loads_task_set(read_text(snapshot))
            except (Corrupt, UnicodeDecodeError):
                log.debug(f"Skipping unreadable snapshot {snapshot.name}")
                continue
            log.warn(f"Recovered task store from {snapshot.name}")
            if persist:
                self._write(ts, backup=False)
            return ts, RecoveryInfo(recovered=True, source=snapshot)

        log.error("No readable recovery snapshot; task store reinitialized empty. Re-plan required.")
        ts = TaskSet()
        if persist:
            self._write(ts, backup=False)
        return ts, RecoveryInfo(recovered=True, data_loss=True)

    # ── write ────────────────────────────────────────────────────

    def _backup_current(self) -> None:
        if not self.path.is_file() or self.backup_limit == 0:
            return
        try:
            loads_task_set(read_text(self.path))
        except (Corrupt, UnicodeDecodeError):
            log.debug(f"Not keeping unreadable {self.path.name} in recovery history")
            return
        self.recovery_dir.mkdir(parents=True, exist_ok=True)
        target = self.recovery_dir / f"tasks-{time.time_ns():020d}.json"
        shutil.copy2(self.path, target)
        for old in self.backups()[self.backup_limit:]:
            old.unlink(missing_ok=True)

    def _write(self, ts: TaskSet, *, backup: bool = True) -> None:
        refresh_summary(ts)
        ts.updated = now_iso()
        text = dumps_task_set(ts)
        if backup:
            self._backup_current()
        atomic_write_text(self.path, text)

    def save(self, ts: TaskSet) -> None:
        """Atomically replace the canonical file, keeping the previous one in recovery history."""
        with self.lock.hold():
            self._write(ts)

    def create(self, ts: TaskSet, *, overwrite: bool = False) -> None:
        if self.exists() and not overwrite:
            raise FileExistsError(f"Task store already exists at {self.path}")
        self.save(ts)

    @contextmanager
    def transaction(self) -> Iterator[TaskSet]:
        """Locked read-modify-write. Changes are saved only if the block exits normally.

        Raises :class:`Corrupt` when no recovery snapshot parses.
        """
        with self.lock.hold():
            ts, info = self.load_or_recover(persist=False)
            if info.data_loss:
                raise Corrupt(
                    f"{self.path}: no readable recovery snapshot; re-import the tasks and re-plan"
                )
            yield ts
            self._write(ts)

    # ── task status ──────────────────────────────────────────────

    def update_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        artifacts: Artifacts | None = None,
        *,
        blocker: str | None = None,
        notes: str = "",
        verification: Verification | None = None,
    ) -> Task:
        status = TaskStatus(status)
        with self.transaction() as ts:
            task = ts.require(task_id)
            apply_status(
                task,
                status,
                artifacts=artifacts,
                verification=verification,
                blocker=blocker,
                notes=notes,
                collector=self.collector,
                verifier=self.verifier,
            )
        log.debug(f"Task {task_id}: -> {status.value}")
        return task

    def recover_interrupted(self) -> list[str]:
        """Revert every ``in_progress`` task to ``pending``. Safe to call repeatedly."""
        if not self.exists():
            return []
        with self.transaction() as ts:
            reverted = revert_in_progress(ts)
        if reverted:
            log.warn(f"Reverted interrupted task(s) to pending: {', '.join(reverted)}")
        return reverted

    def reset(self, task_ids: Iterable[str] | None = None) -> list[str]:
        """Return ``blocked``/``in_progress`` tasks to ``pending``; ``pass`` is never reset."""
        wanted = list(task_ids) if task_ids else None
        changed: list[str] = []
        with self.transaction() as ts:
            targets = [ts.require(tid) for tid in wanted] if wanted else ts.tasks
            for task in targets:
                if task.status == TaskStatus.BLOCKED:
                    apply_status(task, TaskStatus.PENDING)
                    changed.append(task.id)
                elif task.status == TaskStatus.IN_PROGRESS:
                    task.status = TaskStatus.PENDING
                    task.notes = INTERRUPTED_NOTE
                    changed.append(task.id)
                elif wanted and task.status == TaskStatus.PASS:
                    log.warn(f"Task {task.id} already passed; not reset")
        return changed

    # ── future work ──────────────────────────────────────────────

    def append_future_work(
        self,
        description: str,
        *,
        source: str = "",
        priority: str = "",
        file_context: Iterable[str] = (),
        **extra: Any,
    ) -> FutureTask:
        """Record newly discovered work as its own entry, never on an existing task."""
        with self.transaction() as ts:
            item = FutureTask(
                id=_next_future_id(ts),
                description=description,
                source=source,
                priority=priority,
                file_context=list(file_context),
                created_at=now_iso(),
                extra=dict(extra),
            )
            ts.future_tasks.append(item)
        return item

    def list_future_work(self) -> list[FutureTask]:
        ts, _ = self.load_or_recover(persist=False)
        return list(ts.future_tasks)

    def promote_future_work(self, future_id: str, wave_id: int) -> Task:
        """Turn a future entry into an ordinary task scheduled no earlier than *wave_id*."""
        with self.transaction() as ts:
            task = promote(ts, future_id, wave_id)
        log.success(f"Promoted {future_id} to task {task.id} (wave {wave_id})")
        return task

    def promote_wave(self, wave_id: int) -> list[Task]:
        """Promote every future entry whose priority is ``wave_<wave_id>``."""
        priority = f"wave_{wave_id}"
        promoted: list[Task] = []
        with self.transaction() as ts:
            predecessors = wave_predecessors(ts, wave_id)
            for item in [f for f in ts.future_tasks if f.priority == priority]:
                promoted.append(promote(ts, item.id, wave_id, depends_on=predecessors))
        if not promoted:
            log.warn(f"No future tasks found with priority {priority}")
        return promoted

    # ── progress log ─────────────────────────────────────────────

    def log_progress(self, kind: str, description: str, *, task_id: str | None = None, **data: Any) -> None:
        entry = {
            "timestamp": now_iso(),
            "type": kind,
            "task_id": task_id,
            "data": {"description": description, **data},
        }
        self.progress_path.parent.mkdir(parents=True, exist_ok=True)
        with open_text(self.progress_path, "a") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def read_progress(self, count: int = 5) -> list[dict[str, Any]]:
        if not self.progress_path.is_file():
            return []
        entries: list[dict[str, Any]] = []
        for line in read_text(self.progress_path, errors="replace").splitlines():
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return entries[-count:] if count > 0 else entries


# ── helpers operating on an in-memory TaskSet ────────────────────────

def revert_in_progress(ts: TaskSet) -> list[str]:
    reverted: list[str] = []
    for task in ts.tasks:
        if task.status == TaskStatus.IN_PROGRESS:
            task.status = TaskStatus.PENDING
            task.notes = INTERRUPTED_NOTE
            reverted.append(task.id)
    return reverted


def _next_future_id(ts: TaskSet) -> str:
    nums = [int(m.group(1)) for f in ts.future_tasks if (m := re.fullmatch(r"F(\d+)", f.id))]
    nums += [
        int(m.group(1))
        for t in ts.tasks
        if (m := re.fullmatch(r"F(\d+)", str(t.extra.get("promoted_from", ""))))
    ]
    return f"F{max(nums, default=0) + 1}"


def _next_task_id(ts: TaskSet) -> str:
    nums = [int(t.id) for t in ts.parent_tasks() if t.id.isdigit()]
    return str(max(nums, default=0) + 1)


def wave_predecessors(ts: TaskSet, wave_id: int) -> list[str]:
    """Task ids of wave ``wave_id - 1`` in the current plan, or none without one."""
    if ts.plan is None or wave_id <= 1:
        return []
    previous = [w for w in ts.plan.waves if w.wave_id == wave_id - 1]
    return list(previous[0].tasks) if previous else []


def promote(
    ts: TaskSet,
    future_id: str,
    wave_id: int,
    *,
    depends_on: list[str] | None = None,
) -> Task:
    if wave_id < 1:
        raise ValueError("wave_id must be >= 1")
    item = ts.get_future(future_id)
    if depends_on is None:
        depends_on = wave_predecessors(ts, wave_id)

    description = item.description
    if item.source:
        description = f"{description} (from {item.source})"
    task = Task(
        id=_next_task_id(ts),
        description=description,
        type="parent",
        file_footprint=list(item.file_context),
        depends_on=list(depends_on),
        extra={"promoted_from": item.id, "target_wave": wave_id, "created_at": now_iso()},
    )
    ts.tasks.append(task)
    ts.future_tasks = [f for f in ts.future_tasks if f.id != future_id]
    ts.plan = None
    return task
