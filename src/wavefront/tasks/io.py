"""JSON codec for the persisted task document.

Reading is tolerant of additive change: any key this version does not know is
kept in an ``extra`` mapping and written back untouched. Reading is strict
about shape: anything that cannot be turned into the model raises
:class:`~wavefront.errors.Corrupt`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from wavefront.errors import Corrupt
from wavefront.io_utils import read_text
from wavefront.tasks.model import (
    SCHEMA_VERSION,
    Artifacts,
    ExecutionPlan,
    FutureTask,
    Parallelization,
    Task,
    TaskSet,
    TaskStatus,
    UnverifiedClaim,
    Verification,
    Wave,
)

_TASK_KEYS = {
    "id", "description", "status", "type", "parent", "file_footprint", "depends_on",
    "order", "estimated_minutes", "parallelization", "artifacts", "verification",
    "started_at", "completed_at", "duration_minutes", "attempts", "blocker", "notes",
    "progress_percent",
}
_ARTIFACT_KEYS = {"files_created", "files_modified", "exports_added", "test_files"}
_CLAIM_KEYS = {"kind", "value", "reason"}
_VERIFICATION_KEYS = {"verified", "unverified_claims", "flagged_unverified", "verified_at"}
_PARALLEL_KEYS = {"blocked_by", "blocks", "can_parallel_with", "shared_files", "isolation_score"}
_FUTURE_KEYS = {"id", "description", "source", "priority", "file_context", "created_at"}
_PLAN_KEYS = {
    "mode", "waves", "sequential_minutes", "parallel_minutes", "estimated_parallel_speedup",
    "max_concurrency", "actual_parallel_speedup", "fingerprint", "created_at",
}
_WAVE_KEYS = {"wave_id", "tasks", "rationale", "estimated_minutes"}
_DOC_KEYS = {"version", "spec", "updated", "tasks", "future_tasks", "execution_strategy", "summary"}


# ── field coercion ───────────────────────────────────────────────────

def _str_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise Corrupt(f"{where}: expected a list of strings")
    return list(value)


def _opt_str(value: Any, where: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise Corrupt(f"{where}: expected a string")


def _number(value: Any, where: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise Corrupt(f"{where}: expected a number")
    return float(value)


def _object(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise Corrupt(f"{where}: expected an object")
    return value


def _extra(data: dict[str, Any], known: set[str]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


# ── artifacts / verification ─────────────────────────────────────────

def artifacts_from_dict(data: Any, where: str = "artifacts") -> Artifacts:
    data = _object(data, where)
    return Artifacts(
        files_created=_str_list(data.get("files_created"), f"{where}.files_created"),
        files_modified=_str_list(data.get("files_modified"), f"{where}.files_modified"),
        exports_added=_str_list(data.get("exports_added"), f"{where}.exports_added"),
        test_files=_str_list(data.get("test_files"), f"{where}.test_files"),
        extra=_extra(data, _ARTIFACT_KEYS),
    )


def artifacts_to_dict(artifacts: Artifacts) -> dict[str, Any]:
    return {
        "files_created": list(artifacts.files_created),
        "files_modified": list(artifacts.files_modified),
        "exports_added": list(artifacts.exports_added),
        "test_files": list(artifacts.test_files),
        **artifacts.extra,
    }


def _verification_from_dict(data: Any, where: str) -> Verification:
    data = _object(data, where)
    claims = []
    for i, raw in enumerate(data.get("unverified_claims") or []):
        raw = _object(raw, f"{where}.unverified_claims[{i}]")
        claims.append(
            UnverifiedClaim(
                kind=str(raw.get("kind", "")),
                value=str(raw.get("value", "")),
                reason=str(raw.get("reason", "")),
                extra=_extra(raw, _CLAIM_KEYS),
            )
        )
    return Verification(
        verified=artifacts_from_dict(data.get("verified") or {}, f"{where}.verified"),
        unverified_claims=claims,
        verified_at=str(data.get("verified_at") or ""),
        extra=_extra(data, _VERIFICATION_KEYS),
    )


def verification_to_dict(verification: Verification) -> dict[str, Any]:
    return {
        "verified": artifacts_to_dict(verification.verified),
        "unverified_claims": [
            {"kind": c.kind, "value": c.value, "reason": c.reason, **c.extra}
            for c in verification.unverified_claims
        ],
        "flagged_unverified": verification.flagged_unverified,
        "verified_at": verification.verified_at,
        **verification.extra,
    }


# ── tasks ────────────────────────────────────────────────────────────

def _parallelization_from_dict(data: Any, where: str) -> Parallelization:
    data = _object(data, where)
    return Parallelization(
        blocked_by=_str_list(data.get("blocked_by"), f"{where}.blocked_by"),
        blocks=_str_list(data.get("blocks"), f"{where}.blocks"),
        can_parallel_with=_str_list(data.get("can_parallel_with"), f"{where}.can_parallel_with"),
        shared_files=_str_list(data.get("shared_files"), f"{where}.shared_files"),
        isolation_score=_number(data.get("isolation_score"), f"{where}.isolation_score", 1.0),
        extra=_extra(data, _PARALLEL_KEYS),
    )


def task_from_dict(data: Any, index: int = 0) -> Task:
    where = f"tasks[{index}]"
    data = _object(data, where)
    task_id = data.get("id")
    if isinstance(task_id, (int, float)) and not isinstance(task_id, bool):
        task_id = str(task_id)
    if not isinstance(task_id, str) or not task_id:
        raise Corrupt(f"{where}: missing task id")
    where = f"task {task_id}"

    raw_status = data.get("status", TaskStatus.PENDING.value)
    try:
        status = TaskStatus(raw_status)
    except ValueError:
        raise Corrupt(f"{where}: unknown status {raw_status!r}") from None

    order = data.get("order")
    if order is not None and (isinstance(order, bool) or not isinstance(order, int)):
        raise Corrupt(f"{where}.order: expected an integer")

    attempts = data.get("attempts") or 0
    if isinstance(attempts, bool) or not isinstance(attempts, int):
        raise Corrupt(f"{where}.attempts: expected an integer")

    duration = data.get("duration_minutes")
    progress = data.get("progress_percent")

    return Task(
        id=task_id,
        description=str(data.get("description") or data.get("title") or ""),
        status=status,
        type=str(data.get("type") or ""),
        parent=_opt_str(data.get("parent"), f"{where}.parent"),
        file_footprint=_str_list(data.get("file_footprint"), f"{where}.file_footprint"),
        depends_on=_str_list(data.get("depends_on"), f"{where}.depends_on"),
        order=order,
        estimated_minutes=_number(data.get("estimated_minutes"), f"{where}.estimated_minutes", 1.0),
        parallelization=(
            _parallelization_from_dict(data["parallelization"], f"{where}.parallelization")
            if data.get("parallelization") is not None
            else None
        ),
        artifacts=(
            artifacts_from_dict(data["artifacts"], f"{where}.artifacts")
            if data.get("artifacts") is not None
            else None
        ),
        verification=(
            _verification_from_dict(data["verification"], f"{where}.verification")
            if data.get("verification") is not None
            else None
        ),
        started_at=_opt_str(data.get("started_at"), f"{where}.started_at"),
        completed_at=_opt_str(data.get("completed_at"), f"{where}.completed_at"),
        duration_minutes=(
            _number(duration, f"{where}.duration_minutes", 0.0) if duration is not None else None
        ),
        attempts=attempts,
        blocker=_opt_str(data.get("blocker"), f"{where}.blocker"),
        notes=str(data.get("notes") or ""),
        progress_percent=int(progress) if isinstance(progress, (int, float)) else None,
        extra=_extra(data, _TASK_KEYS),
    )


def task_to_dict(task: Task) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": task.id,
        "type": task.type or ("parent" if task.is_parent else "subtask"),
        "description": task.description,
        "status": task.status.value,
    }
    if not task.is_parent:
        out["parent"] = task.parent_id
    out["file_footprint"] = list(task.file_footprint)
    if task.depends_on:
        out["depends_on"] = list(task.depends_on)
    if task.order is not None:
        out["order"] = task.order
    out["estimated_minutes"] = task.estimated_minutes
    if task.parallelization is not None:
        p = task.parallelization
        out["parallelization"] = {
            "blocked_by": list(p.blocked_by),
            "blocks": list(p.blocks),
            "can_parallel_with": list(p.can_parallel_with),
            "shared_files": list(p.shared_files),
            "isolation_score": p.isolation_score,
            **p.extra,
        }
    out["artifacts"] = artifacts_to_dict(task.artifacts) if task.artifacts is not None else None
    if task.verification is not None:
        out["verification"] = verification_to_dict(task.verification)
    out["started_at"] = task.started_at
    out["completed_at"] = task.completed_at
    if task.duration_minutes is not None:
        out["duration_minutes"] = task.duration_minutes
    out["attempts"] = task.attempts
    out["blocker"] = task.blocker
    if task.notes:
        out["notes"] = task.notes
    if task.progress_percent is not None:
        out["progress_percent"] = task.progress_percent
    out.update(task.extra)
    return out


# ── future work ──────────────────────────────────────────────────────

def future_from_dict(data: Any, index: int = 0) -> FutureTask:
    where = f"future_tasks[{index}]"
    data = _object(data, where)
    future_id = data.get("id")
    if not isinstance(future_id, str) or not future_id:
        raise Corrupt(f"{where}: missing id")
    return FutureTask(
        id=future_id,
        description=str(data.get("description") or ""),
        source=str(data.get("source") or ""),
        priority=str(data.get("priority") or ""),
        file_context=_str_list(data.get("file_context"), f"{where}.file_context"),
        created_at=str(data.get("created_at") or ""),
        extra=_extra(data, _FUTURE_KEYS),
    )


def future_to_dict(item: FutureTask) -> dict[str, Any]:
    return {
        "id": item.id,
        "description": item.description,
        "source": item.source,
        "priority": item.priority,
        "file_context": list(item.file_context),
        "created_at": item.created_at,
        **item.extra,
    }


# ── plan ─────────────────────────────────────────────────────────────

def plan_from_dict(data: Any) -> ExecutionPlan:
    data = _object(data, "execution_strategy")
    waves: list[Wave] = []
    for i, raw in enumerate(data.get("waves") or []):
        raw = _object(raw, f"execution_strategy.waves[{i}]")
        wave_id = raw.get("wave_id")
        if isinstance(wave_id, bool) or not isinstance(wave_id, int):
            raise Corrupt(f"execution_strategy.waves[{i}]: missing wave_id")
        waves.append(
            Wave(
                wave_id=wave_id,
                tasks=[str(t) for t in raw.get("tasks") or []],
                rationale=str(raw.get("rationale") or ""),
                estimated_minutes=_number(raw.get("estimated_minutes"), "wave.estimated_minutes", 0.0),
                extra=_extra(raw, _WAVE_KEYS),
            )
        )
    actual = data.get("actual_parallel_speedup")
    return ExecutionPlan(
        waves=waves,
        mode=str(data.get("mode") or "parallel_waves"),
        sequential_minutes=_number(data.get("sequential_minutes"), "sequential_minutes", 0.0),
        parallel_minutes=_number(data.get("parallel_minutes"), "parallel_minutes", 0.0),
        estimated_parallel_speedup=_number(
            data.get("estimated_parallel_speedup"), "estimated_parallel_speedup", 1.0
        ),
        max_concurrency=int(_number(data.get("max_concurrency"), "max_concurrency", 0)),
        actual_parallel_speedup=(
            _number(actual, "actual_parallel_speedup", 0.0) if actual is not None else None
        ),
        fingerprint=str(data.get("fingerprint") or ""),
        created_at=str(data.get("created_at") or ""),
        extra=_extra(data, _PLAN_KEYS),
    )


def plan_to_dict(plan: ExecutionPlan) -> dict[str, Any]:
    return {
        "mode": plan.mode,
        "waves": [
            {
                "wave_id": w.wave_id,
                "tasks": list(w.tasks),
                "rationale": w.rationale,
                "estimated_minutes": w.estimated_minutes,
                **w.extra,
            }
            for w in plan.waves
        ],
        "sequential_minutes": plan.sequential_minutes,
        "parallel_minutes": plan.parallel_minutes,
        "estimated_parallel_speedup": plan.estimated_parallel_speedup,
        "max_concurrency": plan.max_concurrency,
        "actual_parallel_speedup": plan.actual_parallel_speedup,
        "fingerprint": plan.fingerprint,
        "created_at": plan.created_at,
        **plan.extra,
    }


# ── document ─────────────────────────────────────────────────────────

def task_set_from_dict(data: Any) -> TaskSet:
    data = _object(data, "document")
    version = str(data.get("version") or SCHEMA_VERSION)
    if version.split(".", 1)[0] != SCHEMA_VERSION.split(".", 1)[0]:
        raise Corrupt(f"Unsupported task document version {version}")

    raw_tasks = data.get("tasks")
    if raw_tasks is None:
        raw_tasks = []
    if not isinstance(raw_tasks, list):
        raise Corrupt("tasks: expected a list")
    raw_future = data.get("future_tasks") or []
    if not isinstance(raw_future, list):
        raise Corrupt("future_tasks: expected a list")

    strategy = data.get("execution_strategy")
    summary = data.get("summary") or {}
    return TaskSet(
        spec=str(data.get("spec") or ""),
        tasks=[task_from_dict(t, i) for i, t in enumerate(raw_tasks)],
        future_tasks=[future_from_dict(f, i) for i, f in enumerate(raw_future)],
        plan=plan_from_dict(strategy) if strategy else None,
        summary=_object(summary, "summary"),
        updated=str(data.get("updated") or ""),
        version=version,
        extra=_extra(data, _DOC_KEYS),
    )


def task_set_to_dict(ts: TaskSet) -> dict[str, Any]:
    return {
        "version": ts.version or SCHEMA_VERSION,
        "spec": ts.spec,
        "updated": ts.updated,
        "summary": dict(ts.summary),
        "execution_strategy": plan_to_dict(ts.plan) if ts.plan is not None else None,
        "tasks": [task_to_dict(t) for t in ts.tasks],
        "future_tasks": [future_to_dict(f) for f in ts.future_tasks],
        **ts.extra,
    }


def loads_task_set(text: str) -> TaskSet:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise Corrupt(f"Invalid JSON: {e}") from e
    return task_set_from_dict(data)


def dumps_task_set(ts: TaskSet) -> str:
    return json.dumps(task_set_to_dict(ts), indent=2, ensure_ascii=False) + "\n"


def load_task_file(path: Path) -> TaskSet:
    """Parse a task document from *path* (used for initial import)."""
    try:
        text = read_text(path)
    except UnicodeDecodeError as e:
        raise Corrupt(f"{path}: not valid UTF-8") from e
    return loads_task_set(text)
