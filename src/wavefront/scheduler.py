"""Wave scheduler: layer the dependency graph into ordered waves of parallel-safe tasks."""

from __future__ import annotations

import hashlib
import json

from wavefront import log
from wavefront.analyzer import apply_analysis
from wavefront.errors import CyclicDependency
from wavefront.tasks.model import ExecutionPlan, TaskSet, TaskStatus, Wave, now_iso

PARALLEL_RATIONALE = "no shared file dependencies"
INDEPENDENT_RATIONALE = "independent task"


def plan_fingerprint(ts: TaskSet) -> str:
    """Hash of everything the plan is derived from (ids, footprints, deps, order)."""
    payload = [
        [t.id, sorted(ts.effective_footprint(t)), sorted(t.depends_on), t.order]
        for t in ts.parent_tasks()
    ]
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def is_plan_stale(ts: TaskSet) -> bool:
    if ts.plan is None:
        return True
    return ts.plan.fingerprint != plan_fingerprint(ts)


def _cycle_members(remaining: list[str], blocks: dict[str, list[str]]) -> list[str]:
    """Prune tasks that merely sit downstream of a cycle, leaving the cycle itself."""
    alive = list(remaining)
    changed = True
    while changed:
        changed = False
        alive_set = set(alive)
        keep = [tid for tid in alive if any(s in alive_set for s in blocks.get(tid, []))]
        if len(keep) != len(alive):
            alive = keep
            changed = True
    return alive or list(remaining)


def build_plan(ts: TaskSet) -> ExecutionPlan:
    """Analyze *ts* and return its execution plan.

    Raises :class:`CyclicDependency` when the tasks cannot be ordered; no
    partial plan is ever produced.
    """
    parallelization = apply_analysis(ts)
    parents = ts.parent_tasks()
    estimates = {t.id: max(t.estimated_minutes, 0.0) for t in parents}
    blocks = {tid: p.blocks for tid, p in parallelization.items()}

    completed: set[str] = set()
    remaining = [t.id for t in parents]
    waves: list[Wave] = []

    while remaining:
        ready = [
            tid for tid in remaining
            if set(parallelization[tid].blocked_by) <= completed
        ]
        if not ready:
            raise CyclicDependency(_cycle_members(remaining, blocks))

        if len(ready) > 1:
            rationale = PARALLEL_RATIONALE
        elif parallelization[ready[0]].blocked_by:
            rationale = f"waits on {', '.join(parallelization[ready[0]].blocked_by)}"
        else:
            rationale = INDEPENDENT_RATIONALE

        waves.append(
            Wave(
                wave_id=len(waves) + 1,
                tasks=ready,
                rationale=rationale,
                estimated_minutes=max(estimates[tid] for tid in ready),
            )
        )
        completed.update(ready)
        ready_set = set(ready)
        remaining = [tid for tid in remaining if tid not in ready_set]

    sequential = sum(estimates.values())
    parallel = sum(w.estimated_minutes for w in waves)
    plan = ExecutionPlan(
        waves=waves,
        sequential_minutes=round(sequential, 2),
        parallel_minutes=round(parallel, 2),
        estimated_parallel_speedup=round(sequential / parallel, 2) if parallel > 0 else 1.0,
        max_concurrency=max((len(w.tasks) for w in waves), default=0),
        fingerprint=plan_fingerprint(ts),
        created_at=now_iso(),
    )
    log.debug(
        f"Planned {len(parents)} task(s) into {len(waves)} wave(s), "
        f"speedup {plan.estimated_parallel_speedup}x"
    )
    return plan


def ensure_plan(ts: TaskSet) -> bool:
    """Attach a fresh plan to *ts* if it has none or it is stale. Returns ``True`` if rebuilt."""
    if not is_plan_stale(ts):
        return False
    if ts.plan is not None:
        log.warn("Task footprints changed since planning; recomputing the plan")
    ts.plan = build_plan(ts)
    return True


# ── reachability ─────────────────────────────────────────────────────

def downstream_of(ts: TaskSet, task_ids: list[str] | set[str]) -> set[str]:
    """Every task transitively blocked by any of *task_ids* (excluding them)."""
    seen: set[str] = set()
    stack = list(task_ids)
    while stack:
        tid = stack.pop()
        task = ts.get_task(tid)
        if task is None or task.parallelization is None:
            continue
        for succ in task.parallelization.blocks:
            if succ not in seen:
                seen.add(succ)
                stack.append(succ)
    return seen - set(task_ids)


def unreachable_waves(plan: ExecutionPlan, ts: TaskSet, failed_ids: list[str] | set[str]) -> list[int]:
    """Wave ids containing a task that transitively depends on a failed task."""
    downstream = downstream_of(ts, failed_ids)
    return [w.wave_id for w in plan.waves if downstream.intersection(w.tasks)]


def actual_speedup(plan: ExecutionPlan, ts: TaskSet) -> float | None:
    """Speedup observed from recorded durations, once every planned task has one."""
    sequential = 0.0
    parallel = 0.0
    for wave in plan.waves:
        durations: list[float] = []
        for tid in wave.tasks:
            task = ts.get_task(tid)
            if task is None or task.duration_minutes is None:
                return None
            durations.append(task.duration_minutes)
        sequential += sum(durations)
        parallel += max(durations, default=0.0)
    if parallel <= 0:
        return None
    return round(sequential / parallel, 2)


# ── diagnostics ──────────────────────────────────────────────────────

def unsatisfied_predecessors(ts: TaskSet, task_id: str) -> list[str]:
    task = ts.require(task_id)
    out: list[str] = []
    for dep in task.blocked_by:
        pred = ts.get_task(dep)
        if pred is None or pred.status != TaskStatus.PASS:
            out.append(dep)
    return out


def explain_block(ts: TaskSet, task_id: str) -> str:
    """Human-readable explanation of why *task_id* cannot run (or did not pass)."""
    task = ts.require(task_id)
    reasons: list[str] = []
    if task.status == TaskStatus.BLOCKED and task.blocker:
        reasons.append(task.blocker)

    waiting = []
    for dep in unsatisfied_predecessors(ts, task_id):
        pred = ts.get_task(dep)
        st = pred.status.value if pred else "missing"
        waiting.append(f"{dep} ({st})")
    if waiting:
        reasons.append(f"waits on: {' '.join(waiting)}")

    if task.verification is not None and task.verification.flagged_unverified:
        claims = ", ".join(c.value for c in task.verification.unverified_claims)
        reasons.append(f"unverified claims: {claims}")

    return "; ".join(reasons)
