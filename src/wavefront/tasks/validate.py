"""Structural validation of a task set before analysis."""

from __future__ import annotations

from collections import Counter

from wavefront import log
from wavefront.tasks.model import TaskSet


def validate(ts: TaskSet) -> list[str]:
    """Return a list of human-readable problems; empty when the set is usable."""
    errors: list[str] = []

    counts = Counter(t.id for t in ts.tasks)
    for task_id, n in counts.items():
        if n > 1:
            errors.append(f"Duplicate task id {task_id} ({n} occurrences)")

    parent_ids = {t.id for t in ts.parent_tasks()}
    for task in ts.tasks:
        if not task.is_parent and task.parent_id not in parent_ids:
            errors.append(f"Subtask {task.id} references missing parent {task.parent_id}")
        if task.estimated_minutes < 0:
            errors.append(f"Task {task.id} has a negative estimate")
        for dep in task.depends_on:
            if dep == task.id:
                errors.append(f"Task {task.id} depends on itself")
            elif dep not in parent_ids:
                errors.append(f"Task {task.id} depends on unknown parent task {dep}")
        if task.depends_on and not task.is_parent:
            errors.append(f"Subtask {task.id} declares depends_on; only parent tasks are scheduled")

    future_counts = Counter(f.id for f in ts.future_tasks)
    for future_id, n in future_counts.items():
        if n > 1:
            errors.append(f"Duplicate future task id {future_id}")

    return errors


def validate_and_report(ts: TaskSet) -> bool:
    """Validate *ts*, logging each problem. Returns ``True`` when valid."""
    errors = validate(ts)
    if not errors:
        log.debug(f"Validated {len(ts.tasks)} task(s)")
        return True
    log.error(f"Task set has {len(errors)} problem(s):")
    for err in errors:
        log.error(f"  {err}")
    return False
