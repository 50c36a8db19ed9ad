"""Dependency analysis: derive a conflict graph from declared file footprints.

Two parent tasks that declare a common file conflict. The one with the earlier
intended order runs first. Explicit ``depends_on`` edges are honoured as
authored, and they decide the direction of a conflict when both apply.

Footprints are declared, not checked, so an undeclared shared resource goes
unnoticed here. The orchestrator reports such overlaps after the fact from
verified artifacts.
"""

from __future__ import annotations

from itertools import combinations

from wavefront import log
from wavefront.errors import NotFound
from wavefront.tasks.model import Parallelization, Task, TaskSet


def _rank_key(index: dict[str, int]):
    def key(task: Task) -> tuple[int, int]:
        declared = index[task.id]
        return (task.order if task.order is not None else declared, declared)

    return key


def analyze(ts: TaskSet) -> dict[str, Parallelization]:
    """Compute :class:`Parallelization` for every parent task in *ts*."""
    parents = ts.parent_tasks()
    index = {t.id: i for i, t in enumerate(parents)}
    rank = _rank_key(index)

    for task in parents:
        for dep in task.depends_on:
            if dep not in index:
                raise NotFound(f"Task {task.id} depends on unknown task {dep}")

    footprints = {t.id: ts.effective_footprint(t) for t in parents}
    blocked_by: dict[str, set[str]] = {t.id: set() for t in parents}
    blocks: dict[str, set[str]] = {t.id: set() for t in parents}
    parallel: dict[str, set[str]] = {t.id: set() for t in parents}
    shared: dict[str, set[str]] = {t.id: set() for t in parents}

    def edge(pred: str, succ: str) -> None:
        blocked_by[succ].add(pred)
        blocks[pred].add(succ)

    for a, b in combinations(parents, 2):
        common = footprints[a.id] & footprints[b.id]
        a_after_b = b.id in a.depends_on
        b_after_a = a.id in b.depends_on
        if a_after_b:
            edge(b.id, a.id)
        if b_after_a:
            edge(a.id, b.id)

        if common:
            shared[a.id] |= common
            shared[b.id] |= common
            if not (a_after_b or b_after_a):
                first, second = sorted((a, b), key=rank)
                edge(first.id, second.id)
                log.debug(
                    f"Conflict {first.id} -> {second.id} on {', '.join(sorted(common))}"
                )
        elif not (a_after_b or b_after_a):
            parallel[a.id].add(b.id)
            parallel[b.id].add(a.id)

    n = len(parents)
    by_index = index.__getitem__
    result: dict[str, Parallelization] = {}
    for task in parents:
        tid = task.id
        if n <= 1 or not shared[tid]:
            score = 1.0
        else:
            score = round(len(parallel[tid]) / (n - 1), 2)
        result[tid] = Parallelization(
            blocked_by=sorted(blocked_by[tid], key=by_index),
            blocks=sorted(blocks[tid], key=by_index),
            can_parallel_with=sorted(parallel[tid], key=by_index),
            shared_files=sorted(shared[tid]),
            isolation_score=score,
        )
    return result


def apply_analysis(ts: TaskSet) -> dict[str, Parallelization]:
    """Run :func:`analyze` and store the result on each parent task."""
    result = analyze(ts)
    for task in ts.parent_tasks():
        if task.parallelization is not None:
            result[task.id].extra = dict(task.parallelization.extra)
        task.parallelization = result[task.id]
    return result
