"""Orchestrator: runs planned waves through a worker pool, one barrier per wave."""

from __future__ import annotations

import math
import signal
import threading
import time
from collections.abc import Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum

from rich.markup import escape

from wavefront import log
from wavefront.analyzer import apply_analysis
from wavefront.artifacts import show_wave_outcome, write_task_report
from wavefront.config import Config
from wavefront.errors import Blocked, Corrupt, TaskTimeout
from wavefront.scheduler import (
    actual_speedup,
    ensure_plan,
    explain_block,
    unreachable_waves,
    unsatisfied_predecessors,
)
from wavefront.store import INTERRUPTED_NOTE, TaskStore, apply_status
from wavefront.tasks.model import ExecutionPlan, Task, TaskSet, TaskStatus, Wave
from wavefront.tasks.validate import validate
from wavefront.verifier import ArtifactVerifier
from wavefront.workers.base import WorkerBase, WorkerContext, WorkerResult


class WaveState(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    ALL_PASSED = "all_passed"
    PARTIAL_FAILURE = "partial_failure"
    ALL_FAILED = "all_failed"


@dataclass
class WaveOutcome:
    wave_id: int
    state: WaveState = WaveState.PENDING
    passed: list[str] = field(default_factory=list)
    # task id -> blocker
    failed: dict[str, str] = field(default_factory=dict)
    # task id -> unverified claim values
    unverified: dict[str, list[str]] = field(default_factory=dict)
    # file -> task ids that verifiably touched it
    conflicts: dict[str, list[str]] = field(default_factory=dict)
    # task id -> verified files outside its declared footprint
    undeclared_files: dict[str, list[str]] = field(default_factory=dict)
    retried: list[str] = field(default_factory=list)
    # task ids whose worker missed its deadline
    timed_out: list[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class RunReport:
    waves: list[WaveOutcome] = field(default_factory=list)
    halted_at: int | None = None
    blocked: dict[str, str] = field(default_factory=dict)
    unreachable_waves: list[int] = field(default_factory=list)
    not_attempted: list[int] = field(default_factory=list)
    # task id -> unverified claim values, for tasks that passed
    unverified: dict[str, list[str]] = field(default_factory=dict)
    cancelled: bool = False
    actual_speedup: float | None = None

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.halted_at is None


@dataclass
class _Round:
    """Results of one dispatch round, gathered from futures in the main thread."""

    results: dict[str, WorkerResult] = field(default_factory=dict)
    elapsed: dict[str, float] = field(default_factory=dict)  # seconds
    interrupted: list[str] = field(default_factory=list)
    # task id -> future abandoned at its deadline; the thread may still be running
    timed_out: dict[str, Future[WorkerResult]] = field(default_factory=dict)


def _blocker_text(result: WorkerResult) -> str:
    if result.status == "blocked":
        return result.notes or result.error or "worker reported blocked"
    return result.error or result.notes or "worker reported failure"


class Orchestrator:
    """Dispatches each wave's tasks concurrently and waits for all before the next."""

    def __init__(
        self,
        cfg: Config,
        store: TaskStore,
        worker: WorkerBase,
        verifier: ArtifactVerifier | None = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.worker = worker
        self.verifier = verifier or ArtifactVerifier(cfg.root, source_dirs=cfg.source_dirs)
        self.reports_dir = cfg.reports_dir
        self._stop_requested = False
        self._interrupt_count = 0
        self._orig_signal_handlers: dict[int, object] = {}
        # task id -> worker future abandoned at a deadline
        self._abandoned: dict[str, Future[WorkerResult]] = {}

    # ── public API ───────────────────────────────────────────────

    def run_all(self) -> RunReport:
        """Run every wave in order, halting at the first one that does not fully pass."""
        report = RunReport()
        plan = self._prepare()
        if not plan.waves:
            log.warn("No tasks to run")
            return report

        log.info(
            f"Running {len(plan.waves)} wave(s) (max {self.cfg.max_parallel} parallel, "
            f"{self.cfg.max_retries} retr{'y' if self.cfg.max_retries == 1 else 'ies'})"
        )
        self._install_signal_handlers()
        try:
            for i, wave in enumerate(plan.waves):
                later = [w.wave_id for w in plan.waves[i + 1:]]
                if self._stop_requested:
                    report.cancelled = True
                    report.not_attempted = [wave.wave_id, *later]
                    break

                ts = self.store.load()
                if all(ts.require(tid).status == TaskStatus.PASS for tid in wave.tasks):
                    log.debug(f"Wave {wave.wave_id} already complete; skipping")
                    continue

                outcome = self._execute_wave(wave)
                report.waves.append(outcome)
                show_wave_outcome(outcome)

                if outcome.cancelled:
                    report.cancelled = True
                    report.not_attempted = later
                    break
                if outcome.state != WaveState.ALL_PASSED:
                    report.halted_at = wave.wave_id
                    report.not_attempted = later
                    break
        finally:
            self._restore_signal_handlers()

        self._finalize(report, plan)
        return report

    def run_wave(self, wave_id: int) -> WaveOutcome:
        """Run a single wave. Every predecessor of its tasks must already be ``pass``."""
        plan = self._prepare()
        wave = plan.get_wave(wave_id)

        ts = self.store.load()
        waiting: dict[str, str] = {}
        for tid in wave.tasks:
            if ts.require(tid).status == TaskStatus.PASS:
                continue
            unmet = unsatisfied_predecessors(ts, tid)
            if unmet:
                waiting[tid] = f"waits on: {', '.join(unmet)}"
        if waiting:
            raise Blocked(f"Wave {wave_id} has predecessors that have not passed", waiting)

        self._install_signal_handlers()
        try:
            outcome = self._execute_wave(wave)
        finally:
            self._restore_signal_handlers()
        show_wave_outcome(outcome)
        return outcome

    def request_stop(self) -> None:
        """Ask the current run to stop at the next barrier poll."""
        self._stop_requested = True

    # ── preparation ──────────────────────────────────────────────

    def _prepare(self) -> ExecutionPlan:
        self.store.recover_interrupted()
        with self.store.transaction() as ts:
            problems = validate(ts)
            if problems:
                raise Corrupt(f"Task set is invalid: {'; '.join(problems)}")
            rebuilt = ensure_plan(ts)
            if not rebuilt and any(t.parallelization is None for t in ts.parent_tasks()):
                apply_analysis(ts)
            assert ts.plan is not None
            plan = ts.plan
        return plan

    def _build_context(self, ts: TaskSet, task: Task) -> WorkerContext:
        predecessors = {}
        for dep in task.blocked_by:
            pred = ts.get_task(dep)
            if pred is not None and pred.verification is not None:
                predecessors[dep] = pred.verification.verified
        return WorkerContext(
            task_id=task.id,
            description=task.description,
            file_footprint=sorted(ts.effective_footprint(task)),
            predecessor_artifacts=predecessors,
            attempt=task.attempts,
            timeout=float(self.cfg.task_timeout),
        )

    # ── one wave ─────────────────────────────────────────────────

    def _execute_wave(self, wave: Wave) -> WaveOutcome:
        outcome = WaveOutcome(wave_id=wave.wave_id)
        ts = self.store.load()

        to_run: list[str] = []
        for tid in wave.tasks:
            task = ts.require(tid)
            if task.status == TaskStatus.PENDING:
                to_run.append(tid)
            elif task.status == TaskStatus.BLOCKED:
                log.warn(f"Task {tid} is blocked from an earlier run; use `wavefront retry {tid}`")

        busy = self._still_running(to_run)
        if busy:
            with self.store.transaction() as ts:
                for tid in busy:
                    apply_status(
                        ts.require(tid), TaskStatus.BLOCKED,
                        blocker="Timeout: previous attempt is still running",
                    )
            to_run = [tid for tid in to_run if tid not in busy]

        retries_used = 0
        log.info(f"Wave {wave.wave_id}: dispatching {len(to_run)} task(s) ({wave.rationale})")
        while to_run:
            outcome.state = WaveState.DISPATCHED
            rnd = self._dispatch_round(wave.wave_id, to_run)
            will_retry = retries_used < self.cfg.max_retries and not self._stop_requested
            self._abandoned.update(rnd.timed_out)
            outcome.timed_out.extend(tid for tid in rnd.timed_out if tid not in outcome.timed_out)
            busy = self._still_running(rnd.timed_out) if will_retry else set()
            failed = self._record_round(
                wave.wave_id, rnd, outcome, will_retry=will_retry, still_running=busy
            )

            if self._stop_requested or rnd.interrupted:
                outcome.cancelled = True
                break
            retryable = [tid for tid in failed if tid not in busy]
            if not retryable or not will_retry:
                break

            retries_used += 1
            self._requeue(retryable)
            outcome.retried.extend(tid for tid in retryable if tid not in outcome.retried)
            log.warn(
                f"Retrying {len(retryable)} failed task(s) in wave {wave.wave_id} "
                f"(retry {retries_used}/{self.cfg.max_retries}): {', '.join(retryable)}"
            )
            to_run = retryable

        return self._finish_wave(wave, outcome)

    def _dispatch_round(self, wave_id: int, task_ids: list[str]) -> _Round:
        with self.store.transaction() as ts:
            contexts = []
            for tid in task_ids:
                task = ts.require(tid)
                apply_status(task, TaskStatus.IN_PROGRESS)
                contexts.append(self._build_context(ts, task))
        for ctx in contexts:
            self.store.log_progress(
                "task_started", f"Dispatched task {ctx.task_id}",
                task_id=ctx.task_id, wave=wave_id, attempt=ctx.attempt,
            )

        rnd = _Round()
        started: dict[str, float] = {}
        started_lock = threading.Lock()

        def invoke(ctx: WorkerContext) -> WorkerResult:
            with started_lock:
                started[ctx.task_id] = time.monotonic()
            return self.worker.run(ctx)

        task_timeout = float(self.cfg.task_timeout)
        grace = self.cfg.timeout_grace
        slots = max(1, min(self.cfg.max_parallel, len(contexts)))
        wave_deadline = (
            time.monotonic()
            + task_timeout * math.ceil(len(contexts) / max(self.cfg.max_parallel, 1))
            + grace
        )

        executor = ThreadPoolExecutor(max_workers=slots, thread_name_prefix=f"wave{wave_id}")
        futures: dict[Future[WorkerResult], str] = {}
        try:
            for ctx in contexts:
                futures[executor.submit(invoke, ctx)] = ctx.task_id

            pending = set(futures)
            while pending:
                done, pending = wait(
                    pending, timeout=self.cfg.poll_interval, return_when=FIRST_COMPLETED
                )
                now = time.monotonic()
                with started_lock:
                    begun_at = dict(started)

                for fut in done:
                    tid = futures[fut]
                    rnd.results[tid] = self._collect(fut, tid)
                    rnd.elapsed[tid] = now - begun_at.get(tid, now)

                if self._stop_requested:
                    rnd.interrupted = [futures[f] for f in pending]
                    break

                for fut in list(pending):
                    tid = futures[fut]
                    begun = begun_at.get(tid)
                    if begun is not None and now - begun > task_timeout + grace:
                        msg = f"Timeout: no result within {task_timeout:g}s"
                    elif now > wave_deadline:
                        msg = "Timeout: wave deadline passed" + (" before start" if begun is None else "")
                    else:
                        continue
                    fut.cancel()
                    pending.discard(fut)
                    rnd.results[tid] = WorkerResult(status="fail", error=msg)
                    rnd.timed_out[tid] = fut
                    rnd.elapsed[tid] = now - begun if begun is not None else 0.0
                    log.warn(f"Task {tid}: {msg}")
        except KeyboardInterrupt:
            self._stop_requested = True
            rnd.interrupted = [tid for tid in futures.values() if tid not in rnd.results]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return rnd

    @staticmethod
    def _collect(fut: Future[WorkerResult], tid: str) -> WorkerResult:
        try:
            result = fut.result()
        except Exception as e:
            log.debug(f"Worker raised for task {tid}: {e!r}")
            return WorkerResult(status="fail", error=f"{type(e).__name__}: {e}")
        if not isinstance(result, WorkerResult):
            return WorkerResult(status="fail", error=f"worker returned {type(result).__name__}")
        return result

    def _record_round(
        self,
        wave_id: int,
        rnd: _Round,
        outcome: WaveOutcome,
        *,
        will_retry: bool,
        still_running: set[str] | None = None,
    ) -> list[str]:
        """Persist one round's results. Returns the ids that failed."""
        still_running = still_running or set()
        failed: list[str] = []
        touched: list[tuple[Task, str, str, list[str]]] = []

        with self.store.transaction() as ts:
            for tid, result in rnd.results.items():
                task = ts.require(tid)
                verification = None
                if result.passed:
                    try:
                        verification = self.verifier.verify(result.artifacts)
                    except Exception as e:
                        log.debug(f"Verifier raised for task {tid}: {e!r}")
                        result = WorkerResult(
                            status="fail",
                            error=f"Verification error: {type(e).__name__}: {e}",
                            notes=result.notes,
                        )
                if verification is not None:
                    apply_status(
                        task,
                        TaskStatus.PASS,
                        artifacts=result.artifacts,
                        verification=verification,
                        notes=result.notes,
                        duration_minutes=rnd.elapsed.get(tid, 0.0) / 60,
                    )
                    footprint = ts.effective_footprint(task)
                    undeclared = [f for f in verification.verified.files() if f not in footprint]
                    touched.append((task, "passed", "", undeclared))
                else:
                    blocker = _blocker_text(result)
                    if tid in still_running:
                        blocker += "; worker still running, not retried"
                    apply_status(task, TaskStatus.BLOCKED, blocker=blocker, notes=result.notes)
                    failed.append(tid)
                    retrying = will_retry and tid not in still_running
                    touched.append((task, "retrying" if retrying else "failed", blocker, []))
            for tid in rnd.interrupted:
                task = ts.require(tid)
                task.status = TaskStatus.PENDING
                task.notes = INTERRUPTED_NOTE
                touched.append((task, "interrupted", "", []))

        for task, status, error, undeclared in touched:
            write_task_report(
                self.reports_dir,
                task,
                status,
                wave_id=wave_id,
                attempt=task.attempts,
                max_retries=self.cfg.max_retries,
                error_msg=error,
                error_kind=TaskTimeout.kind if task.id in rnd.timed_out else "",
                undeclared_files=undeclared,
            )
            self.store.log_progress(
                f"task_{status}", error or f"Task {task.id} {status}",
                task_id=task.id, wave=wave_id, attempt=task.attempts,
            )
            if status == "passed":
                log.console.print(f"  [green]✓[/green] {escape(task.description[:45])} ({escape(task.id)})")
                if undeclared:
                    outcome.undeclared_files[task.id] = undeclared
                    log.warn(f"Task {task.id} touched files outside its footprint: {', '.join(undeclared)}")
                if task.verification is not None and task.verification.flagged_unverified:
                    claims = ", ".join(c.value for c in task.verification.unverified_claims)
                    log.warn(f"VerificationFailed: task {task.id} has unverified claims: {claims}")
            elif status in ("retrying", "failed"):
                log.console.print(f"  [red]x[/red] {escape(task.description[:45])} ({escape(task.id)})")
                log.console.print(f"[dim]    Error: {escape(error)}[/dim]")

        return failed

    def _still_running(self, task_ids: Iterable[str]) -> set[str]:
        """Wait up to the grace period for abandoned workers of *task_ids*; return those still running."""
        futures = {tid: self._abandoned[tid] for tid in task_ids if tid in self._abandoned}
        if futures:
            wait(list(futures.values()), timeout=self.cfg.timeout_grace)
        running: set[str] = set()
        for tid, fut in futures.items():
            if fut.done():
                del self._abandoned[tid]
            else:
                running.add(tid)
                log.warn(f"Task {tid}: worker from a timed-out attempt is still running; not dispatching again")
        return running

    def _requeue(self, task_ids: list[str]) -> None:
        with self.store.transaction() as ts:
            for tid in task_ids:
                apply_status(ts.require(tid), TaskStatus.PENDING)

    def _finish_wave(self, wave: Wave, outcome: WaveOutcome) -> WaveOutcome:
        ts = self.store.load()
        owners: dict[str, list[str]] = {}
        for tid in wave.tasks:
            task = ts.require(tid)
            if task.status == TaskStatus.PASS:
                outcome.passed.append(tid)
                if task.verification is not None:
                    if task.verification.flagged_unverified:
                        outcome.unverified[tid] = [c.value for c in task.verification.unverified_claims]
                    for path in task.verification.verified.files():
                        owners.setdefault(path, []).append(tid)
            elif task.status == TaskStatus.BLOCKED:
                outcome.failed[tid] = task.blocker or "blocked"

        outcome.conflicts = {path: ids for path, ids in owners.items() if len(ids) > 1}
        for path, ids in outcome.conflicts.items():
            log.warn(f"Undeclared conflict: {path} was touched by {', '.join(ids)} in wave {wave.wave_id}")

        if not outcome.cancelled:
            if len(outcome.passed) == len(wave.tasks):
                outcome.state = WaveState.ALL_PASSED
            elif outcome.passed:
                outcome.state = WaveState.PARTIAL_FAILURE
            else:
                outcome.state = WaveState.ALL_FAILED

        self.store.log_progress(
            "wave_complete", f"Wave {wave.wave_id}: {outcome.state.value}",
            wave=wave.wave_id, passed=outcome.passed, failed=list(outcome.failed),
        )
        return outcome

    def _finalize(self, report: RunReport, plan: ExecutionPlan) -> None:
        ts = self.store.load()
        blocked_ids = [t.id for t in ts.parent_tasks() if t.status == TaskStatus.BLOCKED]
        report.blocked = {tid: explain_block(ts, tid) for tid in blocked_ids}
        for outcome in report.waves:
            report.unverified.update(outcome.unverified)

        if report.halted_at is not None:
            unreachable = unreachable_waves(plan, ts, blocked_ids)
            report.unreachable_waves = [w for w in unreachable if w in report.not_attempted]
            self.store.log_progress(
                "run_halted", f"Halted at wave {report.halted_at}",
                blocked=blocked_ids, unreachable_waves=report.unreachable_waves,
            )
        elif report.cancelled:
            self.store.log_progress("run_cancelled", "Run cancelled", not_attempted=report.not_attempted)
        else:
            with self.store.transaction() as current:
                if current.plan is not None:
                    report.actual_speedup = actual_speedup(current.plan, current)
                    current.plan.actual_parallel_speedup = report.actual_speedup
            self.store.log_progress(
                "run_complete", "All waves complete", actual_speedup=report.actual_speedup
            )

    # ── signals ──────────────────────────────────────────────────

    def _install_signal_handlers(self) -> None:
        """Install handlers so Ctrl-C stops the run at the next barrier poll."""
        self._orig_signal_handlers = {}
        signals_to_handle = [signal.SIGINT]
        if hasattr(signal, "SIGBREAK"):
            signals_to_handle.append(signal.SIGBREAK)
        if hasattr(signal, "SIGTERM"):
            signals_to_handle.append(signal.SIGTERM)

        for sig in signals_to_handle:
            try:
                self._orig_signal_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
            except (OSError, RuntimeError, ValueError):
                continue

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._orig_signal_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, RuntimeError, ValueError, TypeError):
                continue
        self._orig_signal_handlers = {}

    def _on_signal(self, signum: int, _frame: object) -> None:
        self._interrupt_count += 1
        self._stop_requested = True
        if self._interrupt_count == 1:
            log.warn(f"Interrupt received (signal {signum}). Stopping after in-flight tasks are released...")
        else:
            log.warn(f"Interrupt received again (signal {signum}). Forcing stop...")
            raise KeyboardInterrupt
