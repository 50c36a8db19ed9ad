"""Per-task reports and console summaries for plans, status, and runs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

from rich.markup import escape

from wavefront import log
from wavefront.errors import TaskTimeout, looks_like_external_failure
from wavefront.io_utils import write_text
from wavefront.tasks.io import artifacts_to_dict, verification_to_dict
from wavefront.tasks.model import ExecutionPlan, Task, TaskSet, TaskStatus, now_iso

if TYPE_CHECKING:
    from wavefront.orchestrator import RunReport, WaveOutcome

_STATUS_STYLE = {
    TaskStatus.PASS: "[green]pass[/green]",
    TaskStatus.IN_PROGRESS: "[cyan]in_progress[/cyan]",
    TaskStatus.BLOCKED: "[red]blocked[/red]",
    TaskStatus.PENDING: "[dim]pending[/dim]",
}


# ── Reports ──────────────────────────────────────────────────────────

def write_task_report(
    reports_dir: Path,
    task: Task,
    status: str,
    *,
    wave_id: int | None = None,
    attempt: int | None = None,
    max_retries: int | None = None,
    error_msg: str = "",
    error_kind: str = "",
    undeclared_files: list[str] | None = None,
) -> Path:
    """Write ``reports/<task id>.json`` describing the latest attempt."""
    reports_dir.mkdir(parents=True, exist_ok=True)
    report: dict[str, object] = {
        "taskId": task.id,
        "description": task.description,
        "status": status,
        "timestamp": now_iso(),
    }
    if wave_id is not None:
        report["wave"] = wave_id
    if attempt is not None:
        report["attempt"] = attempt
    if max_retries is not None:
        report["maxRetries"] = max_retries
    if task.artifacts is not None:
        report["artifacts"] = artifacts_to_dict(task.artifacts)
    if task.verification is not None:
        report["verification"] = verification_to_dict(task.verification)
    if undeclared_files:
        report["undeclaredFiles"] = undeclared_files
    if error_msg:
        report["errorMessage"] = error_msg
        report["failureType"] = "external" if looks_like_external_failure(error_msg) else "internal"
    if error_kind:
        report["errorKind"] = error_kind

    path = reports_dir / f"{task.id}.json"
    write_text(path, json.dumps(report, indent=2, ensure_ascii=False))
    return path


# ── Plan ─────────────────────────────────────────────────────────────

def show_plan(plan: ExecutionPlan, ts: TaskSet) -> None:
    """Print waves with their tasks and timing estimates."""
    log.console.print("")
    log.console.print(f"[bold]>>> Execution plan[/bold] ({len(plan.waves)} wave(s))")
    for wave in plan.waves:
        log.console.print(
            f"  [bold]Wave {wave.wave_id}[/bold] "
            f"[dim]({escape(wave.rationale)}, ~{wave.estimated_minutes:g} min)[/dim]"
        )
        for tid in wave.tasks:
            task = ts.get_task(tid)
            desc = task.description if task else ""
            log.console.print(f"    {escape(tid)}  {escape(desc[:60])}")
    log.console.print("")
    log.console.print(
        f"Sequential: {plan.sequential_minutes:g} min  "
        f"Parallel: {plan.parallel_minutes:g} min  "
        f"Speedup: {plan.estimated_parallel_speedup:g}x  "
        f"Max concurrency: {plan.max_concurrency}"
    )
    if plan.actual_parallel_speedup is not None:
        log.console.print(f"Actual speedup: {plan.actual_parallel_speedup:g}x")


# ── Status ───────────────────────────────────────────────────────────

def show_status(ts: TaskSet) -> None:
    summary = ts.summary
    log.console.print("")
    log.console.print(
        f"[bold]{escape(ts.spec or 'tasks')}[/bold]  "
        f"{summary.get('completed', 0)}/{summary.get('total_tasks', len(ts.tasks))} complete "
        f"({summary.get('overall_percent', 0)}%)"
    )
    for task in ts.parent_tasks():
        wave = ts.plan.wave_of(task.id) if ts.plan else None
        wave_label = f"w{wave}" if wave is not None else "  "
        line = f"  {wave_label:>3} {escape(task.id):<6} {_STATUS_STYLE[task.status]} {escape(task.description[:50])}"
        if task.progress_percent is not None and ts.subtasks_of(task.id):
            line += f" [dim]({task.progress_percent}% subtasks)[/dim]"
        log.console.print(line)
        if task.status == TaskStatus.BLOCKED and task.blocker:
            log.console.print(f"[dim]        blocker: {escape(task.blocker)}[/dim]")
        if task.verification is not None and task.verification.flagged_unverified:
            values = ", ".join(c.value for c in task.verification.unverified_claims)
            log.console.print(f"[yellow]        unverified: {escape(values)}[/yellow]")
    if ts.future_tasks:
        log.console.print(f"[dim]  {len(ts.future_tasks)} future task(s) in backlog[/dim]")


# ── Run ──────────────────────────────────────────────────────────────

def show_wave_outcome(outcome: WaveOutcome) -> None:
    label = outcome.state.value.upper()
    color = "green" if not outcome.failed else "red"
    log.console.print(f"  [{color}]Wave {outcome.wave_id}: {label}[/{color}]")
    if outcome.timed_out:
        log.console.print(f"[red]    {TaskTimeout.kind}: {escape(', '.join(outcome.timed_out))}[/red]")
    for file, owners in sorted(outcome.conflicts.items()):
        log.console.print(
            f"[yellow]    conflict: {escape(file)} claimed by {escape(', '.join(owners))}[/yellow]"
        )


def show_run_summary(report: RunReport) -> None:
    """Print the final run summary."""
    log.console.print("")
    log.console.print("[bold]============================================[/bold]")
    if report.cancelled:
        log.console.print("[yellow]Run cancelled.[/yellow] In-flight tasks were returned to pending.")
    elif report.halted_at is not None:
        log.console.print(f"[red]Run halted at wave {report.halted_at}.[/red]")
    else:
        log.console.print(f"[green]All waves complete![/green] Ran {len(report.waves)} wave(s).")
    log.console.print("[bold]============================================[/bold]")

    if report.blocked:
        log.console.print("")
        log.console.print("[red]Blocked tasks:[/red]")
        for tid, reason in report.blocked.items():
            log.console.print(f"  {escape(tid)}: {escape(reason)}")
    if report.unverified:
        log.console.print("")
        log.console.print("[yellow]Passed with unverified claims:[/yellow]")
        for tid, values in report.unverified.items():
            log.console.print(f"  {escape(tid)}: {escape(', '.join(values))}")
    if report.unreachable_waves:
        waves = ", ".join(str(w) for w in report.unreachable_waves)
        log.console.print(f"[dim]Unreachable waves (depend on blocked tasks): {waves}[/dim]")
    if report.not_attempted:
        waves = ", ".join(str(w) for w in report.not_attempted)
        log.console.print(f"[dim]Waves not attempted: {waves}[/dim]")
    if report.actual_speedup is not None:
        log.console.print(f"Actual speedup: {report.actual_speedup:g}x")
