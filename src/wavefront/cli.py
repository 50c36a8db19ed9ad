"""WAVEFRONT CLI.

Installed as ``wavefront`` console_script via pip.
"""

from __future__ import annotations

import json
import shlex
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
from rich.markup import escape

from wavefront import __version__
from wavefront import log
from wavefront.config import Config
from wavefront.errors import Blocked, Corrupt, VerificationFailed, WavefrontError
from wavefront.store import TaskStore, refresh_summary
from wavefront.tasks.io import future_to_dict, load_task_file, plan_to_dict
from wavefront.tasks.model import TaskStatus
from wavefront.tasks.validate import validate, validate_and_report
from wavefront.verifier import ArtifactVerifier


# ── Custom Click group: aliases and error reporting ──────────────────

class WavefrontGroup(click.Group):
    """Rewrite flag-style aliases and map :class:`WavefrontError` to exit codes."""

    _ALIASES: dict[str, str] = {
        "--status": "status",
        "--plan": "plan",
    }

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        rewritten = [self._ALIASES.get(a, a) for a in args]
        return super().parse_args(ctx, rewritten)

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except WavefrontError as e:
            log.error(str(e))
            click.echo(json.dumps(e.to_dict(), ensure_ascii=False), err=True)
            ctx.exit(e.exit_code)
        except KeyboardInterrupt:
            log.warn("Interrupted!")
            ctx.exit(130)


CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def _config(ctx: click.Context, **overrides: Any) -> Config:
    opts = ctx.find_root().obj or {}
    project_dir = opts.get("project_dir", "")
    return Config(
        project_dir=str(Path(project_dir).resolve()) if project_dir else "",
        state_dir=opts.get("state_dir", ""),
        verbose=opts.get("verbose", False),
        **overrides,
    )


def _verifier(cfg: Config) -> ArtifactVerifier:
    return ArtifactVerifier(cfg.root, source_dirs=cfg.source_dirs)


def _store(cfg: Config) -> TaskStore:
    return TaskStore.from_config(cfg, verifier=_verifier(cfg))


_RUN_OPTIONS = [
    click.option("--worker-cmd", default="", help="Worker command line (receives task JSON on stdin)"),
    click.option("--max-parallel", type=int, default=0, help="Max concurrent tasks per wave"),
    click.option("--max-retries", type=int, default=-1, help="Retries of the failed subset per wave"),
    click.option("--task-timeout", type=float, default=0, help="Seconds before a task times out"),
    click.option("--dry-run", is_flag=True, help="Show the plan without executing"),
]


def _run_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by ``run`` and ``retry``."""
    for option in reversed(_RUN_OPTIONS):
        func = option(func)
    return func


def _run_config(
    ctx: click.Context,
    worker_cmd: str,
    max_parallel: int,
    max_retries: int,
    task_timeout: float,
    dry_run: bool,
) -> Config:
    return _config(
        ctx,
        worker_cmd=shlex.split(worker_cmd) if worker_cmd else [],
        max_parallel=max_parallel,
        max_retries=max_retries,
        task_timeout=task_timeout,
        dry_run=dry_run,
    )


# ── Group ────────────────────────────────────────────────────────────

@click.group(cls=WavefrontGroup, context_settings=CONTEXT_SETTINGS)
@click.option("--dir", "project_dir", default="", help="Project root (default: git root or cwd)")
@click.option("--state-dir", default="", help="State directory (default: .wavefront)")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="wavefront")
@click.pass_context
def main(ctx: click.Context, project_dir: str, state_dir: str, verbose: bool) -> None:
    """WAVEFRONT: plan file-footprint-aware task waves and run them in parallel.

    \b
    EXAMPLES:
      wavefront import tasks.json                 # Create the task store
      wavefront plan                              # Compute waves
      wavefront run --worker-cmd "./agent.sh"     # Run all waves
      wavefront run 2 --worker-cmd "./agent.sh"   # Run only wave 2
      wavefront status                            # Show progress
      wavefront retry 3 --worker-cmd "./agent.sh" # Retry a blocked task
    """
    log.set_verbose(verbose)
    ctx.obj = {"project_dir": project_dir, "state_dir": state_dir, "verbose": verbose}


# ── import ───────────────────────────────────────────────────────────

@main.command("import")
@click.argument("task_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--force", is_flag=True, help="Overwrite an existing task store")
@click.pass_context
def import_tasks(ctx: click.Context, task_file: Path, force: bool) -> None:
    """Create the task store from an authored task document."""
    from wavefront.scheduler import build_plan

    cfg = _config(ctx)
    ts = load_task_file(task_file)
    if not validate_and_report(ts):
        raise Corrupt(f"{task_file}: task set is invalid")
    if not ts.spec:
        ts.spec = task_file.stem
    ts.plan = build_plan(ts)

    store = _store(cfg)
    try:
        store.create(ts, overwrite=force)
    except FileExistsError as e:
        raise click.UsageError(f"{e}. Use --force to replace it.") from e
    log.success(
        f"Imported {len(ts.tasks)} task(s) into {store.path} "
        f"({len(ts.plan.waves)} wave(s))"
    )


# ── status ───────────────────────────────────────────────────────────

@main.command()
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show task progress (read-only)."""
    from wavefront.artifacts import show_status

    cfg = _config(ctx)
    ts, info = _store(cfg).load_or_recover(persist=False)
    refresh_summary(ts)

    if as_json:
        payload = {
            "spec": ts.spec,
            "summary": ts.summary,
            "tasks": [
                {
                    "id": t.id,
                    "status": t.status.value,
                    "wave": ts.plan.wave_of(t.id) if ts.plan else None,
                    "blocker": t.blocker,
                    "flagged_unverified": bool(t.verification and t.verification.flagged_unverified),
                }
                for t in ts.parent_tasks()
            ],
            "future_tasks": len(ts.future_tasks),
            "recovered": info.recovered,
            "data_loss": info.data_loss,
        }
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    if info.data_loss:
        log.warn("Task store could not be recovered; re-import and re-plan")
    show_status(ts)


# ── plan ─────────────────────────────────────────────────────────────

@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.pass_context
def plan(ctx: click.Context, as_json: bool) -> None:
    """Analyze footprints and (re)compute the wave plan."""
    from wavefront.artifacts import show_plan
    from wavefront.scheduler import build_plan

    cfg = _config(ctx)
    with _store(cfg).transaction() as ts:
        problems = validate(ts)
        if problems:
            raise Corrupt(f"Task set is invalid: {'; '.join(problems)}")
        ts.plan = build_plan(ts)
        result = ts.plan

    if as_json:
        click.echo(json.dumps(plan_to_dict(result), indent=2, ensure_ascii=False))
    else:
        show_plan(result, ts)


# ── run / retry ──────────────────────────────────────────────────────

def _execute(cfg: Config, target: str) -> None:
    from wavefront.artifacts import show_plan, show_run_summary
    from wavefront.orchestrator import Orchestrator, WaveState
    from wavefront.scheduler import ensure_plan
    from wavefront.workers.command import CommandWorker

    store = _store(cfg)

    if cfg.dry_run:
        with store.transaction() as ts:
            ensure_plan(ts)
            result = ts.plan
        log.console.print("[bold]WAVEFRONT[/bold] - Dry run (no execution)")
        assert result is not None
        show_plan(result, ts)
        pending = ts.pending_ids()
        log.info(f"Pending tasks: {len(pending)}")
        return

    if not cfg.worker_cmd:
        raise click.UsageError("No worker command. Pass --worker-cmd or set WAVEFRONT_WORKER_CMD.")
    worker = CommandWorker(cfg.worker_cmd, cwd=cfg.root, timeout=cfg.task_timeout)
    err = worker.check_available()
    if err:
        log.error(err)
        raise click.exceptions.Exit(1)

    orchestrator = Orchestrator(cfg, store, worker, _verifier(cfg))

    if target == "all":
        report = orchestrator.run_all()
        show_run_summary(report)
        if report.cancelled:
            raise click.exceptions.Exit(130)
        if report.halted_at is not None:
            raise Blocked(f"Run halted at wave {report.halted_at}", report.blocked)
        log.success("All tasks passed")
        return

    try:
        wave_id = int(target)
    except ValueError:
        raise click.BadParameter(f"expected 'all' or a wave number, got {target!r}", param_hint="TARGET")
    outcome = orchestrator.run_wave(wave_id)
    if outcome.cancelled:
        raise click.exceptions.Exit(130)
    if outcome.state != WaveState.ALL_PASSED:
        raise Blocked(f"Wave {wave_id} did not fully pass", outcome.failed)
    log.success(f"Wave {wave_id} passed")


@main.command()
@click.argument("target", default="all")
@_run_options
@click.pass_context
def run(
    ctx: click.Context,
    target: str,
    worker_cmd: str,
    max_parallel: int,
    max_retries: int,
    task_timeout: float,
    dry_run: bool,
) -> None:
    """Run all waves, or a single wave by number."""
    cfg = _run_config(ctx, worker_cmd, max_parallel, max_retries, task_timeout, dry_run)
    _execute(cfg, target)


@main.command()
@click.argument("task_ids", nargs=-1)
@click.option("--run/--no-run", "then_run", default=True, help="Run all waves after resetting")
@_run_options
@click.pass_context
def retry(
    ctx: click.Context,
    task_ids: tuple[str, ...],
    then_run: bool,
    worker_cmd: str,
    max_parallel: int,
    max_retries: int,
    task_timeout: float,
    dry_run: bool,
) -> None:
    """Return blocked tasks to pending, then run again."""
    cfg = _run_config(ctx, worker_cmd, max_parallel, max_retries, task_timeout, dry_run)
    changed = _store(cfg).reset(task_ids or None)
    if changed:
        log.success(f"Reset to pending: {', '.join(changed)}")
    else:
        log.info("No blocked tasks to retry")
    if then_run:
        _execute(cfg, "all")


@main.command()
@click.argument("task_ids", nargs=-1)
@click.pass_context
def reset(ctx: click.Context, task_ids: tuple[str, ...]) -> None:
    """Return blocked or in-progress tasks to pending (passed tasks are kept)."""
    cfg = _config(ctx)
    changed = _store(cfg).reset(task_ids or None)
    if changed:
        log.success(f"Reset to pending: {', '.join(changed)}")
    else:
        log.info("Nothing to reset")


# ── verify ───────────────────────────────────────────────────────────

@main.command()
@click.argument("task_ids", nargs=-1)
@click.pass_context
def verify(ctx: click.Context, task_ids: tuple[str, ...]) -> None:
    """Re-check stored artifacts of passed tasks against the filesystem."""
    cfg = _config(ctx)
    verifier = _verifier(cfg)
    flagged: dict[str, str] = {}
    checked = 0

    with _store(cfg).transaction() as ts:
        if task_ids:
            targets = [ts.require(tid) for tid in task_ids]
        else:
            targets = [t for t in ts.tasks if t.status == TaskStatus.PASS]
        for task in targets:
            if task.artifacts is None:
                log.warn(f"Task {task.id} has no recorded artifacts")
                continue
            task.verification = verifier.verify_task(task)
            checked += 1
            if task.verification.flagged_unverified:
                claims = ", ".join(c.value for c in task.verification.unverified_claims)
                flagged[task.id] = claims
                log.console.print(f"  [red]x[/red] {escape(task.id)}: unverified {escape(claims)}")
            else:
                log.console.print(f"  [green]✓[/green] {escape(task.id)}")

    if flagged:
        raise VerificationFailed(f"{len(flagged)} of {checked} task(s) have unverified claims")
    log.success(f"Verified {checked} task(s)")


# ── future ───────────────────────────────────────────────────────────

@main.group()
def future() -> None:
    """Manage work discovered after planning."""


@future.command("add")
@click.argument("description")
@click.option("--source", default="", help="Where the work was discovered (e.g. a task id)")
@click.option("--priority", default="", help="Target, e.g. wave_3")
@click.option("--file", "files", multiple=True, help="Related file (repeatable)")
@click.pass_context
def future_add(
    ctx: click.Context,
    description: str,
    source: str,
    priority: str,
    files: tuple[str, ...],
) -> None:
    """Record a future task."""
    cfg = _config(ctx)
    item = _store(cfg).append_future_work(
        description, source=source, priority=priority, file_context=files
    )
    log.success(f"Added future task {item.id}")


@future.command("list")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def future_list(ctx: click.Context, as_json: bool) -> None:
    """List future tasks."""
    cfg = _config(ctx)
    items = _store(cfg).list_future_work()
    if as_json:
        click.echo(json.dumps([future_to_dict(i) for i in items], indent=2, ensure_ascii=False))
        return
    if not items:
        log.info("No future tasks")
        return
    for item in items:
        prio = f" [dim]({escape(item.priority)})[/dim]" if item.priority else ""
        log.console.print(f"  {escape(item.id)}{prio} {escape(item.description)}")


@future.command("promote")
@click.argument("future_id")
@click.option("--wave", "wave_id", type=int, required=True, help="Earliest wave for the new task")
@click.pass_context
def future_promote(ctx: click.Context, future_id: str, wave_id: int) -> None:
    """Promote a future task into the active task list."""
    cfg = _config(ctx)
    _store(cfg).promote_future_work(future_id, wave_id)


@future.command("promote-wave")
@click.argument("wave_id", type=int)
@click.pass_context
def future_promote_wave(ctx: click.Context, wave_id: int) -> None:
    """Promote every future task with priority wave_<WAVE_ID>."""
    cfg = _config(ctx)
    promoted = _store(cfg).promote_wave(wave_id)
    if promoted:
        log.success(f"Promoted {len(promoted)} task(s): {', '.join(t.id for t in promoted)}")


# ── progress ─────────────────────────────────────────────────────────

@main.command()
@click.option("-n", "count", type=int, default=10, help="Number of entries")
@click.pass_context
def progress(ctx: click.Context, count: int) -> None:
    """Show the most recent progress log entries."""
    cfg = _config(ctx)
    for entry in _store(cfg).read_progress(count):
        task = f" [{entry['task_id']}]" if entry.get("task_id") else ""
        desc = entry.get("data", {}).get("description", "")
        log.console.print(
            f"[dim]{escape(str(entry.get('timestamp', '')))}[/dim] "
            f"{escape(str(entry.get('type', '')))}{escape(task)} {escape(str(desc))}"
        )


if __name__ == "__main__":
    main()
