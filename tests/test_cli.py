"""CLI tests: every command runs in-process against a tmp project."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from wavefront.cli import main
from wavefront.config import Config
from wavefront.io_utils import write_text
from wavefront.store import TaskStore
from wavefront.tasks.model import TaskStatus

WORKER_SCRIPT = """\
import json, pathlib, sys

ctx = json.load(sys.stdin)
if ctx["task_id"] in sys.argv[1:]:
    sys.stderr.write("task refused\\n")
    sys.exit(1)
path = ctx["file_footprint"][0] if ctx["file_footprint"] else "out/" + ctx["task_id"] + ".txt"
target = pathlib.Path(path)
target.parent.mkdir(parents=True, exist_ok=True)
target.write_text(ctx["task_id"], encoding="utf-8")
print(json.dumps({"status": "pass", "artifacts": {"files_modified": [path]}}))
"""

TASKS = {
    "version": "1.0",
    "spec": "demo",
    "tasks": [
        {"id": "1", "description": "Write x", "file_footprint": ["x.txt"]},
        {"id": "2", "description": "Write y", "file_footprint": ["y.txt"]},
        {"id": "3", "description": "Rewrite x", "file_footprint": ["x.txt"]},
    ],
}


@pytest.fixture
def cli_runner():
    """Click CliRunner for invoking the CLI in-process."""
    from click.testing import CliRunner
    return CliRunner()


@pytest.fixture
def project(tmp_path: Path, cli_runner) -> Path:
    """A tmp project with the demo task set imported."""
    write_text(tmp_path / "tasks.json", json.dumps(TASKS))
    r = cli_runner.invoke(main, ["--dir", str(tmp_path), "import", str(tmp_path / "tasks.json")])
    assert r.exit_code == 0, r.output
    return tmp_path


def _worker_cmd(tmp_path: Path, *failing: str) -> str:
    script = tmp_path / "worker.py"
    write_text(script, WORKER_SCRIPT)
    return " ".join([sys.executable, str(script), *failing])


def _store(tmp_path: Path) -> TaskStore:
    return TaskStore.from_config(Config(project_dir=str(tmp_path)))


def _invoke(cli_runner, project: Path, *args: str):
    return cli_runner.invoke(main, ["--dir", str(project), *args])


# ── Help and version ────────────────────────────────────────────────


class TestCliHelpAndVersion:
    def test_help(self, cli_runner):
        r = cli_runner.invoke(main, ["--help"])
        assert r.exit_code == 0
        assert "WAVEFRONT" in r.output

    def test_short_help(self, cli_runner):
        r = cli_runner.invoke(main, ["-h"])
        assert r.exit_code == 0
        assert "WAVEFRONT" in r.output

    def test_version(self, cli_runner):
        r = cli_runner.invoke(main, ["--version"])
        assert r.exit_code == 0
        assert "wavefront" in r.output.lower()


# ── import ──────────────────────────────────────────────────────────


class TestImport:
    def test_creates_store_with_plan(self, project):
        ts = _store(project).load()
        assert [w.tasks for w in ts.plan.waves] == [["1", "2"], ["3"]]

    def test_refuses_existing_store(self, cli_runner, project):
        r = _invoke(cli_runner, project, "import", str(project / "tasks.json"))
        assert r.exit_code == 2
        r = _invoke(cli_runner, project, "import", "--force", str(project / "tasks.json"))
        assert r.exit_code == 0

    def test_cycle_reported_as_json(self, cli_runner, tmp_path):
        doc = {"tasks": [{"id": "1", "depends_on": ["2"]}, {"id": "2", "depends_on": ["1"]}]}
        write_text(tmp_path / "tasks.json", json.dumps(doc))
        r = _invoke(cli_runner, tmp_path, "import", str(tmp_path / "tasks.json"))
        assert r.exit_code == 3
        assert '"error": "CyclicDependency"' in r.output

    def test_invalid_document(self, cli_runner, tmp_path):
        write_text(tmp_path / "tasks.json", "{ nope")
        r = _invoke(cli_runner, tmp_path, "import", str(tmp_path / "tasks.json"))
        assert r.exit_code == 4


# ── status / plan ───────────────────────────────────────────────────


class TestStatus:
    def test_json(self, cli_runner, project):
        r = _invoke(cli_runner, project, "status", "--json")
        assert r.exit_code == 0, r.output
        data = json.loads(r.output)
        assert data["spec"] == "demo"
        assert data["summary"]["pending"] == 3
        assert [t["wave"] for t in data["tasks"]] == [1, 1, 2]
        assert data["data_loss"] is False

    def test_flag_alias(self, cli_runner, project):
        r = _invoke(cli_runner, project, "--status")
        assert r.exit_code == 0
        assert "demo" in r.output

    def test_missing_store_exit_code(self, cli_runner, tmp_path):
        r = _invoke(cli_runner, tmp_path, "status")
        assert r.exit_code == 5
        assert '"error": "NotFound"' in r.output

    def test_status_is_read_only(self, cli_runner, project):
        store = _store(project)
        before = store.path.read_bytes()
        _invoke(cli_runner, project, "status")
        assert store.path.read_bytes() == before


class TestPlan:
    def test_json(self, cli_runner, project):
        r = _invoke(cli_runner, project, "plan", "--json")
        assert r.exit_code == 0, r.output
        data = json.loads(r.output)
        assert [w["tasks"] for w in data["waves"]] == [["1", "2"], ["3"]]
        assert data["waves"][0]["rationale"] == "no shared file dependencies"

    def test_human(self, cli_runner, project):
        r = _invoke(cli_runner, project, "--plan")
        assert r.exit_code == 0
        assert "Wave 2" in r.output


# ── run / retry / reset ─────────────────────────────────────────────


class TestRun:
    def test_runs_all_waves(self, cli_runner, project):
        r = _invoke(cli_runner, project, "run", "--worker-cmd", _worker_cmd(project))
        assert r.exit_code == 0, r.output
        ts = _store(project).load()
        assert all(t.status == TaskStatus.PASS for t in ts.tasks)
        assert (project / "x.txt").read_text(encoding="utf-8") == "3"

    def test_single_wave(self, cli_runner, project):
        r = _invoke(cli_runner, project, "run", "1", "--worker-cmd", _worker_cmd(project))
        assert r.exit_code == 0, r.output
        ts = _store(project).load()
        assert ts.require("3").status == TaskStatus.PENDING

    def test_wave_with_unmet_predecessors(self, cli_runner, project):
        r = _invoke(cli_runner, project, "run", "2", "--worker-cmd", _worker_cmd(project))
        assert r.exit_code == 8
        assert '"blocked"' in r.output

    def test_halt_exit_code(self, cli_runner, project):
        r = _invoke(
            cli_runner, project, "run", "--max-retries", "0", "--worker-cmd", _worker_cmd(project, "1")
        )
        assert r.exit_code == 8
        ts = _store(project).load()
        assert ts.require("1").status == TaskStatus.BLOCKED
        assert ts.require("1").blocker == "task refused"
        assert ts.require("2").status == TaskStatus.PASS

    def test_retry_after_halt(self, cli_runner, project):
        _invoke(cli_runner, project, "run", "--max-retries", "0", "--worker-cmd", _worker_cmd(project, "1"))
        r = _invoke(cli_runner, project, "retry", "1", "--worker-cmd", _worker_cmd(project))
        assert r.exit_code == 0, r.output
        assert _store(project).load().require("3").status == TaskStatus.PASS

    def test_dry_run_needs_no_worker(self, cli_runner, project):
        r = _invoke(cli_runner, project, "run", "--dry-run")
        assert r.exit_code == 0
        assert "Dry run" in r.output

    def test_missing_worker_is_usage_error(self, cli_runner, project):
        r = _invoke(cli_runner, project, "run")
        assert r.exit_code == 2

    def test_bad_target(self, cli_runner, project):
        r = _invoke(cli_runner, project, "run", "later", "--worker-cmd", _worker_cmd(project))
        assert r.exit_code == 2

    def test_reset(self, cli_runner, project):
        _store(project).update_status("1", "blocked", blocker="stuck")
        r = _invoke(cli_runner, project, "reset")
        assert r.exit_code == 0
        assert _store(project).load().require("1").status == TaskStatus.PENDING


# ── verify ──────────────────────────────────────────────────────────


class TestVerify:
    def test_detects_missing_file(self, cli_runner, project):
        _invoke(cli_runner, project, "run", "--worker-cmd", _worker_cmd(project))
        r = _invoke(cli_runner, project, "verify")
        assert r.exit_code == 0, r.output

        (project / "y.txt").unlink()
        r = _invoke(cli_runner, project, "verify")
        assert r.exit_code == 7
        assert _store(project).load().require("2").verification.flagged_unverified is True


# ── future work / progress ──────────────────────────────────────────


class TestFuture:
    def test_add_list_promote(self, cli_runner, project):
        r = _invoke(cli_runner, project, "future", "add", "Cache results", "--source", "3", "--file", "cache.py")
        assert r.exit_code == 0, r.output

        r = _invoke(cli_runner, project, "future", "list", "--json")
        items = json.loads(r.output)
        assert [i["id"] for i in items] == ["F1"]
        assert items[0]["file_context"] == ["cache.py"]

        r = _invoke(cli_runner, project, "future", "promote", "F1", "--wave", "3")
        assert r.exit_code == 0, r.output
        ts = _store(project).load()
        assert ts.future_tasks == []
        assert ts.require("4").depends_on == ["3"]

    def test_promote_unknown(self, cli_runner, project):
        r = _invoke(cli_runner, project, "future", "promote", "F7", "--wave", "1")
        assert r.exit_code == 5

    def test_promote_wave(self, cli_runner, project):
        _invoke(cli_runner, project, "future", "add", "a", "--priority", "wave_2")
        r = _invoke(cli_runner, project, "future", "promote-wave", "2")
        assert r.exit_code == 0
        assert _store(project).load().require("4").description == "a"


class TestProgress:
    def test_shows_recent_entries(self, cli_runner, project):
        _invoke(cli_runner, project, "run", "--worker-cmd", _worker_cmd(project))
        r = _invoke(cli_runner, project, "progress", "-n", "1")
        assert r.exit_code == 0
        assert "run_complete" in r.output
