"""Tests for wavefront.config.Config defaults and env overrides."""

from __future__ import annotations

from pathlib import Path

from wavefront.config import DEFAULT_SOURCE_DIRS, DEFAULT_STATE_DIR, Config


def test_defaults(tmp_path):
    """Unset options fall back to built-in defaults."""
    cfg = Config(project_dir=str(tmp_path))
    assert cfg.max_parallel == 3
    assert cfg.max_retries == 1
    assert cfg.task_timeout == 300
    assert cfg.worker_cmd == []
    assert cfg.source_dirs == list(DEFAULT_SOURCE_DIRS)


def test_state_paths(tmp_path):
    cfg = Config(project_dir=str(tmp_path))
    assert cfg.state_path == tmp_path / DEFAULT_STATE_DIR
    assert cfg.store_file == tmp_path / DEFAULT_STATE_DIR / "tasks.json"
    assert cfg.reports_dir == tmp_path / DEFAULT_STATE_DIR / "reports"


def test_absolute_state_dir(tmp_path):
    other = tmp_path / "elsewhere"
    cfg = Config(project_dir=str(tmp_path / "proj"), state_dir=str(other))
    assert cfg.state_path == other


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("WAVEFRONT_MAX_PARALLEL", "6")
    monkeypatch.setenv("WAVEFRONT_MAX_RETRIES", "0")
    monkeypatch.setenv("WAVEFRONT_TASK_TIMEOUT", "45")
    monkeypatch.setenv("WAVEFRONT_WORKER_CMD", "python agent.py --fast")
    monkeypatch.setenv("WAVEFRONT_STATE_DIR", ".state")
    cfg = Config(project_dir=str(tmp_path))
    assert cfg.max_parallel == 6
    assert cfg.max_retries == 0
    assert cfg.task_timeout == 45
    assert cfg.worker_cmd == ["python", "agent.py", "--fast"]
    assert cfg.state_path == tmp_path / ".state"


def test_explicit_values_beat_env(tmp_path, monkeypatch):
    monkeypatch.setenv("WAVEFRONT_MAX_PARALLEL", "6")
    cfg = Config(project_dir=str(tmp_path), max_parallel=2, max_retries=3, task_timeout=1.5)
    assert cfg.max_parallel == 2
    assert cfg.max_retries == 3
    assert cfg.task_timeout == 1.5


def test_bad_env_value_ignored(tmp_path, monkeypatch):
    monkeypatch.setenv("WAVEFRONT_MAX_PARALLEL", "lots")
    assert Config(project_dir=str(tmp_path)).max_parallel == 3


def test_source_dirs_is_own_copy(tmp_path):
    a = Config(project_dir=str(tmp_path))
    b = Config(project_dir=str(tmp_path))
    a.source_dirs.append("pkg")
    assert "pkg" not in b.source_dirs


def test_project_root_defaults_to_git_or_cwd(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    cfg = Config()
    assert Path(cfg.project_dir).is_dir()
