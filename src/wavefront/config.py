"""Configuration defaults, env vars, and runtime options for WAVEFRONT."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_STATE_DIR = ".wavefront"
DEFAULT_STORE_FILE = "tasks.json"
DEFAULT_SOURCE_DIRS: tuple[str, ...] = ("src", "lib", "app")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class Config:
    """Runtime configuration shared by the CLI, store, and orchestrator."""

    # Locations
    project_dir: str = ""
    state_dir: str = ""

    # Worker
    worker_cmd: list[str] = field(default_factory=list)

    # Execution
    max_parallel: int = 0
    max_retries: int = -1
    task_timeout: float = 0
    timeout_grace: float = 5.0
    poll_interval: float = 0.2
    dry_run: bool = False

    # Store
    backup_limit: int = 5
    lock_timeout: float = 10.0
    lock_stale_after: float = 300.0

    # Verification
    source_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_SOURCE_DIRS))

    # Misc
    verbose: bool = False

    def __post_init__(self) -> None:
        if not self.project_dir:
            self.project_dir = str(resolve_project_root())
        if not self.state_dir:
            self.state_dir = os.environ.get("WAVEFRONT_STATE_DIR") or DEFAULT_STATE_DIR
        if not self.worker_cmd:
            raw = os.environ.get("WAVEFRONT_WORKER_CMD", "")
            self.worker_cmd = shlex.split(raw) if raw else []
        if self.max_parallel <= 0:
            self.max_parallel = max(_env_int("WAVEFRONT_MAX_PARALLEL", 3), 1)
        if self.max_retries < 0:
            self.max_retries = max(_env_int("WAVEFRONT_MAX_RETRIES", 1), 0)
        if self.task_timeout <= 0:
            self.task_timeout = max(_env_int("WAVEFRONT_TASK_TIMEOUT", 300), 1)

    # ── derived paths ────────────────────────────────────────────

    @property
    def root(self) -> Path:
        return Path(self.project_dir)

    @property
    def state_path(self) -> Path:
        p = Path(self.state_dir)
        return p if p.is_absolute() else self.root / p

    @property
    def store_file(self) -> Path:
        return self.state_path / DEFAULT_STORE_FILE

    @property
    def reports_dir(self) -> Path:
        return self.state_path / "reports"


def resolve_project_root() -> Path:
    """Return the git repository root, falling back to cwd."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path.cwd()
