"""Worker that runs an external command per task.

The command receives the :class:`WorkerContext` as JSON on stdin and reports
by printing a JSON object on stdout (the last one wins)::

    {"status": "pass", "artifacts": {"files_created": ["out.txt"]}, "notes": "..."}
"""

from __future__ import annotations

import json
import shutil
import subprocess
import time
from pathlib import Path

from wavefront.errors import Corrupt, looks_like_timeout
from wavefront.tasks.io import artifacts_from_dict
from wavefront.workers.base import WORKER_STATUSES, WorkerBase, WorkerContext, WorkerResult


def parse_last_json(raw: str) -> dict | None:
    """Return the last line of *raw* that parses as a JSON object."""
    for line in reversed(raw.splitlines()):
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            obj = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


class CommandWorker(WorkerBase):
    name = "command"

    def __init__(
        self,
        command: list[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("CommandWorker needs a command")
        self.command = list(command)
        self.cwd = cwd
        self.timeout = timeout
        self.env = env

    def check_available(self) -> str | None:
        if not shutil.which(self.command[0]) and not Path(self.command[0]).is_file():
            return f"{self.command[0]} not found in PATH"
        return None

    def run(self, context: WorkerContext) -> WorkerResult:
        timeout = context.timeout if context.timeout is not None else self.timeout
        payload = json.dumps(context.to_dict(), ensure_ascii=False)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=self.cwd,
                env=self.env,
            )
        except FileNotFoundError:
            return WorkerResult(error=f"{self.command[0]} not found")
        except PermissionError:
            return WorkerResult(error=f"{self.command[0]}: permission denied")

        try:
            stdout, stderr = proc.communicate(input=payload, timeout=timeout)
        except subprocess.TimeoutExpired:
            self._terminate_process(proc)
            return WorkerResult(error=f"Timeout: worker exceeded {timeout:g}s")
        except KeyboardInterrupt:
            self._terminate_process(proc)
            raise

        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = self.parse_output(stdout or "")
        result.duration_ms = elapsed_ms

        if proc.returncode != 0:
            result.status = "fail"
            if not result.error:
                err = (stderr or "").strip()
                result.error = err.splitlines()[-1] if err else f"exit code {proc.returncode}"
            if looks_like_timeout(result.error) and not result.error.startswith("Timeout"):
                result.error = f"Timeout: {result.error}"
        return result

    @staticmethod
    def parse_output(raw: str) -> WorkerResult:
        obj = parse_last_json(raw)
        if obj is None:
            return WorkerResult(error="worker printed no JSON result")

        status = str(obj.get("status", "")).strip().lower()
        if status not in WORKER_STATUSES:
            return WorkerResult(error=f"unknown worker status {status!r}")

        raw_artifacts = obj.get("artifacts") or {}
        if not isinstance(raw_artifacts, dict):
            return WorkerResult(error="worker artifacts must be an object")
        try:
            artifacts = artifacts_from_dict(raw_artifacts)
        except Corrupt as e:
            return WorkerResult(error=f"bad artifacts: {e}")

        return WorkerResult(
            status=status,
            artifacts=artifacts,
            notes=str(obj.get("notes", "") or ""),
            error=str(obj.get("error", "") or ""),
        )

    @staticmethod
    def _terminate_process(proc: subprocess.Popen[str]) -> None:
        """Terminate a subprocess promptly, escalating to kill."""
        if proc.poll() is None:
            proc.terminate()
        try:
            proc.wait(timeout=2)
            return
        except subprocess.TimeoutExpired:
            pass
        if proc.poll() is None:
            proc.kill()
        try:
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            pass
