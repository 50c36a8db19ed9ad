"""Cross-process mutual exclusion for the task store.

The lock is a file created with ``O_CREAT | O_EXCL`` that records who holds
it. Waiting is bounded. A lock file older than ``stale_after`` seconds is
broken, so a crashed holder cannot block later runs forever. So is one whose
owning process is gone (checked on POSIX, same host only).
"""

from __future__ import annotations

import json
import os
import socket
import sys
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from wavefront import log
from wavefront.errors import LockTimeout
from wavefront.io_utils import read_text


def _pid_alive(pid: int) -> bool:
    if sys.platform == "win32":
        # os.kill(pid, 0) terminates the target on Windows; rely on age instead.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        return True
    return True


def _identity(st: os.stat_result) -> tuple[int, int, int]:
    return (st.st_dev, st.st_ino, st.st_mtime_ns)


class StoreLock:
    """Re-entrant (per thread) lock file with bounded wait and stale override."""

    def __init__(
        self,
        path: Path,
        *,
        timeout: float = 10.0,
        stale_after: float = 300.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.path = path
        self.timeout = timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._thread_lock = threading.RLock()
        self._depth = 0

    # ── holder info ──────────────────────────────────────────────

    def _holder(self) -> dict[str, object]:
        try:
            data = json.loads(read_text(self.path))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _stale_identity(self) -> tuple[int, int, int] | None:
        """Identity of the current lock file if it is stale, else ``None``."""
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        if time.time() - st.st_mtime > self.stale_after:
            return _identity(st)
        holder = self._holder()
        pid = holder.get("pid")
        if holder.get("host") == socket.gethostname() and isinstance(pid, int):
            if pid != os.getpid() and not _pid_alive(pid):
                return _identity(st)
        return None

    def is_stale(self) -> bool:
        return self._stale_identity() is not None

    def _break_stale(self, identity: tuple[int, int, int]) -> bool:
        """Remove the lock file only if it is still the one judged stale.

        The file is first renamed to a name unique to this waiter. If the
        renamed file turns out to be a newer lock, it is linked back into place.
        """
        holder = self._holder()
        aside = self.path.with_name(f"{self.path.name}.{os.getpid()}-{threading.get_ident()}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return False
        try:
            if _identity(aside.stat()) == identity:
                log.warn(f"Broke stale store lock {self.path} (holder: {holder})")
                return True
            try:
                os.link(aside, self.path)
            except FileExistsError:
                log.warn(f"Store lock {self.path} changed hands while breaking a stale lock")
            return False
        finally:
            aside.unlink(missing_ok=True)

    # ── acquire / release ────────────────────────────────────────

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(
                {"pid": os.getpid(), "host": socket.gethostname(), "acquired_at": time.time()},
                f,
            )
        return True

    def acquire(self) -> None:
        if not self._thread_lock.acquire(timeout=self.timeout):
            raise LockTimeout(f"Timed out waiting for {self.path} (held by another thread)")
        if self._depth > 0:
            self._depth += 1
            return

        deadline = time.monotonic() + self.timeout
        try:
            while not self._try_create():
                stale = self._stale_identity()
                if stale is not None:
                    self._break_stale(stale)
                    continue
                if time.monotonic() >= deadline:
                    raise LockTimeout(
                        f"Timed out after {self.timeout:g}s waiting for {self.path} "
                        f"(holder: {self._holder() or 'unknown'})"
                    )
                time.sleep(self.poll_interval)
        except BaseException:
            self._thread_lock.release()
            raise
        self._depth = 1

    def release(self) -> None:
        if self._depth <= 0:
            return
        self._depth -= 1
        if self._depth == 0:
            self.path.unlink(missing_ok=True)
        self._thread_lock.release()

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()
