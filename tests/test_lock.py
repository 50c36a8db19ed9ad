"""Tests for wavefront.lock: store lock file with bounded wait."""

from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import threading
import time

import pytest

from wavefront.errors import LockTimeout
from wavefront.io_utils import write_text
from wavefront.lock import StoreLock


def _lock(tmp_path, **kwargs) -> StoreLock:
    kwargs.setdefault("timeout", 0.2)
    kwargs.setdefault("poll_interval", 0.01)
    return StoreLock(tmp_path / ".lock", **kwargs)


class TestStoreLock:
    def test_hold_creates_and_removes_file(self, tmp_path):
        lock = _lock(tmp_path)
        with lock.hold():
            holder = json.loads((tmp_path / ".lock").read_text(encoding="utf-8"))
            assert holder["pid"] == os.getpid()
        assert not (tmp_path / ".lock").exists()

    def test_reentrant_in_same_thread(self, tmp_path):
        lock = _lock(tmp_path)
        with lock.hold():
            with lock.hold():
                assert (tmp_path / ".lock").exists()
            assert (tmp_path / ".lock").exists()
        assert not (tmp_path / ".lock").exists()

    def test_times_out_when_held_elsewhere(self, tmp_path):
        """A live holder on this host makes a second lock wait, then fail."""
        write_text(
            tmp_path / ".lock",
            json.dumps({"pid": os.getpid(), "host": socket.gethostname(), "acquired_at": time.time()}),
        )
        with pytest.raises(LockTimeout):
            _lock(tmp_path).acquire()

    def test_breaks_lock_older_than_stale_after(self, tmp_path):
        path = tmp_path / ".lock"
        write_text(path, json.dumps({"pid": 1, "host": "elsewhere"}))
        old = time.time() - 600
        os.utime(path, (old, old))
        lock = _lock(tmp_path, stale_after=300)
        with lock.hold():
            holder = json.loads(path.read_text(encoding="utf-8"))
            assert holder["pid"] == os.getpid()

    def test_other_thread_waits(self, tmp_path):
        lock = _lock(tmp_path, timeout=2.0)
        order: list[str] = []

        def other():
            with lock.hold():
                order.append("other")

        with lock.hold():
            t = threading.Thread(target=other)
            t.start()
            time.sleep(0.05)
            order.append("main")
        t.join(timeout=2)
        assert order == ["main", "other"]

    def test_release_without_acquire_is_noop(self, tmp_path):
        _lock(tmp_path).release()

    @pytest.mark.skipif(sys.platform == "win32", reason="pid liveness is checked on POSIX only")
    def test_breaks_lock_of_dead_process(self, tmp_path):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        path = tmp_path / ".lock"
        write_text(
            path,
            json.dumps({"pid": proc.pid, "host": socket.gethostname(), "acquired_at": time.time()}),
        )
        lock = _lock(tmp_path)
        assert lock.is_stale() is True
        with lock.hold():
            assert json.loads(path.read_text(encoding="utf-8"))["pid"] == os.getpid()
        assert not path.exists()


class TestBreakStale:
    def _stale_identity(self, tmp_path, lock: StoreLock):
        path = tmp_path / ".lock"
        write_text(path, json.dumps({"pid": 1, "host": "elsewhere"}))
        old = time.time() - 600
        os.utime(path, (old, old))
        identity = lock._stale_identity()
        assert identity is not None
        return identity

    def test_removes_the_lock_judged_stale(self, tmp_path):
        lock = _lock(tmp_path, stale_after=300)
        identity = self._stale_identity(tmp_path, lock)
        assert lock._break_stale(identity) is True
        assert list(tmp_path.iterdir()) == []

    def test_keeps_a_lock_replaced_after_the_check(self, tmp_path):
        """A second waiter must not remove a fresh lock taken by the first."""
        lock = _lock(tmp_path, stale_after=300)
        identity = self._stale_identity(tmp_path, lock)

        path = tmp_path / ".lock"
        path.unlink()
        fresh = {"pid": os.getpid(), "host": socket.gethostname(), "acquired_at": time.time()}
        write_text(path, json.dumps(fresh))

        assert lock._break_stale(identity) is False
        assert json.loads(path.read_text(encoding="utf-8")) == fresh
        assert [p.name for p in tmp_path.iterdir()] == [".lock"]

    def test_lock_already_gone(self, tmp_path):
        lock = _lock(tmp_path, stale_after=300)
        identity = self._stale_identity(tmp_path, lock)
        (tmp_path / ".lock").unlink()
        assert lock._break_stale(identity) is False
