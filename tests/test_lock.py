"""Tests for the PID-file run-lock."""

import os
import time

import pytest

from msgvault.engine import RunLock
from msgvault.errors import CycleInProgress

# Above the kernel's pid_max, so never a live process
DEAD_PID = 2**31 - 1


class TestRunLock:
    """Test the cross-process run-lock."""

    def test_acquire_and_release(self, tmp_path):
        """Verify the lock records our PID and is removed on release."""
        lock = RunLock(tmp_path / "cycle.lock")

        lock.acquire()
        assert lock.holder() == os.getpid()

        lock.release()
        assert not lock.path.exists()
        assert lock.holder() is None

    def test_context_manager(self, tmp_path):
        """Verify the context manager creates and removes the lock file."""
        path = tmp_path / "locks" / "cycle.lock"

        with RunLock(path):
            assert path.exists()

        assert not path.exists()

    def test_held_lock_refused(self, tmp_path):
        """A lock held by a live process is refused."""
        path = tmp_path / "cycle.lock"
        path.write_text(str(os.getpid()))

        with pytest.raises(CycleInProgress):
            RunLock(path).acquire()

    def test_stale_lock_reclaimed(self, tmp_path):
        """Verify a lock left by a dead process is taken over."""
        path = tmp_path / "cycle.lock"
        path.write_text(str(DEAD_PID))
        lock = RunLock(path)

        lock.acquire()

        assert lock.holder() == os.getpid()
        lock.release()

    def test_garbage_lock_file_reclaimed(self, tmp_path):
        """A lock file without a PID counts as stale."""
        path = tmp_path / "cycle.lock"
        path.write_text("not a pid")

        with RunLock(path) as lock:
            assert lock.holder() == os.getpid()

    def test_release_without_acquire_leaves_file(self, tmp_path):
        """Release does nothing for a lock this instance never took."""
        path = tmp_path / "cycle.lock"
        path.write_text(str(os.getpid()))

        RunLock(path).release()

        assert path.exists()

    def test_reclaim_rechecks_holder(self, tmp_path, monkeypatch):
        """A lock reclaimed by another process in the meantime is left alone."""
        path = tmp_path / "cycle.lock"
        path.write_text(str(DEAD_PID))
        lock = RunLock(path)
        real_holder = RunLock.holder
        calls = []

        def holder_then_reclaimed(self):
            calls.append(1)
            if len(calls) == 1:
                seen = real_holder(self)
                # Another process reclaims and takes the lock right after our check
                path.write_text(str(os.getppid()))
                return seen
            return real_holder(self)

        monkeypatch.setattr(RunLock, "holder", holder_then_reclaimed)

        with pytest.raises(CycleInProgress):
            lock.acquire()

        assert path.read_text() == str(os.getppid())

    def test_reclaim_in_progress_elsewhere(self, tmp_path):
        """While another process holds the reclaim guard, the stale file stays."""
        path = tmp_path / "cycle.lock"
        path.write_text(str(DEAD_PID))
        lock = RunLock(path)
        lock.guard_path.write_text("")

        with pytest.raises(CycleInProgress, match="reclaimed"):
            lock.acquire()

        assert path.read_text() == str(DEAD_PID)

    def test_abandoned_guard_is_cleared(self, tmp_path):
        """A guard left by a crashed reclaim does not block the lock forever."""
        path = tmp_path / "cycle.lock"
        path.write_text(str(DEAD_PID))
        lock = RunLock(path)
        lock.guard_path.write_text("")
        old = time.time() - 3600
        os.utime(lock.guard_path, (old, old))

        with lock:
            assert lock.holder() == os.getpid()

        assert not lock.guard_path.exists()

    def test_no_temporary_files_left(self, tmp_path):
        """Only the lock file itself exists while held."""
        with RunLock(tmp_path / "cycle.lock"):
            assert [p.name for p in tmp_path.iterdir()] == ["cycle.lock"]
