"""Tests for per-machine locking."""
import os
import time

import pytest

from lxdbox.core.lock import LockError, MachineLock, machine_lock


class TestMachineLock:
    """Test file-based machine locks."""

    def test_acquire_and_release(self, tmp_path):
        """Can acquire and release lock."""
        lock = MachineLock("default", tmp_path)

        assert lock.acquire() is True
        assert lock.lock_file == tmp_path / "machines" / "default" / "action.lock"
        assert lock.lock_file.exists()

        lock.release()
        assert not lock.lock_file.exists()

    def test_concurrent_lock_fails(self, tmp_path):
        """Second lock attempt on the same machine fails while the first is held."""
        lock1 = MachineLock("default", tmp_path)
        lock1.acquire()

        lock2 = MachineLock("default", tmp_path, timeout=0)
        with pytest.raises(LockError) as exc_info:
            lock2.acquire()

        assert "Another lxdbox operation is in progress for machine 'default'" in str(exc_info.value)
        assert f"PID {os.getpid()}" in str(exc_info.value)

        lock1.release()

    def test_different_machines_do_not_block(self, tmp_path):
        """Locks on different machines are independent."""
        with MachineLock("web", tmp_path):
            with MachineLock("db", tmp_path, timeout=0) as other:
                assert other.lock_fd is not None

    def test_lock_timeout(self, tmp_path):
        """Lock gives up after the timeout."""
        lock1 = MachineLock("default", tmp_path)
        lock1.acquire()

        lock2 = MachineLock("default", tmp_path, timeout=1)
        start = time.time()

        with pytest.raises(LockError):
            lock2.acquire()

        elapsed = time.time() - start
        assert elapsed >= 1.0
        assert elapsed < 2.5

        lock1.release()

    def test_lock_info_written(self, tmp_path):
        """Lock file contains PID and timestamp."""
        lock = MachineLock("default", tmp_path)
        lock.acquire()

        lines = lock.lock_file.read_text().splitlines()

        assert len(lines) >= 2
        assert str(os.getpid()) in lines[0]
        assert '-' in lines[1]

        lock.release()

    def test_release_without_acquire(self, tmp_path):
        """Releasing an unacquired lock is harmless."""
        MachineLock("default", tmp_path).release()


class TestMachineLockContext:
    """Test machine_lock context manager."""

    def test_machine_lock_success(self, tmp_path):
        executed = False
        with machine_lock("default", tmp_path):
            executed = True

        assert executed
        assert not (tmp_path / "machines" / "default" / "action.lock").exists()

    def test_machine_lock_failure(self, tmp_path):
        """machine_lock raises LockError when locked."""
        lock1 = MachineLock("default", tmp_path)
        lock1.acquire()

        with pytest.raises(LockError):
            with machine_lock("default", tmp_path, timeout=0):
                pass

        lock1.release()

    def test_released_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with machine_lock("default", tmp_path):
                raise RuntimeError("boom")

        with machine_lock("default", tmp_path, timeout=0):
            pass
