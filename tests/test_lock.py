"""Tests for the provisioning lock."""
import os
import threading
import time

import pytest

from rigging.core.errors import RiggingError
from rigging.core.lock import LockError, ProvisionLock, check_lock_status


class TestProvisionLock:
    """Test file-based locking mechanism."""

    def test_acquire_and_release(self, tmp_path):
        """Can acquire and release lock."""
        lock_file = tmp_path / "test.lock"
        lock = ProvisionLock(lock_file)

        assert lock.acquire()
        assert lock_file.exists()

        lock.release()
        assert not lock_file.exists()

    def test_lock_file_records_pid(self, tmp_path):
        """Lock file stores holder PID and acquisition time."""
        lock_file = tmp_path / "test.lock"
        with ProvisionLock(lock_file):
            lines = lock_file.read_text().splitlines()
            assert int(lines[0]) == os.getpid()
            assert float(lines[1]) <= time.time()

    def test_second_acquire_fails_immediately(self, tmp_path):
        """Cannot acquire lock held by a live process."""
        lock_file = tmp_path / "test.lock"
        with ProvisionLock(lock_file):
            with pytest.raises(LockError) as exc_info:
                ProvisionLock(lock_file).acquire()

        assert "Another provisioning operation is in progress" in str(exc_info.value)
        assert str(os.getpid()) in str(exc_info.value)

    def test_lock_error_is_rigging_error(self):
        """LockError belongs to the harness error hierarchy."""
        assert issubclass(LockError, RiggingError)

    def test_timeout_waiting_for_lock(self, tmp_path):
        """Times out when lock stays held."""
        lock_file = tmp_path / "test.lock"
        with ProvisionLock(lock_file):
            with pytest.raises(LockError) as exc_info:
                ProvisionLock(lock_file, timeout=0.1).acquire()

        assert "Timeout waiting for lock" in str(exc_info.value)

    def test_stale_lock_by_age_is_taken_over(self, tmp_path):
        """A lock older than the staleness window is removed."""
        lock_file = tmp_path / "test.lock"
        lock_file.write_text(f"{os.getpid()}\n{time.time() - 3600}\n")

        lock = ProvisionLock(lock_file, stale_after=1800)
        assert lock.is_stale()
        assert lock.acquire()
        lock.release()

    def test_stale_lock_by_dead_pid_is_taken_over(self, tmp_path, monkeypatch):
        """A lock whose holder no longer exists is removed."""
        lock_file = tmp_path / "test.lock"
        lock_file.write_text(f"999999\n{time.time()}\n")
        monkeypatch.setattr("rigging.core.lock.psutil.pid_exists", lambda pid: False)

        lock = ProvisionLock(lock_file)
        assert lock.acquire()
        assert int(lock_file.read_text().splitlines()[0]) == os.getpid()
        lock.release()

    def test_context_manager_releases_on_error(self, tmp_path):
        """Lock is released when the body raises."""
        lock_file = tmp_path / "test.lock"
        with pytest.raises(ValueError):
            with ProvisionLock(lock_file):
                raise ValueError("boom")
        assert not lock_file.exists()

    def test_release_when_not_held_is_noop(self, tmp_path):
        """Releasing an unheld lock leaves other holders alone."""
        lock_file = tmp_path / "test.lock"
        holder = ProvisionLock(lock_file)
        holder.acquire()

        ProvisionLock(lock_file).release()
        assert lock_file.exists()
        holder.release()

    def test_stale_takeover_is_exclusive(self, tmp_path, monkeypatch):
        """A contender waits while another process is taking over a stale lock; one holder wins."""
        lock_file = tmp_path / "test.lock"
        lock_file.write_text(f"999999\n{time.time() - 4000}\n")
        first = ProvisionLock(lock_file)
        second = ProvisionLock(lock_file)
        outcome = {}

        def contend():
            try:
                outcome['second'] = second.acquire()
            except LockError as e:
                outcome['second'] = e

        contender = threading.Thread(target=contend)
        real_is_stale = ProvisionLock.is_stale

        def is_stale(lock):
            stale = real_is_stale(lock)
            if lock is first and 'blocked' not in outcome:
                contender.start()
                contender.join(0.3)
                outcome['blocked'] = contender.is_alive()
            return stale

        monkeypatch.setattr(ProvisionLock, "is_stale", is_stale)

        try:
            first.acquire()
        except LockError:
            pass
        contender.join(5)

        assert outcome['blocked']
        assert first.held != second.held
        assert int(lock_file.read_text().splitlines()[0]) == os.getpid()
        (first if first.held else second).release()
        assert not lock_file.exists()

    def test_release_leaves_new_holder_after_takeover(self, tmp_path):
        """A holder whose stale lock was taken over does not delete the new lock."""
        lock_file = tmp_path / "test.lock"
        holder = ProvisionLock(lock_file)
        holder.acquire()
        lock_file.write_text(f"{os.getpid()}\n{time.time() + 1}\n")

        holder.release()

        assert lock_file.exists()
        assert not holder.held


class TestCheckLockStatus:
    """Test lock status inspection."""

    def test_free_lock(self, tmp_path):
        """No lock file means no holder."""
        assert check_lock_status(tmp_path / "test.lock") is None

    def test_held_lock(self, tmp_path):
        """Reports holder of a live lock."""
        lock_file = tmp_path / "test.lock"
        with ProvisionLock(lock_file):
            status = check_lock_status(lock_file)
        assert status['pid'] == str(os.getpid())
        assert status['lock_file'] == str(lock_file)

    def test_stale_lock_reported_free(self, tmp_path):
        """Stale locks are reported as free."""
        lock_file = tmp_path / "test.lock"
        lock_file.write_text(f"{os.getpid()}\n{time.time() - 7200}\n")
        assert check_lock_status(lock_file, stale_after=60) is None
