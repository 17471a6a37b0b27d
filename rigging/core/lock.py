"""Provisioning lock for fixture state directories.

Prevents two provision runs from mutating the same fixture at once. The lock
is a file created exclusively and stamped with the holder PID and acquisition
time; a lock older than the staleness window, or held by a PID that no longer
exists, may be taken over.

Stale takeover and release run under an flock on a sibling guard file; the
staleness check and the unlink it leads to form one step.
"""
import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import psutil

from rigging.core.errors import RiggingError
from rigging.core.logger import get_logger

logger = get_logger(__name__)

DEFAULT_STALE_SECONDS = 1800


class LockError(RiggingError):
    """Raised when unable to acquire lock."""
    pass


class ProvisionLock:
    """File-based lock guarding a fixture's provisioning state."""

    def __init__(
        self,
        lock_file: Path,
        timeout: float = 0,
        stale_after: float = DEFAULT_STALE_SECONDS,
    ):
        """Initialize lock.

        Args:
            lock_file: Path to lock file
            timeout: Seconds to wait for lock (0 = fail immediately)
            stale_after: Age in seconds after which a held lock is considered abandoned
        """
        self.lock_file = Path(lock_file)
        self.guard_file = self.lock_file.with_name(self.lock_file.name + ".guard")
        self.timeout = timeout
        self.stale_after = stale_after
        self.held = False
        self._stamp: Optional[str] = None

    def acquire(self) -> bool:
        """Acquire the lock.

        Returns:
            True if lock acquired successfully

        Raises:
            LockError: If unable to acquire lock
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        start_time = time.time()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._remove_if_stale():
                    continue

                if self.timeout == 0:
                    lock_info = self._read_lock_info()
                    raise LockError(
                        f"Another provisioning operation is in progress.\n"
                        f"Lock held by PID {lock_info['pid']} since {lock_info['time']}\n"
                        f"Wait for it to complete, or remove {self.lock_file} if stale."
                    )

                elapsed = time.time() - start_time
                if elapsed >= self.timeout:
                    lock_info = self._read_lock_info()
                    raise LockError(
                        f"Timeout waiting for lock after {self.timeout}s.\n"
                        f"Lock held by PID {lock_info['pid']} since {lock_info['time']}"
                    )

                time.sleep(0.5)
                continue

            stamp = f"{os.getpid()}\n{time.time()}\n"
            with os.fdopen(fd, "w") as handle:
                handle.write(stamp)

            self._stamp = stamp
            self.held = True
            logger.debug(f"Acquired lock: {self.lock_file}")
            return True

    def release(self):
        """Release the lock. Safe to call when not held.

        The file is only removed while it still carries this holder's stamp.
        """
        if not self.held:
            return
        self.held = False
        with self._guard():
            if self._read_text() == self._stamp:
                self._remove_file()
            else:
                logger.warning(f"Lock {self.lock_file} was taken over; leaving it in place")
        self._stamp = None
        logger.debug(f"Released lock: {self.lock_file}")

    @contextmanager
    def _guard(self):
        with open(self.guard_file, "a+") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def _remove_if_stale(self) -> bool:
        """Remove the current lock file if it is stale, judged under the guard."""
        with self._guard():
            if not self.lock_file.exists():
                return True
            if not self.is_stale():
                return False
            lock_info = self._read_lock_info()
            logger.warning(
                f"Removing stale provision lock {self.lock_file} "
                f"(PID {lock_info['pid']}, since {lock_info['time']})"
            )
            self._remove_file()
            return True

    def is_stale(self) -> bool:
        """Check whether the existing lock file may be taken over."""
        pid, acquired_at = self._read_raw()
        if pid is None or acquired_at is None:
            # Unreadable lock files are judged by mtime
            try:
                acquired_at = self.lock_file.stat().st_mtime
            except FileNotFoundError:
                return True
            return time.time() - acquired_at > self.stale_after

        if time.time() - acquired_at > self.stale_after:
            return True
        return not psutil.pid_exists(pid)

    def _remove_file(self):
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Error removing lock file: {e}")

    def _read_text(self) -> Optional[str]:
        try:
            return self.lock_file.read_text()
        except OSError:
            return None

    def _read_raw(self):
        try:
            lines = self.lock_file.read_text().splitlines()
            return int(lines[0].strip()), float(lines[1].strip())
        except (OSError, ValueError, IndexError):
            return None, None

    def _read_lock_info(self) -> dict:
        """Read info from lock file about who holds it."""
        pid, acquired_at = self._read_raw()
        if pid is None:
            return {'pid': 'unknown', 'time': 'unknown'}
        return {
            'pid': str(pid),
            'time': time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(acquired_at)),
        }

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_lock_status(lock_file: Path, stale_after: float = DEFAULT_STALE_SECONDS) -> Optional[dict]:
    """Check if a provisioning lock is currently held.

    Returns:
        Dict with lock info if held, None if free or stale
    """
    lock = ProvisionLock(lock_file=lock_file, stale_after=stale_after)
    if not lock.lock_file.exists() or lock.is_stale():
        return None
    info = lock._read_lock_info()
    info['lock_file'] = str(lock.lock_file)
    return info
