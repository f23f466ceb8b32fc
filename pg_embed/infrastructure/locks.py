"""
Cross-process exclusive file locks.

Uses fcntl.flock() on Unix and msvcrt.locking() on Windows. The lock file
stores the owning PID for diagnostics.
"""

import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

if sys.platform == "win32":
    import msvcrt

    def _try_lock(fd: int) -> bool:
        try:
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True

    def _unlock(fd: int):
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _try_lock(fd: int) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    def _unlock(fd: int):
        fcntl.flock(fd, fcntl.LOCK_UN)


class FileLock:
    """An exclusive lock on a file path, shared by all processes on a host."""

    def __init__(self, lock_path: Path, poll_interval: float = 0.1):
        self.lock_path = Path(lock_path)
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def _still_linked(self, fd: int) -> bool:
        """True when the locked descriptor is still the file at lock_path."""
        if sys.platform == "win32":
            return True
        try:
            return os.stat(self.lock_path).st_ino == os.fstat(fd).st_ino
        except FileNotFoundError:
            return False

    def try_acquire(self) -> bool:
        """Try to acquire the lock without waiting. Returns True on success."""
        if self._fd is not None:
            return True

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        if not _try_lock(fd):
            os.close(fd)
            return False
        if not self._still_linked(fd):
            # Lost a race with a releasing holder that unlinked the file
            os.close(fd)
            return False

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        return True

    def acquire(self, timeout: Optional[float] = None):
        """
        Block until the lock is acquired.

        Raises:
            TimeoutError: If ``timeout`` seconds pass without acquiring.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.try_acquire():
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"Timed out waiting for {self.lock_path}")
            time.sleep(self.poll_interval)
        logger.debug(f"Acquired lock at {self.lock_path}")

    def release(self):
        """Release the lock and remove the lock file."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        if sys.platform != "win32":
            self.lock_path.unlink(missing_ok=True)
        try:
            _unlock(fd)
        finally:
            os.close(fd)
        logger.debug(f"Released lock at {self.lock_path}")

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
