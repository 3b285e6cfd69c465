"""Single-instance lock for the manager process.

Uses a non-blocking POSIX ``flock`` on a PID file so that only one manager
runs against a given configuration. The kernel drops the lock when the
holder dies, so a lock left behind by a crashed process is never stale.

Usage:
    lock = SingleInstanceLock(Path("/run/ramfs-manager.lock"))
    handle = lock.acquire()      # raises AlreadyRunning if held
    try:
        ...
    finally:
        lock.release(handle)
"""

import fcntl
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import AlreadyRunning

logger = logging.getLogger(__name__)


@dataclass
class LockHandle:
    """A held instance lock.

    Attributes:
        path: Lock file path
        fd: Open file descriptor carrying the flock
        pid: PID recorded in the lock file
        released: Set once the lock has been released
    """
    path: Path
    fd: int
    pid: int
    released: bool = False


class SingleInstanceLock:
    """File-based lock preventing concurrent manager instances.

    Attributes:
        lock_file: Path to the lock file
    """

    def __init__(self, lock_file: Path):
        self.lock_file = Path(lock_file)
        self._handle: Optional[LockHandle] = None

    @property
    def held(self) -> bool:
        """True if this object currently holds the lock."""
        return self._handle is not None

    def acquire(self) -> LockHandle:
        """Attempt to acquire the lock without blocking.

        The file is opened without truncation so that a failed attempt
        leaves the holder's PID in place.

        Returns:
            LockHandle for the acquired lock

        Raises:
            AlreadyRunning: If another process holds the lock
            RuntimeError: If this object already holds the lock
        """
        if self._handle is not None:
            raise RuntimeError(f"Lock {self.lock_file} is already held by this process")

        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        while True:
            fd = self._open_and_lock()
            if self._is_current(fd):
                break
            # locked a file a releasing holder already unlinked
            os.close(fd)
            logger.debug(f"Lock file {self.lock_file} was replaced, retrying")

        pid = os.getpid()
        os.ftruncate(fd, 0)
        os.write(fd, f"{pid}\n".encode())
        os.fsync(fd)

        self._handle = LockHandle(path=self.lock_file, fd=fd, pid=pid)
        logger.debug(f"Acquired instance lock {self.lock_file} (PID {pid})")
        return self._handle

    def _open_and_lock(self) -> int:
        fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT | os.O_CLOEXEC, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            pid = self.read_pid()
            raise AlreadyRunning(
                f"Another instance is already running "
                f"(PID {pid if pid is not None else 'unknown'}, lock file: {self.lock_file})",
                pid=pid,
            )
        except OSError:
            os.close(fd)
            raise
        return fd

    def _is_current(self, fd: int) -> bool:
        """True if fd is still the file found at lock_file."""
        held = os.fstat(fd)
        try:
            current = os.stat(self.lock_file)
        except FileNotFoundError:
            return False
        return (held.st_dev, held.st_ino) == (current.st_dev, current.st_ino)

    def release(self, handle: Optional[LockHandle] = None) -> None:
        """Release the lock and remove the lock file.

        Safe to call multiple times or without prior acquire. The file is
        unlinked while the lock is still held; an instance that opened the
        old file before the unlink notices in acquire() and retries.
        """
        handle = handle or self._handle
        if handle is None or handle.released:
            return
        handle.released = True

        try:
            os.unlink(handle.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove lock file {handle.path}: {e}")

        try:
            os.close(handle.fd)
        except OSError:
            # already closed
            pass
        finally:
            if handle is self._handle:
                self._handle = None

        logger.debug(f"Released instance lock {handle.path}")

    def read_pid(self) -> Optional[int]:
        """Read the holder PID from the lock file.

        Returns:
            PID, or None if the file is missing or does not hold a PID
        """
        try:
            return int(self.lock_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def __enter__(self) -> "SingleInstanceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
