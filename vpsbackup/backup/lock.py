"""
PID lock file that keeps two pipeline runs from overlapping on one host.

The holder keeps an exclusive `flock` on the lock file for the whole run, so
checking and replacing the recorded PID happens under the lock. A lock whose
PID is no longer alive is stale and is discarded by the next `acquire()`, so
a killed process never leaves a permanent deadlock.
"""

import os
import errno
import fcntl
import logging
from typing import Optional

from vpsbackup.errors import AlreadyRunning

logger = logging.getLogger(__name__)


def pid_is_running(pid: int) -> bool:
    """
    Check whether a process with `pid` exists.

    Args:
        pid: Process identifier

    Returns:
        True if the process is alive (or exists under another user)
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as e:
        if e.errno == errno.ESRCH:
            return False
        if e.errno == errno.EPERM:
            return True
        raise
    return True


class LockManager:
    """
    Single-run lock backed by a file holding the owner's PID.

    Usable as a context manager; `release()` runs on every exit path.
    """

    def __init__(self, lock_file: str, pid: Optional[int] = None):
        """
        Initialize lock manager.

        Args:
            lock_file: Path of the lock file
            pid: PID to record (default: current process)
        """
        self.lock_file = lock_file
        self.pid = pid if pid is not None else os.getpid()
        self.acquired = False
        self._fd = None

    def read_pid(self) -> Optional[int]:
        """Return the PID recorded in the lock file, or None."""
        try:
            with open(self.lock_file, 'r') as f:
                content = f.read()
        except FileNotFoundError:
            return None
        return self._parse_pid(content)

    def _parse_pid(self, content: str) -> Optional[int]:
        content = content.strip()
        if not content:
            return None
        try:
            return int(content)
        except ValueError:
            logger.warning(f"Warning: Lock file {self.lock_file} is corrupt: {content!r}")
            return None

    def acquire(self):
        """
        Take the lock.

        Raises:
            AlreadyRunning: If the lock is held by a live process
        """
        lock_dir = os.path.dirname(os.path.abspath(self.lock_file))
        os.makedirs(lock_dir, exist_ok=True)

        fd = self._open_locked()
        try:
            owner = self._parse_pid(os.read(fd, 4096).decode('ascii', errors='replace'))

            if owner is not None and owner != self.pid and pid_is_running(owner):
                raise AlreadyRunning(owner)

            if owner is not None and owner != self.pid:
                logger.info(f"Removing stale lock file (PID: {owner})")

            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, f"{self.pid}\n".encode('ascii'))
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        self.acquired = True
        logger.debug(f"Lock acquired: {self.lock_file} (PID: {self.pid})")

    def _open_locked(self) -> int:
        """Open the lock file and take its flock; the descriptor matches the current path."""
        while True:
            fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                raise AlreadyRunning(self.read_pid() or 0)

            # The previous holder may have unlinked the file before we got the flock
            try:
                same_file = os.fstat(fd).st_ino == os.stat(self.lock_file).st_ino
            except FileNotFoundError:
                same_file = False
            if same_file:
                return fd
            os.close(fd)

    def release(self):
        """Remove the lock file unconditionally."""
        self._remove()
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
        if self.acquired:
            logger.debug(f"Lock released: {self.lock_file}")
        self.acquired = False

    def _remove(self):
        try:
            os.remove(self.lock_file)
        except FileNotFoundError:
            pass

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
