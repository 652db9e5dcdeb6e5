"""Exclusive per-device lock held across Build -> Flash.

The lock is an OS-level lock on an open file (flock on POSIX, msvcrt byte
lock on Windows), so it dies with its owner. The PID written into the file
is only there to name the owner in the busy message.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from .errors import DeviceBusyError

if os.name == 'nt':
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)


def default_lock_dir() -> Path:
    """Lock directory shared by every project of the current user"""
    return Path(tempfile.gettempdir()) / "fwdeploy-locks"


def _try_lock(fd: int) -> bool:
    try:
        if os.name == 'nt':
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock(fd: int) -> None:
    if os.name == 'nt':
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


class DeviceLock:
    """Holds the board for one pipeline run"""

    def __init__(self, board_id: str, lock_dir: Optional[Path] = None):
        self.board_id = board_id
        self.path = Path(lock_dir or default_lock_dir()) / f".fwdeploy-{board_id.lower()}.lock"
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def owner(self) -> Optional[int]:
        """PID recorded in the lock file, if any"""
        try:
            return int(self.path.read_text().strip() or 0) or None
        except (OSError, ValueError):
            return None

    def acquire(self) -> "DeviceLock":
        if self.held:
            raise RuntimeError(f"Lock {self.path} already held by this instance")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        if not _try_lock(fd):
            os.close(fd)
            pid = self.owner()
            holder = f"pid {pid}" if pid else "pid unknown"
            raise DeviceBusyError(
                f"{self.board_id} is in use by another deployment ({holder}, lock {self.path})"
            )

        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug(f"Acquired device lock {self.path}")
        return self

    def release(self) -> None:
        """Unlock and close; the file stays so every run locks the same inode"""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            _unlock(fd)
        finally:
            os.close(fd)
        logger.debug(f"Released device lock {self.path}")

    def __enter__(self) -> "DeviceLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
