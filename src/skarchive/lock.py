"""
Host-wide run lock.

Only one pipeline run may work on a host at a time. The lock is a
non-blocking ``flock`` on a file in the archive home: the kernel drops
it when the holder exits for any reason, so a killed run never leaves
a stale lock behind. The holder's PID is written into the file for
operators.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

from .errors import LockError

logger = logging.getLogger("skarchive.lock")


class RunLock:
    """Exclusive, non-blocking lock with guaranteed release."""

    def __init__(self, path: Path):
        self.path = path
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock or fail immediately.

        Raises:
            LockError: If another run holds the lock or the file cannot be opened.
        """
        if self._fd is not None:
            raise LockError(f"lock {self.path} already held by this process")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as exc:
            raise LockError(f"cannot open lock file {self.path}: {exc}") from exc

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            os.close(fd)
            holder = read_holder(self.path)
            who = f" (pid {holder})" if holder else ""
            raise LockError(f"another run holds {self.path}{who}") from exc

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Acquired run lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released run lock %s", self.path)

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def read_holder(path: Path) -> Optional[int]:
    """PID recorded in the lock file, if any."""
    try:
        text = path.read_text(encoding="utf-8").strip()
        return int(text) if text else None
    except (OSError, ValueError):
        return None
