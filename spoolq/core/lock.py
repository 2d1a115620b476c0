"""
DirectoryLock — fcntl.flock-based ownership of a spool directory.

A FileBlockingQueue holds an exclusive, non-blocking flock on
<spool>/queue.lock for its whole lifetime. flock locks belong to the open file
description, so a second handle on the same directory fails with LockedError
whether it lives in another process or in this one.

The lock file itself is never deleted; it only carries the owner's pid for
operators.

POSIX-only (Linux, macOS). Not compatible with NFS or distributed filesystems.
"""

from __future__ import annotations

import dataclasses
import fcntl
import logging
import os
from pathlib import Path
from types import TracebackType

from spoolq.core.fsutil import io_errors, pwrite_all
from spoolq.domain.errors import LockedError

logger = logging.getLogger(__name__)

LOCK_FILE = "queue.lock"


@dataclasses.dataclass
class DirectoryLock:
    """
    Exclusive lock on a spool directory.

    Parameters
    ----------
    directory : spool directory (created if absent)
    """

    directory: Path
    _fd: int | None = dataclasses.field(default=None, init=False, repr=False)

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._fd = None

    @property
    def path(self) -> Path:
        return self.directory / LOCK_FILE

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock. Raises LockedError if it is held elsewhere."""
        if self._fd is not None:
            raise LockedError(self.path)
        with io_errors(f"cannot open lock file {self.path}"):
            self.directory.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise LockedError(self.path) from exc
        except BaseException:
            os.close(fd)
            raise

        try:
            with io_errors(f"cannot write lock file {self.path}"):
                os.ftruncate(fd, 0)
                pwrite_all(fd, f"{os.getpid()}\n".encode("ascii"), 0)
        except BaseException:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            raise
        self._fd = fd
        logger.debug("Acquired spool lock %s", self.path)

    def release(self) -> None:
        """Drop the lock. Safe to call when not held."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Released spool lock %s", self.path)

    def __enter__(self) -> "DirectoryLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
