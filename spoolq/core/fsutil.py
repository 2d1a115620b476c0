"""Small POSIX helpers shared by the segment, cursor and lock modules."""

from __future__ import annotations

import contextlib
import errno
import os
from collections.abc import Iterator
from pathlib import Path

from spoolq.domain.errors import DiskFullError, StorageError


@contextlib.contextmanager
def io_errors(message: str) -> Iterator[None]:
    """Translate OSError raised inside the block into StorageError / DiskFullError."""
    try:
        yield
    except OSError as exc:
        if exc.errno == errno.ENOSPC:
            raise DiskFullError(message, exc) from exc
        raise StorageError(message, exc) from exc


def fsync_directory(path: Path) -> None:
    """Make renames, creations and unlinks inside `path` durable."""
    fd = os.open(path, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def pwrite_all(fd: int, data: bytes, offset: int) -> None:
    """os.pwrite until every byte of `data` is written at `offset`."""
    view = memoryview(data)
    while view:
        written = os.pwrite(fd, view, offset)
        if written == 0:
            raise OSError(errno.EIO, "pwrite wrote no bytes")
        view = view[written:]
        offset += written


def pread_exact(fd: int, size: int, offset: int) -> bytes:
    """os.pread that returns fewer than `size` bytes only at end of file."""
    chunks: list[bytes] = []
    remaining = size
    while remaining:
        chunk = os.pread(fd, remaining, offset)
        if not chunk:
            break
        chunks.append(chunk)
        offset += len(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)
