"""
Exception hierarchy for spoolq.

SpoolError
├── LockedError            — spool directory already owned by another handle
├── CorruptSegmentError    — unrecoverable header / record damage in a segment
├── SegmentFullError       — append would push a segment past its size cap
├── CodecError             — payload could not be encoded or decoded
├── StorageError           — underlying I/O failure (wraps original exception)
│   └── DiskFullError      — the filesystem reported ENOSPC
├── QueueInterruptedError  — a blocked poll()/take() was interrupted
└── QueueClosedError       — operation attempted on a closed queue
"""

from __future__ import annotations

from pathlib import Path


class SpoolError(Exception):
    """Base class for all spoolq exceptions."""


class LockedError(SpoolError):
    """Raised when the spool directory lock is already held."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Spool directory lock {str(path)!r} is already held")


class CorruptSegmentError(SpoolError):
    """
    Raised on damage that recovery cannot repair.

    Trailing garbage left by an interrupted append is *not* reported with this
    error; it is truncated while the last segment is opened for append.

    Attributes
    ----------
    path   : the segment file
    offset : byte offset of the damaged header or record (None if unknown)
    """

    def __init__(self, path: Path, reason: str, offset: int | None = None) -> None:
        self.path = path
        self.offset = offset
        self.reason = reason
        where = f" at offset {offset}" if offset is not None else ""
        super().__init__(f"Corrupt segment {str(path)!r}{where}: {reason}")


class SegmentFullError(SpoolError):
    """Raised by Segment.append when the record does not fit under the size cap."""

    def __init__(self, segment_id: int, size: int, record_size: int) -> None:
        self.segment_id = segment_id
        self.size = size
        self.record_size = record_size
        super().__init__(
            f"Segment {segment_id} is full ({size} bytes, record of {record_size} bytes)"
        )


class CodecError(SpoolError):
    """Raised when a payload cannot be encoded or decoded."""


class StorageError(SpoolError):
    """
    Wraps an underlying I/O failure.

    Attributes
    ----------
    cause : Exception
        The original exception from the operating system.
    """

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class DiskFullError(StorageError):
    """The filesystem holding the spool has no space left."""


class QueueInterruptedError(SpoolError):
    """Raised from a blocked poll() or take() woken by interrupt()."""


class QueueClosedError(SpoolError):
    """Raised when the queue is used after close()."""
