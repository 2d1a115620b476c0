"""
Segment — one append-only data file of the spool.

File format (little-endian)
---------------------------
Header (30 bytes):
  magic         u32  = 0x5355524F ("SURO")
  version       u16  = 1
  segment_id    u64
  created_ms    u64
  header_crc32  u32  over the 22 preceding bytes
  reserved      4 zero bytes

Record (repeated):
  length        u32  payload byte count
  payload       u8[length]
  crc32         u32  over payload

A record is valid iff its length prefix fits inside the file and its CRC
matches. Records are appended in arrival order and never rewritten.

Crash recovery
--------------
An interrupted append can leave a partial record at the end of the file.
open_for_append() scans forward from the header and truncates everything past
the last valid record boundary. repair_tail() does the same for an older
segment, but only when the damage runs to the end of the file. Damage found
anywhere else is reported as CorruptSegmentError.

I/O uses positional reads and writes (os.pread / os.pwrite) on a single file
descriptor, so a read never moves the append position.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
import struct
import threading
import time
import zlib
from collections.abc import Iterator
from pathlib import Path

from spoolq.core.fsutil import fsync_directory, io_errors, pread_exact, pwrite_all
from spoolq.domain.errors import CorruptSegmentError, SegmentFullError, SpoolError
from spoolq.domain.models import HEADER_SIZE, RECORD_OVERHEAD

logger = logging.getLogger(__name__)

MAGIC: int = 0x5355524F
VERSION: int = 1

_HEADER_FIELDS = struct.Struct("<IHQQ")
_U32 = struct.Struct("<I")
_HEADER_PADDING = bytes(HEADER_SIZE - _HEADER_FIELDS.size - _U32.size)

_SEGMENT_NAME_RE = re.compile(r"^data-(\d+)\.log$")


def segment_path(directory: Path, segment_id: int) -> Path:
    """Path of the segment file with the given id."""
    return directory / f"data-{segment_id:010d}.log"


def parse_segment_id(name: str) -> int | None:
    """Segment id encoded in a file name, or None for non-segment files."""
    match = _SEGMENT_NAME_RE.match(name)
    return int(match.group(1)) if match else None


def frame(payload: bytes) -> bytes:
    """Wrap a payload in its length prefix and trailing CRC."""
    return _U32.pack(len(payload)) + payload + _U32.pack(zlib.crc32(payload))


@dataclasses.dataclass(frozen=True)
class SegmentHeader:
    """Decoded segment header."""

    segment_id: int
    created_ms: int
    version: int = VERSION

    def encode(self) -> bytes:
        fields = _HEADER_FIELDS.pack(MAGIC, self.version, self.segment_id, self.created_ms)
        return fields + _U32.pack(zlib.crc32(fields)) + _HEADER_PADDING

    @classmethod
    def decode(cls, path: Path, data: bytes) -> "SegmentHeader":
        """Validate and decode a header. Raises CorruptSegmentError."""
        if len(data) < HEADER_SIZE:
            raise CorruptSegmentError(path, "header is truncated", 0)
        magic, version, segment_id, created_ms = _HEADER_FIELDS.unpack_from(data)
        (crc,) = _U32.unpack_from(data, _HEADER_FIELDS.size)
        if magic != MAGIC:
            raise CorruptSegmentError(path, f"bad magic 0x{magic:08X}", 0)
        if crc != zlib.crc32(data[: _HEADER_FIELDS.size]):
            raise CorruptSegmentError(path, "header checksum mismatch", 0)
        if version != VERSION:
            raise CorruptSegmentError(path, f"unsupported version {version}", 0)
        return cls(segment_id=segment_id, created_ms=created_ms, version=version)


class Segment:
    """
    An open segment file.

    Use the open_for_append() / open_for_read() factories rather than the
    constructor. A segment opened for append is writable until seal(); a
    segment opened for read is sealed from the start.
    """

    def __init__(
        self,
        path: Path,
        fd: int,
        header: SegmentHeader,
        size: int,
        max_bytes: int,
        *,
        sealed: bool,
    ) -> None:
        self.path = path
        self.header = header
        self.max_bytes = max_bytes
        self._fd: int | None = fd
        self._size = size
        self._sealed = sealed
        self._dirty = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        state = "sealed" if self._sealed else "active"
        return f"Segment(id={self.segment_id}, size={self._size}, {state})"

    # ------------------------------------------------------------------ #
    # Factories                                                            #
    # ------------------------------------------------------------------ #

    @classmethod
    def open_for_append(cls, path: Path, segment_id: int, max_bytes: int) -> "Segment":
        """
        Create or reopen a segment for appending.

        A new (or never fully initialised) file gets a fresh header, fsynced
        together with its directory entry. An existing file has its header
        validated and any trailing partial record truncated.
        """
        path = Path(path)
        with io_errors(f"cannot open segment {path}"):
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            with io_errors(f"cannot open segment {path}"):
                size = os.fstat(fd).st_size
                if size < HEADER_SIZE:
                    if size:
                        logger.warning(
                            "Reinitialising segment %s with a partial header (%d bytes)",
                            path,
                            size,
                        )
                    header = SegmentHeader(segment_id=segment_id, created_ms=_now_ms())
                    os.ftruncate(fd, 0)
                    pwrite_all(fd, header.encode(), 0)
                    os.fsync(fd)
                    fsync_directory(path.parent)
                    return cls(path, fd, header, HEADER_SIZE, max_bytes, sealed=False)

                header = SegmentHeader.decode(path, pread_exact(fd, HEADER_SIZE, 0))
                if header.segment_id != segment_id:
                    raise CorruptSegmentError(
                        path,
                        f"header names segment {header.segment_id}, expected {segment_id}",
                        0,
                    )
                segment = cls(path, fd, header, size, max_bytes, sealed=False)
                segment._recover_tail()
                return segment
        except BaseException:
            os.close(fd)
            raise

    @classmethod
    def repair_tail(cls, path: Path, segment_id: int, max_bytes: int) -> int:
        """
        Truncate a torn final record of a segment that is no longer the last
        one, then seal it. Returns the repaired size.

        Only damage that runs to the end of the file is treated as torn; a bad
        record followed by further records still raises CorruptSegmentError.
        """
        path = Path(path)
        with io_errors(f"cannot open segment {path}"):
            fd = os.open(path, os.O_RDWR)
        try:
            with io_errors(f"cannot open segment {path}"):
                size = os.fstat(fd).st_size
                header = SegmentHeader.decode(path, pread_exact(fd, HEADER_SIZE, 0))
            if header.segment_id != segment_id:
                raise CorruptSegmentError(
                    path,
                    f"header names segment {header.segment_id}, expected {segment_id}",
                    0,
                )
            segment = cls(path, fd, header, size, max_bytes, sealed=False)
            segment._recover_tail(torn_only=True)
        except BaseException:
            os.close(fd)
            raise
        segment.seal()
        segment.close()
        return segment.size

    @classmethod
    def open_for_read(cls, path: Path, max_bytes: int) -> "Segment":
        """Open an existing, sealed segment. Validates the header."""
        path = Path(path)
        with io_errors(f"cannot open segment {path}"):
            fd = os.open(path, os.O_RDONLY)
        try:
            with io_errors(f"cannot open segment {path}"):
                size = os.fstat(fd).st_size
                header = SegmentHeader.decode(path, pread_exact(fd, HEADER_SIZE, 0))
        except BaseException:
            os.close(fd)
            raise
        return cls(path, fd, header, size, max_bytes, sealed=True)

    # ------------------------------------------------------------------ #
    # Properties                                                           #
    # ------------------------------------------------------------------ #

    @property
    def segment_id(self) -> int:
        return self.header.segment_id

    @property
    def size(self) -> int:
        return self._size

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def closed(self) -> bool:
        return self._fd is None

    # ------------------------------------------------------------------ #
    # Writing                                                              #
    # ------------------------------------------------------------------ #

    def append(self, payload: bytes) -> tuple[int, int]:
        """
        Append one framed record. Returns (offset_before, offset_after).

        Raises SegmentFullError when the record would push the file past
        max_bytes; an empty segment accepts any record so that rollover always
        makes progress. The record is not fsynced here; see sync().
        """
        record = frame(payload)
        with self._lock:
            fd = self._require_fd()
            if self._sealed:
                raise SpoolError(f"segment {self.segment_id} is sealed")
            before = self._size
            if not self._fits(len(record)):
                raise SegmentFullError(self.segment_id, before, len(record))
            try:
                with io_errors(f"append to segment {self.path} failed"):
                    pwrite_all(fd, record, before)
            except SpoolError:
                self._truncate_quietly(fd, before)
                raise
            self._size = before + len(record)
            self._dirty = True
            return before, self._size

    def fits(self, record_size: int) -> bool:
        """Whether a framed record of `record_size` bytes can be appended."""
        with self._lock:
            return not self._sealed and self._fits(record_size)

    def truncate(self, size: int) -> None:
        """Drop everything past `size`, undoing appends that were never made durable."""
        with self._lock:
            fd = self._require_fd()
            if not HEADER_SIZE <= size <= self._size:
                raise ValueError(
                    f"cannot truncate segment of {self._size} bytes to {size}"
                )
            with io_errors(f"truncate of segment {self.path} failed"):
                os.ftruncate(fd, size)
            self._size = size

    def sync(self) -> bool:
        """fsync pending appends. Returns True if anything was flushed."""
        with self._lock:
            if not self._dirty or self._fd is None:
                return False
            with io_errors(f"fsync of segment {self.path} failed"):
                os.fsync(self._fd)
            self._dirty = False
            return True

    def seal(self) -> None:
        """Mark the segment immutable and flush it."""
        with self._lock:
            self._sealed = True
        self.sync()

    # ------------------------------------------------------------------ #
    # Reading                                                              #
    # ------------------------------------------------------------------ #

    def read_at(self, offset: int) -> tuple[bytes, int] | None:
        """
        Parse the record starting at `offset`.

        Returns (payload, offset_after), or None when offset is the current
        end of the segment. Raises CorruptSegmentError on a length prefix that
        runs past the end of the file or a CRC mismatch.
        """
        with self._lock:
            fd = self._require_fd()
            size = self._size
        if offset < HEADER_SIZE or offset > size:
            raise CorruptSegmentError(
                self.path, f"offset outside segment of {size} bytes", offset
            )
        if offset == size:
            return None
        if size - offset < RECORD_OVERHEAD:
            raise CorruptSegmentError(self.path, "truncated record", offset)

        with io_errors(f"read from segment {self.path} failed"):
            prefix = pread_exact(fd, _U32.size, offset)
            (length,) = _U32.unpack(prefix)
            end = offset + RECORD_OVERHEAD + length
            if end > size:
                raise CorruptSegmentError(
                    self.path, f"length prefix {length} runs past end of segment", offset
                )
            body = pread_exact(fd, length + _U32.size, offset + _U32.size)

        if len(body) != length + _U32.size:
            raise CorruptSegmentError(self.path, "short read", offset)
        payload = body[:length]
        (crc,) = _U32.unpack_from(body, length)
        if crc != zlib.crc32(payload):
            raise CorruptSegmentError(self.path, "record checksum mismatch", offset)
        return payload, end

    def records(self, start: int = HEADER_SIZE) -> Iterator[tuple[int, bytes, int]]:
        """Yield (offset, payload, offset_after) for every record from `start`."""
        offset = start
        while True:
            result = self.read_at(offset)
            if result is None:
                return
            payload, after = result
            yield offset, payload, after
            offset = after

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    def close(self) -> None:
        """Release the file descriptor. Safe to call more than once."""
        with self._lock:
            if self._fd is None:
                return
            fd, self._fd = self._fd, None
        with io_errors(f"close of segment {self.path} failed"):
            os.close(fd)

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _require_fd(self) -> int:
        if self._fd is None:
            raise SpoolError(f"segment {self.path} is closed")
        return self._fd

    def _fits(self, record_size: int) -> bool:
        # An empty segment accepts any record so rollover always makes progress.
        return self._size == HEADER_SIZE or self._size + record_size <= self.max_bytes

    def _reaches_end(self, offset: int) -> bool:
        """Whether the record starting at `offset` extends to (or past) end of file."""
        if self._size - offset < RECORD_OVERHEAD:
            return True
        with io_errors(f"read from segment {self.path} failed"):
            (length,) = _U32.unpack(pread_exact(self._require_fd(), _U32.size, offset))
        return offset + RECORD_OVERHEAD + length >= self._size

    def _recover_tail(self, *, torn_only: bool = False) -> None:
        """
        Truncate trailing bytes that do not form a valid record. With
        torn_only, damage that is followed by more data is re-raised.
        """
        valid_end = HEADER_SIZE
        try:
            for _, _, after in self.records(HEADER_SIZE):
                valid_end = after
        except CorruptSegmentError as exc:
            if torn_only and not self._reaches_end(valid_end):
                raise
            logger.warning(
                "Truncating %d trailing bytes of segment %s: %s",
                self._size - valid_end,
                self.path,
                exc.reason,
            )
            fd = self._require_fd()
            with io_errors(f"truncate of segment {self.path} failed"):
                os.ftruncate(fd, valid_end)
                os.fsync(fd)
            self._size = valid_end

    def _truncate_quietly(self, fd: int, size: int) -> None:
        """Undo a partially written record after a failed append."""
        try:
            os.ftruncate(fd, size)
        except OSError:
            logger.exception("Could not roll back partial append to %s", self.path)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000
