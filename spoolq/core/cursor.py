"""
CursorStore — durable persistence of the consumer's read position.

File format (cursor.dat, 20 bytes, little-endian)
-------------------------------------------------
  segment_id  u64
  offset      u64
  crc32       u32  over the 16 preceding bytes

Write protocol
--------------
store() writes cursor.dat.tmp, fsyncs it, renames it over cursor.dat with
os.replace (atomic on POSIX) and fsyncs the directory. Once store() returns
the cursor survives a crash; a crash before the rename leaves the previous
cursor in place.
"""

from __future__ import annotations

import logging
import os
import struct
import zlib
from pathlib import Path

from spoolq.core.fsutil import fsync_directory, io_errors, pwrite_all
from spoolq.domain.errors import StorageError
from spoolq.domain.models import HEADER_SIZE, Cursor

logger = logging.getLogger(__name__)

CURSOR_FILE = "cursor.dat"
CURSOR_TMP_FILE = "cursor.dat.tmp"

_FIELDS = struct.Struct("<QQ")
_CRC = struct.Struct("<I")
CURSOR_SIZE: int = _FIELDS.size + _CRC.size


def encode_cursor(cursor: Cursor) -> bytes:
    fields = _FIELDS.pack(cursor.segment_id, cursor.offset)
    return fields + _CRC.pack(zlib.crc32(fields))


def decode_cursor(data: bytes) -> Cursor | None:
    """Decode a cursor file body. None if it is short, damaged or out of range."""
    if len(data) != CURSOR_SIZE:
        return None
    fields = data[: _FIELDS.size]
    (crc,) = _CRC.unpack_from(data, _FIELDS.size)
    if crc != zlib.crc32(fields):
        return None
    segment_id, offset = _FIELDS.unpack(fields)
    if offset < HEADER_SIZE:
        return None
    return Cursor(segment_id=segment_id, offset=offset)


class CursorStore:
    """
    Reads and atomically replaces <directory>/cursor.dat.

    Parameters
    ----------
    directory : spool directory
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.path = self.directory / CURSOR_FILE
        self.tmp_path = self.directory / CURSOR_TMP_FILE

    def load(self) -> Cursor | None:
        """Return the stored cursor, or None if absent or damaged."""
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"cannot read cursor {self.path}", exc) from exc
        cursor = decode_cursor(data)
        if cursor is None:
            logger.warning("Ignoring damaged cursor file %s (%d bytes)", self.path, len(data))
        return cursor

    def store(self, cursor: Cursor) -> None:
        """Durably replace the stored cursor. Raises StorageError on failure."""
        data = encode_cursor(cursor)
        with io_errors(f"cannot persist cursor {self.path}"):
            fd = os.open(self.tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
            try:
                pwrite_all(fd, data, 0)
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(self.tmp_path, self.path)
            fsync_directory(self.directory)
