"""
SegmentSet — the ordered collection of segment files under a spool directory.

Invariants
----------
- segment ids are contiguous from first_id to last_id; the only gaps allowed
  are the ids below first_id, deleted by gc()
- exactly one segment, the highest id, is open for append ("active")
- every other segment is sealed and opened lazily for reading

Callers (FileBlockingQueue) serialize roll() and gc() under their own monitor
lock; SegmentSet itself holds no lock.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from spoolq.core.fsutil import fsync_directory, io_errors
from spoolq.core.segment import Segment, parse_segment_id, segment_path
from spoolq.domain.errors import CorruptSegmentError, SpoolError

logger = logging.getLogger(__name__)


class SegmentSet:
    """
    Ordered segments of one spool directory.

    Parameters
    ----------
    directory : spool directory (created if absent)
    max_bytes : soft size cap passed to every segment
    """

    def __init__(self, directory: str | Path, max_bytes: int) -> None:
        self.directory = Path(directory)
        self.max_bytes = max_bytes
        self._ids: list[int] = []
        self._open: dict[int, Segment] = {}
        self._sizes: dict[int, int] = {}
        self._active: Segment | None = None

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    def open(self) -> None:
        """
        Scan the directory, creating segment 0 when it holds none, and open the
        last segment for append (which truncates a torn trailing record).
        """
        with io_errors(f"cannot scan spool directory {self.directory}"):
            self.directory.mkdir(parents=True, exist_ok=True)
            names = os.listdir(self.directory)

        ids = sorted(i for i in map(parse_segment_id, names) if i is not None)
        for prev, cur in zip(ids, ids[1:]):
            if cur != prev + 1:
                raise CorruptSegmentError(
                    segment_path(self.directory, cur),
                    f"segment ids jump from {prev} to {cur}",
                )
        if not ids:
            ids = [0]

        self._ids = ids
        if len(ids) > 1:
            # The segment before the last one may have been rolled away from
            # before its final records reached the disk.
            penultimate = ids[-2]
            Segment.repair_tail(
                segment_path(self.directory, penultimate), penultimate, self.max_bytes
            )
        self._sizes = {i: self._file_size(i) for i in ids[:-1]}
        last = ids[-1]
        self._active = Segment.open_for_append(
            segment_path(self.directory, last), last, self.max_bytes
        )
        self._open[last] = self._active
        logger.debug(
            "Opened %d segment(s) in %s, active segment %d",
            len(ids),
            self.directory,
            last,
        )

    def close(self) -> None:
        """Close every open descriptor. Does not seal or flush."""
        segments = list(self._open.values())
        self._open.clear()
        self._active = None
        for segment in segments:
            segment.close()

    # ------------------------------------------------------------------ #
    # Queries                                                              #
    # ------------------------------------------------------------------ #

    @property
    def ids(self) -> tuple[int, ...]:
        return tuple(self._ids)

    @property
    def first_id(self) -> int:
        return self._ids[0]

    @property
    def last_id(self) -> int:
        return self._ids[-1]

    def contains(self, segment_id: int) -> bool:
        return bool(self._ids) and self._ids[0] <= segment_id <= self._ids[-1]

    @property
    def total_bytes(self) -> int:
        """On-disk bytes of all live segments."""
        total = 0
        for segment_id in self._ids:
            segment = self._open.get(segment_id)
            if segment is not None:
                total += segment.size
            else:
                total += self._sizes.get(segment_id, 0)
        return total

    def active_write_segment(self) -> Segment:
        """The highest-id segment, open for append."""
        if self._active is None:
            raise SpoolError(f"segment set {self.directory} is not open")
        return self._active

    def read_segment(self, segment_id: int) -> Segment:
        """The segment with the given id, opened for read on first use."""
        segment = self._open.get(segment_id)
        if segment is not None:
            return segment
        if not self.contains(segment_id):
            raise SpoolError(f"segment {segment_id} is not in {self.directory}")
        segment = Segment.open_for_read(
            segment_path(self.directory, segment_id), self.max_bytes
        )
        if segment.segment_id != segment_id:
            segment.close()
            raise CorruptSegmentError(
                segment.path,
                f"header names segment {segment.segment_id}, expected {segment_id}",
                0,
            )
        self._open[segment_id] = segment
        return segment

    @property
    def open_ids(self) -> tuple[int, ...]:
        """Ids of the segments that currently hold a file descriptor."""
        return tuple(sorted(self._open))

    def evict(self, segment_id: int) -> None:
        """Close a cached read handle. The active segment is never evicted."""
        segment = self._open.get(segment_id)
        if segment is None or segment is self._active:
            return
        self._sizes[segment_id] = segment.size
        del self._open[segment_id]
        segment.close()

    # ------------------------------------------------------------------ #
    # Mutations                                                            #
    # ------------------------------------------------------------------ #

    def roll(self) -> Segment:
        """
        Seal the active segment and make segment id+1 the active one.

        The current segment is sealed (and fsynced) before the next file
        exists. If creating the next file fails, the sealed segment stays
        active and the following roll() retries the creation.
        """
        current = self.active_write_segment()
        next_id = current.segment_id + 1
        current.seal()
        segment = Segment.open_for_append(
            segment_path(self.directory, next_id), next_id, self.max_bytes
        )
        self._ids.append(next_id)
        self._open[next_id] = segment
        self._active = segment
        logger.debug(
            "Rolled segment %d (%d bytes) over to %d",
            current.segment_id,
            current.size,
            next_id,
        )
        return segment

    def gc(self, up_to_id: int) -> list[int]:
        """
        Delete every segment with id < up_to_id. The active segment is never
        deleted. Returns the deleted ids.
        """
        active_id = self.active_write_segment().segment_id
        doomed = [i for i in self._ids if i < up_to_id and i != active_id]
        if not doomed:
            return []

        for segment_id in doomed:
            self._sizes.pop(segment_id, None)
            segment = self._open.pop(segment_id, None)
            if segment is not None:
                segment.close()
            path = segment_path(self.directory, segment_id)
            with io_errors(f"cannot delete segment {path}"):
                path.unlink(missing_ok=True)
            self._ids.remove(segment_id)

        with io_errors(f"cannot sync spool directory {self.directory}"):
            fsync_directory(self.directory)
        logger.debug("Deleted consumed segment(s) %s", doomed)
        return doomed

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _file_size(self, segment_id: int) -> int:
        try:
            return segment_path(self.directory, segment_id).stat().st_size
        except FileNotFoundError:
            return 0
