"""
FileBlockingQueue — durable, file-backed blocking FIFO queue.

Producers offer() items; a single logical consumer drains them with poll(),
take(), drain() or an iterator. Every item that was offered but not yet
consumed survives a process restart.

Usage
-----
    from datetime import timedelta
    from spoolq import FileBlockingQueue, QueueConfig, StringCodec

    config = QueueConfig(spool_path="/var/spool/events")
    with FileBlockingQueue(config, StringCodec()) as q:
        q.offer("hello")
        item = q.poll(timedelta(seconds=1))     # "hello", or None on timeout

On disk
-------
    <spool>/queue.lock           exclusive flock held while the queue is open
    <spool>/data-0000000000.log  segments (see segment.py)
    <spool>/cursor.dat           durable read position (see cursor.py)

Concurrency
-----------
One monitor lock guards the segment set, the read position and the item
count; the not_empty condition shares it. offer() never waits on the
condition. poll() and take() wait for not_empty and recheck on every wake, so
spurious wake-ups are harmless; poll() measures its deadline from call entry.

Consuming
---------
poll(), take() and drain() persist the cursor before the item is handed out.
If that write fails the item stays in the queue. An iterator consumes without
persisting and commits the cursor when it is exhausted or on commit(), so an
interrupted iteration is replayed after a restart. Segments are garbage
collected only once the *committed* cursor has moved past them.

Poisoned records
----------------
A record whose payload the codec rejects is skipped: the read position moves
past it, lost_records is incremented and CodecError is raised to the consumer.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from types import TracebackType
from typing import Generic, TypeVar

from spoolq.core.cursor import CursorStore
from spoolq.core.flusher import IntervalFlusher
from spoolq.core.lock import DirectoryLock
from spoolq.core.segment import Segment
from spoolq.core.segment_set import SegmentSet
from spoolq.domain.errors import (
    CodecError,
    DiskFullError,
    QueueClosedError,
    QueueInterruptedError,
    SegmentFullError,
    SpoolError,
    StorageError,
)
from spoolq.domain.models import (
    HEADER_SIZE,
    RECORD_OVERHEAD,
    Cursor,
    FsyncMode,
    QueueConfig,
    QueueStats,
)
from spoolq.ports.codec import Codec

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Returned by the internal consume step when no record is available; keeps
# items that decode to None distinguishable from an empty queue.
_EMPTY = object()


class FileBlockingQueue(Generic[T]):
    """
    Durable blocking queue over a spool directory.

    Constructing the queue takes the directory lock and runs crash recovery;
    close() (or leaving the `with` block) releases it.

    Parameters
    ----------
    config : QueueConfig
    codec  : any Codec[T] implementation
    """

    def __init__(self, config: QueueConfig, codec: Codec[T]) -> None:
        self.config = config
        self.codec = codec

        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)

        self._dir_lock = DirectoryLock(config.spool_path)
        self._segments = SegmentSet(config.spool_path, config.segment_max_bytes)
        self._cursors = CursorStore(config.spool_path)

        self._count = 0
        self._lost = 0
        self._interrupts = 0
        self._closed = False
        self._sync_each_record = config.fsync_policy.mode is FsyncMode.EVERY_RECORD
        self._flusher: IntervalFlusher | None = None

        self._recover()

        interval = config.fsync_policy.interval
        if interval is not None:
            self._flusher = IntervalFlusher(self, interval)
            self._flusher.start()

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"size={self._count}"
        return f"FileBlockingQueue({str(self.config.spool_path)!r}, {state})"

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    def __enter__(self) -> "FileBlockingQueue[T]":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """
        Wake blocked consumers, flush the active segment and release the
        directory lock. Safe to call more than once.

        Only committed consumption is durable: items an unfinished iterator
        has yielded but not committed are delivered again after reopening.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._not_empty.notify_all()

        if self._flusher is not None:
            self._flusher.stop()
            self._flusher = None

        with self._lock:
            try:
                self._segments.active_write_segment().seal()
            finally:
                self._segments.close()
                self._dir_lock.release()
        logger.info(
            "Closed spool %s with %d pending record(s)",
            self.config.spool_path,
            self._count,
        )

    def interrupt(self) -> None:
        """Make every thread blocked in poll() or take() raise QueueInterruptedError."""
        with self._lock:
            self._interrupts += 1
            self._not_empty.notify_all()

    def sync(self) -> bool:
        """fsync the active segment. Returns True if unsynced appends were flushed."""
        with self._lock:
            self._ensure_open_locked()
            return self._segments.active_write_segment().sync()

    # ------------------------------------------------------------------ #
    # Producer side                                                        #
    # ------------------------------------------------------------------ #

    def offer(self, item: T) -> bool:
        """
        Append an item. Never blocks.

        Returns False, leaving the queue unchanged, when the record would take
        the spool past disk_max_bytes or the filesystem is full.
        """
        payload = self.codec.encode(item)
        record_size = len(payload) + RECORD_OVERHEAD
        with self._lock:
            self._ensure_open_locked()
            needed = record_size
            if not self._segments.active_write_segment().fits(record_size):
                needed += HEADER_SIZE
            if self._segments.total_bytes + needed > self.config.disk_max_bytes:
                logger.debug(
                    "Rejecting %d-byte record: spool %s is at its %d-byte limit",
                    record_size,
                    self.config.spool_path,
                    self.config.disk_max_bytes,
                )
                return False
            try:
                segment, before = self._append_locked(payload)
                if self._sync_each_record:
                    self._sync_or_undo_locked(segment, before)
            except DiskFullError:
                logger.warning(
                    "Filesystem holding spool %s is full; rejecting record",
                    self.config.spool_path,
                )
                return False
            self._count += 1
            self._not_empty.notify()
        return True

    # ------------------------------------------------------------------ #
    # Consumer side                                                        #
    # ------------------------------------------------------------------ #

    def poll(self, timeout: timedelta | None = None) -> T | None:
        """
        Remove and return the head item, waiting up to `timeout` for one.

        Returns None when the deadline passes. timeout=None uses the
        configured poll_default_timeout_ms.
        """
        if timeout is None:
            timeout = self.config.poll_default_timeout
        deadline = time.monotonic() + max(timeout.total_seconds(), 0.0)
        with self._not_empty:
            epoch = self._interrupts
            while True:
                self._check_waiter_locked(epoch)
                value = self._consume_locked(commit=True)
                if value is not _EMPTY:
                    return value  # type: ignore[return-value]
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._not_empty.wait(remaining)

    def take(self) -> T:
        """Remove and return the head item, waiting as long as necessary."""
        with self._not_empty:
            epoch = self._interrupts
            while True:
                self._check_waiter_locked(epoch)
                value = self._consume_locked(commit=True)
                if value is not _EMPTY:
                    return value  # type: ignore[return-value]
                self._not_empty.wait()

    def peek(self) -> T | None:
        """Return the head item without removing it, or None if empty."""
        with self._lock:
            self._ensure_open_locked()
            head = self._head_locked()
            result = self._segments.read_segment(head.segment_id).read_at(head.offset)
            if result is None:
                return None
            payload, _ = result
            return self.codec.decode(payload)

    def drain(self, max_items: int | None = None) -> list[T]:
        """
        Remove and return up to `max_items` items (all available if None)
        without waiting. The cursor is persisted once for the whole batch.

        Poisoned records met while draining are skipped and counted in
        lost_records instead of aborting the batch.
        """
        items: list[T] = []
        with self._lock:
            self._ensure_open_locked()
            start, start_count = self._read, self._count
            while max_items is None or len(items) < max_items:
                try:
                    value = self._consume_locked(commit=False)
                except CodecError:
                    continue
                if value is _EMPTY:
                    break
                items.append(value)  # type: ignore[arg-type]
            try:
                self._commit_locked(self._read)
            except StorageError:
                self._read, self._count = start, start_count
                raise
        return items

    def iterator(self) -> "QueueIterator[T]":
        """
        Return a one-shot iterator starting at the current head.

        Items are consumed as they are yielded, but the durable cursor only
        moves when the iterator is exhausted or commit() is called.
        """
        with self._lock:
            self._ensure_open_locked()
            mark = self._read
        return QueueIterator(self, mark)

    def __iter__(self) -> "QueueIterator[T]":
        return self.iterator()

    # ------------------------------------------------------------------ #
    # Introspection                                                        #
    # ------------------------------------------------------------------ #

    def size(self) -> int:
        """Approximate number of unconsumed items."""
        return self._count

    def __len__(self) -> int:
        return self._count

    @property
    def lost_records(self) -> int:
        """Number of poisoned records skipped since the queue was opened."""
        return self._lost

    def remaining_bytes(self) -> int:
        """Bytes that can still be appended before offer() starts refusing."""
        with self._lock:
            self._ensure_open_locked()
            return max(self.config.disk_max_bytes - self._segments.total_bytes, 0)

    def stats(self) -> QueueStats:
        """Point-in-time snapshot of the queue's bookkeeping."""
        with self._lock:
            self._ensure_open_locked()
            return QueueStats(
                size=self._count,
                lost_records=self._lost,
                read_position=self._read,
                committed_position=self._committed,
                segment_ids=self._segments.ids,
                disk_bytes=self._segments.total_bytes,
            )

    # ------------------------------------------------------------------ #
    # Iterator support (called by QueueIterator)                           #
    # ------------------------------------------------------------------ #

    def _consume_uncommitted(self) -> object:
        with self._lock:
            self._ensure_open_locked()
            return self._consume_locked(commit=False)

    def _commit_read_position(self) -> Cursor:
        with self._lock:
            self._ensure_open_locked()
            self._commit_locked(self._read)
            return self._read

    def _rewind(self, mark: Cursor, consumed: int) -> None:
        with self._lock:
            self._ensure_open_locked()
            if not self._segments.contains(mark.segment_id):
                raise SpoolError(
                    f"segment {mark.segment_id} was garbage collected; cannot rewind"
                )
            self._read = mark
            self._count += consumed

    # ------------------------------------------------------------------ #
    # Internals: every *_locked method requires self._lock                 #
    # ------------------------------------------------------------------ #

    def _recover(self) -> None:
        """Take the directory lock and rebuild in-memory state from disk."""
        self._dir_lock.acquire()
        try:
            self._segments.open()
            cursor = self._initial_cursor()
            self._read = self._committed = cursor
            self._count = self._count_from(cursor)
            self._cursors.store(cursor)
            self._segments.gc(cursor.segment_id)
        except BaseException:
            self._segments.close()
            self._dir_lock.release()
            raise
        logger.info(
            "Opened spool %s: %d pending record(s), segments %d..%d, cursor %d:%d",
            self.config.spool_path,
            self._count,
            self._segments.first_id,
            self._segments.last_id,
            cursor.segment_id,
            cursor.offset,
        )

    def _initial_cursor(self) -> Cursor:
        stored = self._cursors.load()
        oldest = Cursor.start_of(self._segments.first_id)
        if stored is None:
            return oldest
        if not self._segments.contains(stored.segment_id):
            logger.warning(
                "Cursor names missing segment %d; restarting at segment %d",
                stored.segment_id,
                oldest.segment_id,
            )
            return oldest
        size = self._segments.read_segment(stored.segment_id).size
        if stored.offset > size:
            logger.warning(
                "Cursor offset %d is past the end of segment %d (%d bytes); clamping",
                stored.offset,
                stored.segment_id,
                size,
            )
            return stored.at(size)
        return stored

    def _count_from(self, cursor: Cursor) -> int:
        """Validate and count every record from `cursor` to the end of the spool."""
        count = 0
        for segment_id in range(cursor.segment_id, self._segments.last_id + 1):
            segment = self._segments.read_segment(segment_id)
            start = cursor.offset if segment_id == cursor.segment_id else HEADER_SIZE
            count += sum(1 for _ in segment.records(start))
            if segment_id != cursor.segment_id:
                # Reopened lazily once the consumer gets there.
                self._segments.evict(segment_id)
        return count

    def _ensure_open_locked(self) -> None:
        if self._closed:
            raise QueueClosedError(f"queue at {self.config.spool_path} is closed")

    def _check_waiter_locked(self, epoch: int) -> None:
        self._ensure_open_locked()
        if self._interrupts != epoch:
            raise QueueInterruptedError(
                f"wait on queue at {self.config.spool_path} was interrupted"
            )

    def _append_locked(self, payload: bytes) -> tuple[Segment, int]:
        """Append to the active segment, rolling first if it is full or sealed."""
        segment = self._segments.active_write_segment()
        if not segment.fits(len(payload) + RECORD_OVERHEAD):
            segment = self._segments.roll()
        try:
            before, _ = segment.append(payload)
        except SegmentFullError:
            segment = self._segments.roll()
            before, _ = segment.append(payload)
        return segment, before

    def _sync_or_undo_locked(self, segment: Segment, before: int) -> None:
        """fsync a fresh append; if that fails, cut the record off again."""
        try:
            segment.sync()
        except StorageError:
            segment.truncate(before)
            raise

    def _head_locked(self) -> Cursor:
        """Read position of the head record, skipping exhausted sealed segments."""
        cursor = self._read
        while True:
            segment = self._segments.read_segment(cursor.segment_id)
            if (
                cursor.offset >= segment.size
                and segment.sealed
                and self._segments.contains(cursor.segment_id + 1)
            ):
                cursor = cursor.next_segment()
                continue
            return cursor

    def _consume_locked(self, *, commit: bool) -> object:
        """
        Consume the head record. Returns the decoded item or _EMPTY.

        With commit=True the new position is persisted before any in-memory
        state changes, so a failed cursor write leaves the record in place.
        """
        self._ensure_open_locked()
        head = self._head_locked()
        result = self._segments.read_segment(head.segment_id).read_at(head.offset)
        if result is None:
            if head != self._read:
                self._advance_locked(head, commit=commit)
            return _EMPTY

        payload, offset_after = result
        position = head.at(offset_after)
        try:
            value = self.codec.decode(payload)
        except CodecError:
            self._advance_locked(position, commit=commit)
            self._count = max(self._count - 1, 0)
            self._lost += 1
            logger.warning(
                "Skipping undecodable record at segment %d offset %d (%d lost so far)",
                head.segment_id,
                head.offset,
                self._lost,
            )
            raise
        self._advance_locked(position, commit=commit)
        self._count = max(self._count - 1, 0)
        return value

    def _advance_locked(self, position: Cursor, *, commit: bool) -> None:
        if commit:
            self._commit_locked(position)
        self._read = position

    def _commit_locked(self, position: Cursor) -> None:
        """Persist `position` and delete segments it has left behind."""
        if position != self._committed:
            self._cursors.store(position)
            self._committed = position
        if self._segments.first_id < position.segment_id:
            self._segments.gc(position.segment_id)


class QueueIterator(Generic[T]):
    """
    One-shot iterator over a FileBlockingQueue.

    The mark is the read position the iterator started from (or last
    committed). Iterating consumes items in memory; commit() makes that
    durable, and exhaustion commits automatically. rollback() returns the
    consumed-but-uncommitted items to the queue.
    """

    def __init__(self, queue: FileBlockingQueue[T], mark: Cursor) -> None:
        self._queue = queue
        self._mark = mark
        self._consumed = 0
        self._exhausted = False

    @property
    def mark(self) -> Cursor:
        return self._mark

    def __iter__(self) -> "QueueIterator[T]":
        return self

    def __next__(self) -> T:
        if self._exhausted:
            raise StopIteration
        try:
            value = self._queue._consume_uncommitted()
        except CodecError:
            self._consumed += 1
            raise
        if value is _EMPTY:
            self._exhausted = True
            self.commit()
            raise StopIteration
        self._consumed += 1
        return value  # type: ignore[return-value]

    def commit(self) -> None:
        """Persist the items consumed so far and move the mark to the head."""
        self._mark = self._queue._commit_read_position()
        self._consumed = 0

    def rollback(self) -> None:
        """Return every item consumed since the mark to the queue."""
        self._queue._rewind(self._mark, self._consumed)
        self._consumed = 0
        self._exhausted = False
