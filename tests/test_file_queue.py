import errno
import threading
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from pydantic import BaseModel

from spoolq.adapters.codec.model import ModelCodec
from spoolq.adapters.codec.text import BytesCodec, StringCodec
from spoolq.core.cursor import CursorStore
from spoolq.core.queue import FileBlockingQueue
from spoolq.core.segment import segment_path
from spoolq.domain.errors import (
    CodecError,
    LockedError,
    QueueClosedError,
    QueueInterruptedError,
    StorageError,
)
from spoolq.domain.models import QueueConfig

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path) -> QueueConfig:
    return QueueConfig(spool_path=tmp_path / "spool", fsync_policy="interval_ms=50")


@pytest.fixture
def queue(config: QueueConfig):
    q = FileBlockingQueue(config, StringCodec())
    yield q
    q.close()


def _fill(queue: FileBlockingQueue[str], count: int) -> None:
    for i in range(count):
        assert queue.offer(f"testString{i}")


# ---------------------------------------------------------------------------
# offer / poll / peek
# ---------------------------------------------------------------------------


def test_new_queue_is_empty(queue: FileBlockingQueue[str]) -> None:
    assert queue.size() == 0
    assert len(queue) == 0
    assert queue.peek() is None


def test_offer_then_poll_returns_item(queue: FileBlockingQueue[str]) -> None:
    assert queue.offer("testString")
    assert queue.size() == 1
    assert queue.poll(timedelta(0)) == "testString"
    assert queue.size() == 0


def test_poll_is_fifo(queue: FileBlockingQueue[str]) -> None:
    _fill(queue, 50)
    assert [queue.poll(timedelta(0)) for _ in range(50)] == [
        f"testString{i}" for i in range(50)
    ]


def test_poll_empty_with_zero_timeout_returns_none(queue: FileBlockingQueue[str]) -> None:
    assert queue.poll(timedelta(0)) is None


def test_poll_uses_default_timeout(tmp_path) -> None:
    config = QueueConfig(spool_path=tmp_path, poll_default_timeout_ms=100)
    with FileBlockingQueue(config, StringCodec()) as q:
        start = time.monotonic()
        assert q.poll() is None
        assert time.monotonic() - start >= 0.1


def test_peek_does_not_consume(queue: FileBlockingQueue[str]) -> None:
    queue.offer("a")
    queue.offer("b")
    assert queue.peek() == "a"
    assert queue.peek() == "a"
    assert queue.size() == 2
    assert queue.poll(timedelta(0)) == "a"
    assert queue.peek() == "b"


def test_empty_string_item(queue: FileBlockingQueue[str]) -> None:
    queue.offer("")
    assert queue.peek() == ""
    assert queue.poll(timedelta(0)) == ""


def test_model_items(tmp_path) -> None:
    class Event(BaseModel):
        name: str
        ts: datetime

    event = Event(name="page_view", ts=datetime(2024, 1, 1, tzinfo=UTC))
    with FileBlockingQueue(QueueConfig(spool_path=tmp_path), ModelCodec(Event)) as q:
        q.offer(event)
        assert q.poll(timedelta(0)) == event


def test_offer_encode_failure_leaves_queue_unchanged(queue: FileBlockingQueue[str]) -> None:
    with pytest.raises(CodecError):
        queue.offer(123)  # type: ignore[arg-type]
    assert queue.size() == 0


# ---------------------------------------------------------------------------
# Blocking behaviour
# ---------------------------------------------------------------------------


def test_blocking_poll_times_out(queue: FileBlockingQueue[str]) -> None:
    start = time.monotonic()
    assert queue.poll(timedelta(milliseconds=1000)) is None
    elapsed = time.monotonic() - start
    assert 1.0 <= elapsed <= 2.0


def test_blocking_poll_wakes_on_offer(queue: FileBlockingQueue[str]) -> None:
    result: list[str | None] = []
    elapsed: list[float] = []

    def consumer() -> None:
        start = time.monotonic()
        result.append(queue.poll(timedelta(milliseconds=5000)))
        elapsed.append(time.monotonic() - start)

    t = threading.Thread(target=consumer)
    t.start()
    time.sleep(1.0)
    assert queue.offer("testString")
    t.join(timeout=10)

    assert result == ["testString"]
    assert elapsed[0] < 4.0


def test_take_blocks_until_offer(queue: FileBlockingQueue[str]) -> None:
    result: list[str] = []
    t = threading.Thread(target=lambda: result.append(queue.take()))
    t.start()
    time.sleep(0.2)
    assert t.is_alive()
    queue.offer("late")
    t.join(timeout=5)
    assert result == ["late"]


def test_take_returns_immediately_when_not_empty(queue: FileBlockingQueue[str]) -> None:
    queue.offer("ready")
    assert queue.take() == "ready"


def test_interrupt_wakes_waiting_poll(queue: FileBlockingQueue[str]) -> None:
    errors: list[Exception] = []

    def consumer() -> None:
        try:
            queue.poll(timedelta(seconds=10))
        except QueueInterruptedError as exc:
            errors.append(exc)

    t = threading.Thread(target=consumer)
    start = time.monotonic()
    t.start()
    time.sleep(0.1)
    queue.interrupt()
    t.join(timeout=5)

    assert len(errors) == 1
    assert time.monotonic() - start < 5


def test_interrupt_wakes_take(queue: FileBlockingQueue[str]) -> None:
    errors: list[Exception] = []

    def consumer() -> None:
        try:
            queue.take()
        except QueueInterruptedError as exc:
            errors.append(exc)

    t = threading.Thread(target=consumer)
    t.start()
    time.sleep(0.1)
    queue.interrupt()
    t.join(timeout=5)
    assert len(errors) == 1


def test_interrupt_does_not_affect_later_calls(queue: FileBlockingQueue[str]) -> None:
    queue.interrupt()
    queue.offer("x")
    assert queue.poll(timedelta(0)) == "x"


def test_close_wakes_waiting_consumer(config: QueueConfig) -> None:
    q = FileBlockingQueue(config, StringCodec())
    errors: list[Exception] = []

    def consumer() -> None:
        try:
            q.take()
        except QueueClosedError as exc:
            errors.append(exc)

    t = threading.Thread(target=consumer)
    t.start()
    time.sleep(0.1)
    q.close()
    t.join(timeout=5)
    assert len(errors) == 1


def test_multiple_producers_keep_per_producer_order(queue: FileBlockingQueue[str]) -> None:
    def producer(p: int) -> None:
        for i in range(250):
            assert queue.offer(f"{p}:{i}")

    threads = [threading.Thread(target=producer, args=(p,)) for p in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    items = queue.drain()
    assert len(items) == 1000
    for p in range(4):
        seq = [int(item.split(":")[1]) for item in items if item.startswith(f"{p}:")]
        assert seq == list(range(250))


# ---------------------------------------------------------------------------
# drain
# ---------------------------------------------------------------------------


def test_drain_all(queue: FileBlockingQueue[str]) -> None:
    _fill(queue, 10)
    assert queue.drain() == [f"testString{i}" for i in range(10)]
    assert queue.size() == 0


def test_drain_max_items(queue: FileBlockingQueue[str]) -> None:
    _fill(queue, 10)
    assert queue.drain(3) == ["testString0", "testString1", "testString2"]
    assert queue.size() == 7
    assert queue.peek() == "testString3"


def test_drain_empty(queue: FileBlockingQueue[str]) -> None:
    assert queue.drain(5) == []


def test_drain_persists_cursor(queue: FileBlockingQueue[str], config: QueueConfig) -> None:
    _fill(queue, 4)
    queue.drain(2)
    stats = queue.stats()
    assert CursorStore(config.spool_path).load() == stats.read_position
    assert stats.committed_position == stats.read_position


# ---------------------------------------------------------------------------
# Iterator
# ---------------------------------------------------------------------------


def test_drain_in_order_with_iterator(queue: FileBlockingQueue[str]) -> None:
    _fill(queue, 3000)

    count = 0
    for m in queue.iterator():
        assert m == f"testString{count}"
        count += 1

    assert count == 3000
    assert queue.size() == 0


def test_iterator_resumes_from_mark(queue: FileBlockingQueue[str]) -> None:
    _fill(queue, 3000)
    assert list(queue) == [f"testString{i}" for i in range(3000)]

    _fill(queue, 3000)
    count = 0
    for m in queue:
        assert m == f"testString{count}"
        count += 1
    assert count == 3000


def test_iterator_commits_only_at_exhaustion(
    queue: FileBlockingQueue[str], config: QueueConfig
) -> None:
    _fill(queue, 5)
    store = CursorStore(config.spool_path)
    start = store.load()

    it = queue.iterator()
    assert it.mark == start
    assert [next(it), next(it)] == ["testString0", "testString1"]
    assert queue.size() == 3
    assert store.load() == start

    assert list(it) == ["testString2", "testString3", "testString4"]
    assert store.load() == queue.stats().read_position
    assert store.load() != start


def test_iterator_explicit_commit(queue: FileBlockingQueue[str], config: QueueConfig) -> None:
    _fill(queue, 5)
    it = queue.iterator()
    next(it)
    next(it)
    it.commit()
    assert CursorStore(config.spool_path).load() == queue.stats().read_position
    assert it.mark == queue.stats().read_position


def test_iterator_rollback_returns_items(queue: FileBlockingQueue[str]) -> None:
    _fill(queue, 5)
    it = queue.iterator()
    next(it)
    next(it)
    it.rollback()
    assert queue.size() == 5
    assert queue.poll(timedelta(0)) == "testString0"


def test_exhausted_iterator_stays_exhausted(queue: FileBlockingQueue[str]) -> None:
    it = queue.iterator()
    assert list(it) == []
    queue.offer("after")
    assert list(it) == []
    assert list(queue.iterator()) == ["after"]


def test_iterator_after_close_raises(config: QueueConfig) -> None:
    q = FileBlockingQueue(config, StringCodec())
    q.offer("x")
    it = q.iterator()
    q.close()
    with pytest.raises(QueueClosedError):
        next(it)


def test_close_discards_uncommitted_iteration(config: QueueConfig) -> None:
    with FileBlockingQueue(config, StringCodec()) as q:
        _fill(q, 5)
        it = q.iterator()
        assert [next(it), next(it)] == ["testString0", "testString1"]

    with FileBlockingQueue(config, StringCodec()) as q:
        assert q.size() == 5
        assert q.drain() == [f"testString{i}" for i in range(5)]


def test_close_keeps_committed_iteration(config: QueueConfig) -> None:
    with FileBlockingQueue(config, StringCodec()) as q:
        _fill(q, 5)
        it = q.iterator()
        next(it)
        next(it)
        it.commit()
        next(it)

    with FileBlockingQueue(config, StringCodec()) as q:
        assert q.drain() == ["testString2", "testString3", "testString4"]


# ---------------------------------------------------------------------------
# Limits and failures
# ---------------------------------------------------------------------------


def test_offer_returns_false_above_disk_limit(tmp_path) -> None:
    config = QueueConfig(spool_path=tmp_path, segment_max_bytes=200, disk_max_bytes=200)
    with FileBlockingQueue(config, StringCodec()) as q:
        accepted = 0
        while q.offer("x" * 20):
            accepted += 1
        assert accepted == (200 - 30) // 28
        assert q.size() == accepted
        assert q.remaining_bytes() < 28
        q.poll(timedelta(0))


def test_offer_returns_false_when_filesystem_full(queue: FileBlockingQueue[str]) -> None:
    queue.offer("kept")
    with patch(
        "spoolq.core.segment.pwrite_all",
        side_effect=OSError(errno.ENOSPC, "No space left on device"),
    ):
        assert queue.offer("rejected") is False
    assert queue.size() == 1
    assert queue.drain() == ["kept"]


def test_offer_returns_false_when_fsync_reports_disk_full(tmp_path) -> None:
    config = QueueConfig(spool_path=tmp_path, fsync_policy="every_record")
    with FileBlockingQueue(config, StringCodec()) as q:
        q.offer("kept")
        size = segment_path(tmp_path, 0).stat().st_size
        with patch(
            "spoolq.core.segment.os.fsync",
            side_effect=OSError(errno.ENOSPC, "No space left on device"),
        ):
            assert q.offer("rejected") is False
        assert q.size() == 1
        assert segment_path(tmp_path, 0).stat().st_size == size
        assert q.drain() == ["kept"]


def test_disk_limit_counts_header_of_next_segment(tmp_path) -> None:
    # Six 28-byte records fill a segment; a seventh would need a new 30-byte header.
    config = QueueConfig(spool_path=tmp_path, segment_max_bytes=200, disk_max_bytes=230)
    with FileBlockingQueue(config, StringCodec()) as q:
        accepted = 0
        while q.offer("x" * 20):
            accepted += 1
        assert accepted == 6
        stats = q.stats()
        assert stats.segment_ids == (0,)
        assert stats.disk_bytes <= 230


def test_cursor_failure_leaves_record_unconsumed(queue: FileBlockingQueue[str]) -> None:
    queue.offer("precious")
    with patch.object(
        CursorStore, "store", side_effect=StorageError("cursor write failed", OSError(5, "EIO"))
    ):
        with pytest.raises(StorageError):
            queue.poll(timedelta(0))
    assert queue.size() == 1
    assert queue.poll(timedelta(0)) == "precious"


def test_poisoned_record_is_skipped_and_counted(tmp_path) -> None:
    config = QueueConfig(spool_path=tmp_path)
    with FileBlockingQueue(config, BytesCodec()) as raw:
        raw.offer(b"before")
        raw.offer(b"\xff\xfe not utf-8")
        raw.offer(b"after")

    with FileBlockingQueue(config, StringCodec()) as q:
        assert q.size() == 3
        assert q.poll(timedelta(0)) == "before"
        with pytest.raises(CodecError):
            q.poll(timedelta(0))
        assert q.lost_records == 1
        assert q.poll(timedelta(0)) == "after"
        assert q.size() == 0


def test_drain_skips_poisoned_records(tmp_path) -> None:
    config = QueueConfig(spool_path=tmp_path)
    with FileBlockingQueue(config, BytesCodec()) as raw:
        raw.offer(b"a")
        raw.offer(b"\xff")
        raw.offer(b"b")

    with FileBlockingQueue(config, StringCodec()) as q:
        assert q.drain() == ["a", "b"]
        assert q.lost_records == 1


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_close_is_idempotent(config: QueueConfig) -> None:
    q = FileBlockingQueue(config, StringCodec())
    q.close()
    q.close()
    assert q.closed


def test_operations_after_close_raise(config: QueueConfig) -> None:
    q = FileBlockingQueue(config, StringCodec())
    q.close()
    with pytest.raises(QueueClosedError):
        q.offer("x")
    with pytest.raises(QueueClosedError):
        q.poll(timedelta(0))
    with pytest.raises(QueueClosedError):
        q.peek()
    with pytest.raises(QueueClosedError):
        q.stats()


def test_second_open_in_same_process_is_locked(queue: FileBlockingQueue[str], config) -> None:
    with pytest.raises(LockedError):
        FileBlockingQueue(config, StringCodec())
    queue.offer("still usable")
    assert queue.poll(timedelta(0)) == "still usable"


def test_reopen_after_close_restores_backlog(config: QueueConfig) -> None:
    with FileBlockingQueue(config, StringCodec()) as q:
        _fill(q, 10)
        assert [q.poll(timedelta(0)) for _ in range(4)] == [
            f"testString{i}" for i in range(4)
        ]

    with FileBlockingQueue(config, StringCodec()) as q:
        assert q.size() == 6
        assert q.drain() == [f"testString{i}" for i in range(4, 10)]


def test_sync_flushes_pending_appends(queue: FileBlockingQueue[str]) -> None:
    queue.offer("x")
    queue.sync()
    assert queue.sync() is False


def test_stats(queue: FileBlockingQueue[str]) -> None:
    _fill(queue, 3)
    stats = queue.stats()
    assert stats.size == 3
    assert stats.lost_records == 0
    assert stats.segment_ids == (0,)
    assert stats.disk_bytes > 0
