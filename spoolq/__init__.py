"""
spoolq — durable, file-backed blocking queue.

A local, crash-safe spool for an event-shipping client: producers append
typed items, a single consumer drains them in FIFO order, and everything
enqueued but not yet consumed survives a process restart.

The spool is an append-only log split across rolling segment files, plus a
separately persisted read cursor. Fully consumed segments are deleted as the
cursor moves past them; a torn record left by a crash mid-append is truncated
when the queue is reopened.

Quick start
-----------
    from datetime import timedelta
    from spoolq import FileBlockingQueue, QueueConfig, StringCodec

    config = QueueConfig(spool_path="/var/spool/events", fsync_policy="interval_ms=200")

    with FileBlockingQueue(config, StringCodec()) as q:
        q.offer("page_view user=42")

        # Consumer thread
        item = q.poll(timedelta(seconds=5))    # None on timeout

        # Or: iterate, committing the cursor only once the backlog is drained
        for item in q:
            send(item)

Codecs
------
Built-in codecs (no extra deps beyond pydantic):
  - StringCodec  — str items
  - BytesCodec   — raw bytes items
  - ModelCodec   — pydantic models as compact JSON

Custom codecs only need to implement the two-method Codec protocol:
  def encode(value) -> bytes
  def decode(data: bytes) -> value      # raise CodecError on bad input

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/   — configuration and value types (QueueConfig, Cursor, errors)
  ports/    — Protocol interfaces (Codec)
  core/     — segment files, cursor store, directory lock, FileBlockingQueue
  adapters/ — concrete codec implementations
"""
from __future__ import annotations

from spoolq.adapters.codec.model import ModelCodec
from spoolq.adapters.codec.text import BytesCodec, StringCodec
from spoolq.core.queue import FileBlockingQueue, QueueIterator
from spoolq.domain.errors import (
    CodecError,
    CorruptSegmentError,
    DiskFullError,
    LockedError,
    QueueClosedError,
    QueueInterruptedError,
    SegmentFullError,
    SpoolError,
    StorageError,
)
from spoolq.domain.models import Cursor, FsyncMode, FsyncPolicy, QueueConfig, QueueStats
from spoolq.ports.codec import Codec

__all__ = [
    # Configuration and value types
    "QueueConfig",
    "FsyncPolicy",
    "FsyncMode",
    "Cursor",
    "QueueStats",
    # Errors
    "SpoolError",
    "LockedError",
    "CorruptSegmentError",
    "SegmentFullError",
    "CodecError",
    "StorageError",
    "DiskFullError",
    "QueueInterruptedError",
    "QueueClosedError",
    # Port (for typing custom codecs)
    "Codec",
    # Queue API
    "FileBlockingQueue",
    "QueueIterator",
    # Built-in codecs
    "StringCodec",
    "BytesCodec",
    "ModelCodec",
]
