"""
IntervalFlusher — background fsync for the "interval_ms=<n>" policy.

With interval fsync, appends are written to the page cache only. A daemon
thread calls target.sync() every `interval`, bounding the window of records
that a crash can lose to roughly one interval.

Usage
-----
    flusher = IntervalFlusher(queue, interval=timedelta(milliseconds=200))
    flusher.start()
    ...
    flusher.stop()   # wakes the thread, runs one final sync(), joins

IntervalFlusher is typed against the structural Protocol _HasSync, so it
works with FileBlockingQueue or a bare Segment without any shared base class.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import timedelta
from types import TracebackType
from typing import Protocol

from spoolq.domain.errors import QueueClosedError, StorageError

logger = logging.getLogger(__name__)


class _HasSync(Protocol):
    """Anything with a sync() method."""

    def sync(self) -> object: ...


@dataclasses.dataclass
class IntervalFlusher:
    """
    Periodically flushes a target to stable storage.

    Parameters
    ----------
    target   : any object with sync()
    interval : time between flushes
    """

    target: _HasSync
    interval: timedelta

    _stop: threading.Event = dataclasses.field(
        default_factory=threading.Event, init=False, repr=False
    )
    _thread: threading.Thread | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.interval <= timedelta(0):
            raise ValueError(f"interval must be positive, got {self.interval}")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background flush thread."""
        if self._thread is not None:
            raise RuntimeError("IntervalFlusher is already running")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="spoolq-interval-flusher", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Signal shutdown and wait for the final flush."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def __enter__(self) -> "IntervalFlusher":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.stop()

    def _run(self) -> None:
        seconds = self.interval.total_seconds()
        while True:
            stopping = self._stop.wait(seconds)
            try:
                self.target.sync()
            except QueueClosedError:
                # Target closed underneath us; close() already flushed.
                return
            except StorageError:
                logger.exception("Periodic fsync failed; retrying next interval")
            if stopping:
                return
