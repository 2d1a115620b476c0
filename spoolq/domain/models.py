"""
Domain models for spoolq — backed by Pydantic v2.

Pydantic handles:
  - validation of configuration values (including strings read from a
    properties file or the environment)
  - parsing and rendering of the fsync policy string
  - immutable value types for cursors and statistics

All models are frozen (immutable). Mutations return new instances via
model_copy(update=...), following a functional-update style.
"""

import os
import re
from collections.abc import Mapping
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

MiB: int = 1024 * 1024

# Fixed on-disk sizes shared by the segment and queue modules.
HEADER_SIZE: int = 30
RECORD_OVERHEAD: int = 8  # u32 length prefix + u32 crc32

_INTERVAL_RE = re.compile(r"^interval_ms\s*=\s*(\d+)$")


class FsyncMode(str, Enum):
    """When appended records are forced to stable storage."""

    EVERY_RECORD = "every_record"
    INTERVAL = "interval"


class FsyncPolicy(BaseModel):
    """
    Parsed form of the ``fsync_policy`` option.

    "every_record"      — fsync after each append (nothing lost on crash)
    "interval_ms=<n>"   — fsync every n milliseconds from a background thread
                          (at most n ms of appends lost on crash)
    """

    model_config = ConfigDict(frozen=True)

    mode: FsyncMode = FsyncMode.EVERY_RECORD
    interval_ms: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_interval(self) -> "FsyncPolicy":
        if self.mode is FsyncMode.INTERVAL and self.interval_ms is None:
            raise ValueError("interval fsync policy requires interval_ms")
        if self.mode is FsyncMode.EVERY_RECORD and self.interval_ms is not None:
            raise ValueError("every_record fsync policy takes no interval_ms")
        return self

    @classmethod
    def parse(cls, text: str) -> "FsyncPolicy":
        """Parse "every_record" or "interval_ms=<n>"."""
        value = text.strip()
        if value == FsyncMode.EVERY_RECORD.value:
            return cls()
        match = _INTERVAL_RE.match(value)
        if match is None:
            raise ValueError(
                f"fsync_policy must be 'every_record' or 'interval_ms=<n>', got {text!r}"
            )
        return cls(mode=FsyncMode.INTERVAL, interval_ms=int(match.group(1)))

    @property
    def interval(self) -> timedelta | None:
        """Flush period for the interval policy, None for every_record."""
        if self.interval_ms is None:
            return None
        return timedelta(milliseconds=self.interval_ms)

    def __str__(self) -> str:
        if self.mode is FsyncMode.EVERY_RECORD:
            return FsyncMode.EVERY_RECORD.value
        return f"interval_ms={self.interval_ms}"


class QueueConfig(BaseModel):
    """
    Configuration for a FileBlockingQueue.

    spool_path              — directory holding segments, cursor and lock file
    segment_max_bytes       — soft cap that triggers rollover (default 100 MiB)
    disk_max_bytes          — hard cap on total segment bytes; offer() returns
                              False once a record would exceed it
    fsync_policy            — "every_record" or "interval_ms=<n>"
    poll_default_timeout_ms — wait used by poll() when no timeout is given
    """

    model_config = ConfigDict(frozen=True)

    spool_path: Path
    segment_max_bytes: int = Field(default=100 * MiB, gt=HEADER_SIZE + RECORD_OVERHEAD)
    disk_max_bytes: int = Field(default=1024 * MiB, gt=0)
    fsync_policy: FsyncPolicy = Field(default_factory=FsyncPolicy)
    poll_default_timeout_ms: int = Field(default=1000, ge=0)

    @field_validator("fsync_policy", mode="before")
    @classmethod
    def _parse_fsync_policy(cls, v: Any) -> Any:
        """Accept the textual form used by properties files and env vars."""
        match v:
            case str():
                return FsyncPolicy.parse(v)
            case _:
                return v

    @field_serializer("fsync_policy")
    def _render_fsync_policy(self, v: FsyncPolicy) -> str:
        return str(v)

    @model_validator(mode="after")
    def _check_limits(self) -> "QueueConfig":
        if self.disk_max_bytes < self.segment_max_bytes:
            raise ValueError(
                "disk_max_bytes must be at least segment_max_bytes "
                f"({self.disk_max_bytes} < {self.segment_max_bytes})"
            )
        return self

    @property
    def poll_default_timeout(self) -> timedelta:
        return timedelta(milliseconds=self.poll_default_timeout_ms)

    @classmethod
    def from_env(
        cls,
        prefix: str = "SPOOLQ_",
        environ: Mapping[str, str] | None = None,
    ) -> "QueueConfig":
        """
        Build a config from environment variables.

        Each field is read from ``<prefix><FIELD_NAME>`` (upper case), e.g.
        SPOOLQ_SPOOL_PATH or SPOOLQ_FSYNC_POLICY. Unset variables keep the
        field default.
        """
        env = os.environ if environ is None else environ
        values = {
            name: env[f"{prefix}{name.upper()}"]
            for name in cls.model_fields
            if f"{prefix}{name.upper()}" in env
        }
        return cls.model_validate(values)


class Cursor(BaseModel):
    """
    A position in the spool: the next byte to consume.

    segment_id — id of the segment holding the head record
    offset     — byte offset just past the last consumed record's CRC
    """

    model_config = ConfigDict(frozen=True)

    segment_id: int = Field(ge=0)
    offset: int = Field(ge=HEADER_SIZE)

    @classmethod
    def start_of(cls, segment_id: int) -> "Cursor":
        """Cursor at the first record of a segment."""
        return cls(segment_id=segment_id, offset=HEADER_SIZE)

    def at(self, offset: int) -> "Cursor":
        """Return a new Cursor in the same segment at a different offset."""
        return self.model_copy(update={"offset": offset})

    def next_segment(self) -> "Cursor":
        """Return a Cursor at the start of the following segment."""
        return Cursor.start_of(self.segment_id + 1)


class QueueStats(BaseModel):
    """Point-in-time snapshot of a queue's bookkeeping."""

    model_config = ConfigDict(frozen=True)

    size: int
    lost_records: int
    read_position: Cursor
    committed_position: Cursor
    segment_ids: tuple[int, ...]
    disk_bytes: int
