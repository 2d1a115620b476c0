"""
Codec — the single port in spoolq.

Any object with matching encode() and decode() methods converts queue items
to and from bytes; nothing has to subclass or register anything.

Contract
--------
encode(value)
  - total and deterministic: the same value always yields the same bytes
  - may raise CodecError for values outside the codec's domain

decode(data)
  - inverse of encode: decode(encode(v)) == v
  - raises CodecError on malformed input (never a bare ValueError)

The codec never writes framing. Length prefixes and checksums are added by
the segment file.
"""

from __future__ import annotations

from typing import Protocol, TypeVar, runtime_checkable

T = TypeVar("T")


@runtime_checkable
class Codec(Protocol[T]):
    """
    Minimal interface required by FileBlockingQueue.

    Implementing adapters (built-in):
      - StringCodec — str ↔ encoded text
      - BytesCodec  — bytes passed through unchanged
      - ModelCodec  — pydantic model ↔ compact JSON
    """

    def encode(self, value: T) -> bytes:
        """Serialize one queue item."""
        ...

    def decode(self, data: bytes) -> T:
        """
        Deserialize one queue item.

        Raises
        ------
        CodecError  if `data` is not a valid encoding
        """
        ...
