"""
StringCodec and BytesCodec — codecs for plain text and raw byte payloads.

Zero external dependencies.
"""

from __future__ import annotations

import dataclasses

from spoolq.domain.errors import CodecError


@dataclasses.dataclass(frozen=True)
class StringCodec:
    """
    Encodes str items as text bytes.

    Parameters
    ----------
    encoding : text encoding (default "utf-8")
    """

    encoding: str = "utf-8"

    def encode(self, value: str) -> bytes:
        if not isinstance(value, str):
            raise CodecError(f"StringCodec expects str, got {type(value).__name__}")
        try:
            return value.encode(self.encoding)
        except UnicodeEncodeError as exc:
            raise CodecError(f"cannot encode value as {self.encoding}: {exc}") from exc

    def decode(self, data: bytes) -> str:
        try:
            return data.decode(self.encoding)
        except UnicodeDecodeError as exc:
            raise CodecError(f"payload is not valid {self.encoding}: {exc}") from exc


@dataclasses.dataclass(frozen=True)
class BytesCodec:
    """Passes bytes through unchanged."""

    def encode(self, value: bytes) -> bytes:
        match value:
            case bytes():
                return value
            case bytearray() | memoryview():
                return bytes(value)
            case _:
                raise CodecError(
                    f"BytesCodec expects bytes, got {type(value).__name__}"
                )

    def decode(self, data: bytes) -> bytes:
        return bytes(data)
