"""
ModelCodec — serialize pydantic v2 models to and from compact JSON.

Pydantic handles the full wire format automatically:
  - bytes fields are encoded as base64 strings when the model says so
  - datetime fields are serialized as ISO-8601 strings
  - Enum values are serialized as their values
  - nested models are recursively serialized

Wire format (produced by model_dump_json):
------------------------------------------
{"event":"page_view","host":"web-1","ts":"2024-01-01T00:00:00Z"}
"""

from __future__ import annotations

import dataclasses
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from spoolq.domain.errors import CodecError

M = TypeVar("M", bound=BaseModel)


@dataclasses.dataclass(frozen=True)
class ModelCodec(Generic[M]):
    """
    Codec for a single pydantic model type.

    Parameters
    ----------
    model : the BaseModel subclass every queue item is an instance of
    """

    model: type[M]

    def encode(self, value: M) -> bytes:
        """Serialize a model instance to UTF-8 JSON bytes."""
        if not isinstance(value, self.model):
            raise CodecError(
                f"ModelCodec[{self.model.__name__}] cannot encode {type(value).__name__}"
            )
        return value.model_dump_json().encode("utf-8")

    def decode(self, data: bytes) -> M:
        """Deserialize UTF-8 JSON bytes to a model instance."""
        try:
            return self.model.model_validate_json(data)
        except ValidationError as exc:
            raise CodecError(
                f"payload is not a valid {self.model.__name__}: {exc}"
            ) from exc
