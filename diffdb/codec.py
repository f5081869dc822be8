"""
Payload codec for staged objects.

Staged objects are stored as JSON produced by pydantic, so anything pydantic
can serialize (BaseModel instances, dataclasses, TypedDicts, plain dicts and
lists) can be staged. Apply callbacks receive a Payload, a lazy view that
decodes into whatever type the callback asks for.

Note:
    bytes fields are serialized as UTF-8 text by default. Models carrying
    binary data should set ser_json_bytes/val_json_bytes to "base64".
"""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from .errors import CodecError

T = TypeVar("T")


@lru_cache(maxsize=256)
def _adapter(tp: Any) -> TypeAdapter:
    return TypeAdapter(tp)


def encode(obj: Any) -> bytes:
    """Serialize obj for payload storage.

    Raises:
        CodecError: If pydantic cannot serialize the value
    """
    try:
        if isinstance(obj, BaseModel):
            return obj.model_dump_json().encode("utf-8")
        return _adapter(type(obj)).dump_json(obj)
    except (TypeError, ValueError) as e:
        raise CodecError(f"cannot encode {type(obj).__name__}: {e}", type(obj).__name__) from e


class Payload:
    """Encoded form of a staged object, handed to apply callbacks.

    Example:
        >>> async def export(object_id: bytes, payload: Payload) -> None:
        ...     order = payload.decode(Order)
        ...     await sink.write(order)
    """

    __slots__ = ("raw",)

    def __init__(self, raw: bytes) -> None:
        self.raw = raw

    def value(self) -> Any:
        """Decode into plain JSON types (dict, list, str, ...)."""
        try:
            return json.loads(self.raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CodecError(f"payload is not valid JSON: {e}") from e

    def decode(self, tp: type[T]) -> T:
        """Decode and validate into tp.

        Args:
            tp: A pydantic model, dataclass, or any type pydantic supports

        Raises:
            CodecError: If the payload does not validate as tp
        """
        name = getattr(tp, "__name__", repr(tp))
        try:
            if isinstance(tp, type) and issubclass(tp, BaseModel):
                return tp.model_validate_json(self.raw)
            return _adapter(tp).validate_json(self.raw)
        except ValidationError as e:
            raise CodecError(f"payload does not decode as {name}: {e}", name) from e

    def __len__(self) -> int:
        return len(self.raw)

    def __repr__(self) -> str:
        return f"Payload({len(self.raw)} bytes)"
