"""
Structural content hashing.

hash_of() reduces a value to a canonical, type-tagged byte form and digests
it with 8-byte BLAKE2b. Equal content always gives an equal digest, in this
process and any other; unequal content gives a different digest with high
(but not cryptographic) probability.

Supported values:
    - None, bool, int, float, str, bytes-like
    - list and tuple (ordered; a tuple hashes like the equal list)
    - set and frozenset, dict and other mappings (order independent)
    - dataclass instances (declared fields; fields whose metadata has
      {"hash": "ignore"} are skipped)
    - pydantic models, Enum members, datetime/date/time, UUID, Decimal

Anything else, and any reference cycle, raises HashingError.

Invariants:
    - Never uses Python's salted hash(); digests are stable across processes
    - Every value is length or count prefixed, so concatenations are
      unambiguous

How to change safely:
    - Any change to the encoding changes every digest and makes every
      tracked object look changed once; bump DIGEST_VERSION when doing so
"""

from __future__ import annotations

import dataclasses
import datetime
import decimal
import enum
import hashlib
import struct
import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from .errors import HashingError

DIGEST_SIZE = 8
DIGEST_VERSION = 1


def hash_of(value: Any) -> bytes:
    """Compute the content hash of value.

    Args:
        value: Any supported value

    Returns:
        DIGEST_SIZE bytes

    Raises:
        HashingError: If value contains a cycle or an unsupported type
    """
    canonical = _encode(value, "$", set())
    return hashlib.blake2b(
        canonical,
        digest_size=DIGEST_SIZE,
        person=b"diffdb:%d" % DIGEST_VERSION,
    ).digest()


def _frame(tag: bytes, body: bytes) -> bytes:
    return tag + str(len(body)).encode() + b":" + body


def _encode(value: Any, path: str, active: set[int]) -> bytes:
    # Scalars first; bool before int since bool is an int subclass
    if value is None:
        return b"N"
    if isinstance(value, bool):
        return b"T" if value else b"F"
    if isinstance(value, enum.Enum):
        return _frame(b"e", _encode(value.value, path, active))
    if isinstance(value, int):
        return _frame(b"i", str(value).encode())
    if isinstance(value, float):
        return _frame(b"f", struct.pack(">d", value))
    if isinstance(value, str):
        return _frame(b"s", value.encode("utf-8", "surrogatepass"))
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _frame(b"b", bytes(value))
    if isinstance(value, decimal.Decimal):
        return _frame(b"d", str(value).encode())
    if isinstance(value, uuid.UUID):
        return _frame(b"u", value.bytes)
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return _frame(b"t", value.isoformat().encode())

    # Containers
    marker = id(value)
    if marker in active:
        raise HashingError("reference cycle", path)
    active.add(marker)
    try:
        return _encode_container(value, path, active)
    finally:
        active.discard(marker)


def _encode_container(value: Any, path: str, active: set[int]) -> bytes:
    if isinstance(value, BaseModel):
        try:
            dumped = value.model_dump()
        except ValueError as e:
            raise HashingError(f"cannot dump {type(value).__name__}: {e}", path) from e
        return _encode_mapping(dumped, path, active)

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        parts = []
        for f in dataclasses.fields(value):
            if f.metadata.get("hash") == "ignore":
                continue
            parts.append(_frame(b"k", f.name.encode()))
            parts.append(_encode(getattr(value, f.name), f"{path}.{f.name}", active))
        return _frame(b"o", b"".join(parts))

    if isinstance(value, Mapping):
        return _encode_mapping(value, path, active)

    if isinstance(value, (list, tuple)):
        parts = [_encode(item, f"{path}[{i}]", active) for i, item in enumerate(value)]
        return _frame(b"l", b"".join(parts))

    if isinstance(value, (set, frozenset)):
        parts = sorted(_encode(item, f"{path}{{}}", active) for item in value)
        return _frame(b"S", b"".join(parts))

    raise HashingError(f"unsupported type {type(value).__name__}", path)


def _encode_mapping(value: Mapping, path: str, active: set[int]) -> bytes:
    entries = []
    for key, item in value.items():
        encoded_key = _encode(key, f"{path}[{key!r}]", active)
        encoded_item = _encode(item, f"{path}[{key!r}]", active)
        entries.append(_frame(b"p", encoded_key + encoded_item))
    entries.sort()
    return _frame(b"m", b"".join(entries))
