"""
diffdb - differential change tracking for incremental sync and export.

Given a stream of domain objects, diffdb stages only the objects whose
content changed since they were last applied, and later hands those staged
versions to a callback, promoting each one the callback accepts:

    caller ── add(obj) ──▶ hash & compare ──▶ pending (_ph/_pd)
                                                   │
    caller ── each(fn) ──▶ fn(id, payload) ◀───────┘
                                │
                     success ───┴──▶ committed (_m)
                     failure ──────▶ stays pending, reported in ApplyResult

Invariants:
    - Only content that differs from the committed and pending versions is
      staged
    - Promotion is atomic with the apply run's commit
    - Failed items stay pending for the next run

How to change safely:
    - Stored bucket names and the hash encoding are persistent formats
    - Keep the store protocol backend independent
"""

from ._version import __version__
from .apply import ApplyFunc, ApplyResult, ItemFailure
from .codec import Payload
from .config import Settings
from .db import DiffDB
from .differential import Differential
from .errors import (
    ApplyError,
    CodecError,
    ConflictingKeyError,
    CorruptStateError,
    DiffDbError,
    HashingError,
    NamespaceNotFoundError,
    OperationCancelled,
)
from .hashing import hash_of

__all__ = [
    "__version__",
    "DiffDB",
    "Differential",
    "Settings",
    "Payload",
    "ApplyFunc",
    "ApplyResult",
    "ItemFailure",
    "hash_of",
    "DiffDbError",
    "ConflictingKeyError",
    "HashingError",
    "CodecError",
    "ApplyError",
    "CorruptStateError",
    "NamespaceNotFoundError",
    "OperationCancelled",
]
