"""
Error types for diffdb.

This module defines the exception types raised by the differential engine:
- DiffDbError: Base exception
- ConflictingKeyError: Same ID staged twice in one conflict-tracking epoch
- HashingError: Value cannot be structurally hashed
- CodecError: Value cannot be encoded/decoded as a payload
- ApplyError: Aggregated per-item failures of an apply run
- OperationCancelled: Streaming stage was cancelled
- CorruptStateError: Pending hash without payload data

Storage failures are defined next to the store protocol in store/base.py
and share the DiffDbError base.

Invariants:
    - All errors inherit from DiffDbError
    - Errors carry a stable code for programmatic handling
    - CorruptStateError is never collected as a per-item failure
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

if TYPE_CHECKING:
    from .apply import ItemFailure


class DiffDbError(Exception):
    """Base exception for all diffdb errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DIFFDB_ERROR"
        self.details = details or {}


class ConflictingKeyError(DiffDbError):
    """Multiple objects with the same ID were added in the same epoch.

    Raised only while conflict tracking is enabled. No state is changed
    by the rejected stage.
    """

    def __init__(self, object_id: bytes) -> None:
        super().__init__(
            f"multiple objects with the same ID were added in the same epoch: {object_id!r}",
            code="CONFLICTING_KEY",
            details={"object_id": object_id},
        )
        self.object_id = object_id


class HashingError(DiffDbError):
    """Value contains structure that cannot be hashed.

    Raised when:
    - A reference cycle is found
    - A value of an unsupported type is found
    """

    def __init__(self, message: str, path: str = "$") -> None:
        super().__init__(
            f"{message} at {path}",
            code="HASHING_ERROR",
            details={"path": path},
        )
        self.path = path


class CodecError(DiffDbError):
    """Payload could not be encoded or decoded."""

    def __init__(self, message: str, type_name: Optional[str] = None) -> None:
        super().__init__(message, code="CODEC_ERROR", details={"type": type_name})
        self.type_name = type_name


class NamespaceNotFoundError(DiffDbError):
    """Named differential does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Differential not found: {name}",
            code="NAMESPACE_NOT_FOUND",
            details={"name": name},
        )
        self.name = name


class OperationCancelled(DiffDbError):
    """A cancellable operation observed its cancellation signal."""

    def __init__(self, message: str = "operation cancelled") -> None:
        super().__init__(message, code="CANCELLED")


class CorruptStateError(DiffDbError):
    """Pending hash has no payload data.

    This signals a broken invariant in the stored state rather than a
    runtime failure. The surrounding transaction is never committed.
    """

    def __init__(self, object_id: bytes, content_hash: bytes) -> None:
        super().__init__(
            f"missing payload for pending hash {content_hash.hex()} of {object_id!r}",
            code="CORRUPT_STATE",
            details={"object_id": object_id, "hash": content_hash.hex()},
        )
        self.object_id = object_id
        self.content_hash = content_hash


class ApplyError(DiffDbError):
    """One or more pending changes could not be applied.

    Attributes:
        failures: (object_id, error) records in apply order
        cancelled: Whether the run stopped on its cancellation signal
    """

    def __init__(self, failures: Sequence[ItemFailure], cancelled: bool = False) -> None:
        parts = [f"{f.object_id!r}: {f.error}" for f in failures]
        if cancelled:
            parts.append("apply cancelled")
        noun = "error" if len(parts) == 1 else "errors"
        message = f"{len(parts)} {noun} occurred during apply:\n\t* " + "\n\t* ".join(parts)

        super().__init__(
            message,
            code="APPLY_ERROR",
            details={
                "failed_ids": [f.object_id for f in failures],
                "cancelled": cancelled,
            },
        )
        self.failures = list(failures)
        self.cancelled = cancelled

    @property
    def failed_ids(self) -> list[bytes]:
        """IDs that remain pending and can be retried."""
        return [f.object_id for f in self.failures]
