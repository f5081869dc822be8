"""
Transactional key-value store abstraction for diffdb.

This module provides a pluggable store interface supporting:
- SQLite (persistent, one file per DiffDB)
- In-memory (for testing)

Invariants:
    - One read-write transaction at a time per store
    - Cursor iteration is in ascending key byte order
    - Failed commits leave no partial writes

How to change safely:
    - New backends must subclass KVStore and Transaction
    - Run tests/unit/test_store.py against the new backend
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import (
    Bucket,
    BucketExistsError,
    BucketNotFoundError,
    CommitError,
    KVStore,
    ReadOnlyTransactionError,
    StoreError,
    Transaction,
    TransactionClosedError,
)
from .memory import MemoryStore
from .sqlite import SqliteStore

if TYPE_CHECKING:
    from ..config import Settings


def create_store(settings: Settings) -> KVStore:
    """Factory function to create a store from configuration.

    Args:
        settings: diffdb settings

    Returns:
        Appropriate KVStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    if settings.backend == "sqlite":
        return SqliteStore(
            settings.data_path,
            wal_mode=settings.wal_mode,
            busy_timeout_ms=settings.busy_timeout_ms,
            cache_size_pages=settings.cache_size_pages,
            cursor_page_size=settings.cursor_page_size,
        )
    elif settings.backend == "memory":
        return MemoryStore()
    else:
        raise ValueError(f"Unsupported store backend: {settings.backend}")


__all__ = [
    # Protocol and types
    "KVStore",
    "Transaction",
    "Bucket",
    "StoreError",
    "BucketNotFoundError",
    "BucketExistsError",
    "TransactionClosedError",
    "ReadOnlyTransactionError",
    "CommitError",
    # Factory
    "create_store",
    # Implementations
    "SqliteStore",
    "MemoryStore",
]
