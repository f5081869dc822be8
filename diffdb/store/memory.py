"""
In-memory transactional store implementation.

This module provides a KVStore that keeps everything in process memory for:
- Unit tests
- Local development without a data directory
- Short-lived differentials that do not need to survive a restart

Invariants:
    - All data is lost when the store is dropped
    - Committed state is never mutated in place; a write transaction works
      on its own copy and swaps it in on commit
    - Readers see the committed state as of their begin()

How to change safely:
    - Keep behaviour identical to SqliteStore; the shared store tests run
      against both
    - Testing helpers must not be needed by production code paths
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator

from .base import (
    BucketExistsError,
    BucketNotFoundError,
    CommitError,
    KVStore,
    Transaction,
)

logger = logging.getLogger(__name__)

_Data = dict[bytes, dict[bytes, dict[bytes, bytes]]]


class MemoryBucket:
    """Bucket backed by a plain dict owned by one transaction."""

    def __init__(self, tx: MemoryTransaction, items: dict[bytes, bytes]) -> None:
        self._tx = tx
        self._items = items

    def get(self, key: bytes) -> bytes | None:
        self._tx._check_open()
        return self._items.get(bytes(key))

    def put(self, key: bytes, value: bytes) -> None:
        self._tx._check_writable()
        self._items[bytes(key)] = bytes(value)

    def delete(self, key: bytes) -> None:
        self._tx._check_writable()
        self._items.pop(bytes(key), None)

    def cursor(self) -> Iterator[tuple[bytes, bytes]]:
        self._tx._check_open()
        for key in sorted(self._items):
            self._tx._check_open()
            value = self._items.get(key)
            if value is not None:
                yield key, value

    def count(self) -> int:
        self._tx._check_open()
        return len(self._items)


class MemoryTransaction(Transaction):
    """Transaction over a private copy (writers) or a snapshot (readers)."""

    def __init__(
        self,
        store: MemoryStore,
        writable: bool,
        release: Callable[[], None] | None,
    ) -> None:
        super().__init__(writable, release)
        self._store = store
        if writable:
            self._data: _Data = {
                ns: {name: dict(items) for name, items in buckets.items()}
                for ns, buckets in store._data.items()
            }
        else:
            self._data = store._data

    def namespace_exists(self, namespace: bytes) -> bool:
        self._check_open()
        return namespace in self._data

    def namespaces(self) -> list[bytes]:
        self._check_open()
        return sorted(self._data)

    def create_namespace(self, namespace: bytes, exist_ok: bool = False) -> None:
        self._check_writable()
        if namespace in self._data:
            if exist_ok:
                return
            raise BucketExistsError(namespace)
        self._data[namespace] = {}

    def delete_namespace(self, namespace: bytes) -> None:
        self._check_writable()
        if namespace not in self._data:
            raise BucketNotFoundError(namespace)
        del self._data[namespace]

    def bucket(self, namespace: bytes, name: bytes) -> MemoryBucket:
        self._check_open()
        try:
            return MemoryBucket(self, self._data[namespace][name])
        except KeyError:
            raise BucketNotFoundError(namespace, name) from None

    def create_bucket(self, namespace: bytes, name: bytes, exist_ok: bool = False) -> MemoryBucket:
        self._check_writable()
        buckets = self._data.get(namespace)
        if buckets is None:
            raise BucketNotFoundError(namespace)
        if name in buckets:
            if not exist_ok:
                raise BucketExistsError(namespace, name)
        else:
            buckets[name] = {}
        return MemoryBucket(self, buckets[name])

    def delete_bucket(self, namespace: bytes, name: bytes) -> None:
        self._check_writable()
        buckets = self._data.get(namespace)
        if buckets is None or name not in buckets:
            raise BucketNotFoundError(namespace, name)
        del buckets[name]

    def _commit(self) -> None:
        failure = self._store._pending_failure
        if failure is not None:
            self._store._pending_failure = None
            raise failure
        self._store._data = self._data

    def _rollback(self) -> None:
        self._data = {}


class MemoryStore(KVStore):
    """In-memory implementation of KVStore.

    Example:
        >>> store = MemoryStore()
        >>> async with store.update() as tx:
        ...     tx.create_namespace(b"users")
        ...     tx.create_bucket(b"users", b"_m").put(b"alice", b"\\x01")
    """

    def __init__(self) -> None:
        super().__init__()
        self._data: _Data = {}
        self._pending_failure: Exception | None = None

    def _open_transaction(
        self, writable: bool, release: Callable[[], None] | None
    ) -> MemoryTransaction:
        return MemoryTransaction(self, writable, release)

    async def close(self) -> None:
        """Drop all data."""
        self._data = {}
        logger.debug("MemoryStore closed")

    # Testing helpers

    def fail_next_commit(self, error: Exception | None = None) -> None:
        """Make the next write commit fail (testing helper).

        Args:
            error: Exception to raise from the backend; defaults to a
                CommitError
        """
        self._pending_failure = error or CommitError("injected commit failure")
