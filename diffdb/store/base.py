"""
Base protocol and types for the transactional key-value store.

The differential engine never talks to a concrete database. It is written
against the capability defined here:
- A KVStore hands out read or read-write transactions
- A Transaction manages namespaces and the buckets inside them
- A Bucket is an ordered bytes -> bytes map with a forward cursor

Invariants:
    - At most one read-write transaction is open per store at a time
    - Cursors iterate keys in ascending lexicographic byte order
    - Nothing written in a transaction is visible outside it before commit
    - A rolled back or failed transaction leaves no partial effect

How to change safely:
    - Protocol changes require updating all implementations
    - Keep cursor iteration tolerant of deletes made during the scan
    - Run the shared store tests against every backend
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager
from typing import Protocol, runtime_checkable

from ..errors import DiffDbError

logger = logging.getLogger(__name__)


class StoreError(DiffDbError):
    """Base exception for store operations."""

    def __init__(self, message: str, code: str = "STORE_ERROR") -> None:
        super().__init__(message, code=code)


class BucketNotFoundError(StoreError):
    """Bucket or namespace does not exist."""

    def __init__(self, namespace: bytes, name: bytes | None = None) -> None:
        target = namespace if name is None else b"/".join((namespace, name))
        super().__init__(f"bucket not found: {target!r}", code="BUCKET_NOT_FOUND")
        self.namespace = namespace
        self.name = name


class BucketExistsError(StoreError):
    """Bucket or namespace already exists."""

    def __init__(self, namespace: bytes, name: bytes | None = None) -> None:
        target = namespace if name is None else b"/".join((namespace, name))
        super().__init__(f"bucket already exists: {target!r}", code="BUCKET_EXISTS")


class TransactionClosedError(StoreError):
    """Transaction was used after commit or rollback."""

    def __init__(self) -> None:
        super().__init__("transaction is closed", code="TX_CLOSED")


class ReadOnlyTransactionError(StoreError):
    """Write attempted through a read-only transaction."""

    def __init__(self) -> None:
        super().__init__("transaction is read-only", code="TX_READ_ONLY")


class CommitError(StoreError):
    """Commit did not complete; nothing from the transaction was persisted."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="COMMIT_FAILED")


@runtime_checkable
class Bucket(Protocol):
    """Ordered bytes -> bytes map scoped to one transaction."""

    def get(self, key: bytes) -> bytes | None:
        """Return the value for key, or None when absent."""
        ...

    def put(self, key: bytes, value: bytes) -> None:
        """Set key to value, overwriting any previous value."""
        ...

    def delete(self, key: bytes) -> None:
        """Remove key. Deleting a missing key is not an error."""
        ...

    def cursor(self) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs in ascending key order.

        Deleting or overwriting the current key while iterating is
        allowed and does not disturb the rest of the scan.
        """
        ...

    def count(self) -> int:
        """Number of keys in the bucket."""
        ...


class Transaction(ABC):
    """A read-only or read-write transaction.

    Subclasses implement the storage specific pieces; this base class keeps
    the lifecycle bookkeeping (closed flag, commit hooks, writer release)
    identical for every backend.
    """

    def __init__(self, writable: bool, release: Callable[[], None] | None = None) -> None:
        self.writable = writable
        self.closed = False
        self._release = release
        self._commit_hooks: list[Callable[[], None]] = []

    # Lifecycle

    def commit(self) -> None:
        """Persist all changes and close the transaction.

        Raises:
            ReadOnlyTransactionError: If the transaction is read-only
            CommitError: If the backend fails to persist; the transaction
                is rolled back and closed
        """
        self._check_open()
        if not self.writable:
            raise ReadOnlyTransactionError()
        try:
            self._commit()
        except Exception as e:
            self._close(rolled_back=True)
            if isinstance(e, CommitError):
                raise
            raise CommitError(f"commit failed: {e}") from e

        self._close(rolled_back=False)
        for hook in self._commit_hooks:
            hook()

    def rollback(self) -> None:
        """Discard all changes and close. No-op on a closed transaction."""
        if self.closed:
            return
        self._close(rolled_back=True)

    def on_commit(self, fn: Callable[[], None]) -> None:
        """Register fn to run after a successful commit.

        Part of the store capability for callers composing their own
        transactions; diffdb itself keeps all state in buckets.
        """
        self._check_open()
        self._commit_hooks.append(fn)

    def _close(self, rolled_back: bool) -> None:
        try:
            if rolled_back:
                self._rollback()
        finally:
            self.closed = True
            if self._release is not None:
                release, self._release = self._release, None
                release()

    def _check_open(self) -> None:
        if self.closed:
            raise TransactionClosedError()

    def _check_writable(self) -> None:
        self._check_open()
        if not self.writable:
            raise ReadOnlyTransactionError()

    # Namespaces and buckets

    @abstractmethod
    def namespace_exists(self, namespace: bytes) -> bool: ...

    @abstractmethod
    def namespaces(self) -> list[bytes]: ...

    @abstractmethod
    def create_namespace(self, namespace: bytes, exist_ok: bool = False) -> None: ...

    @abstractmethod
    def delete_namespace(self, namespace: bytes) -> None:
        """Delete a namespace with all of its buckets.

        Raises:
            BucketNotFoundError: If the namespace does not exist
        """
        ...

    @abstractmethod
    def bucket(self, namespace: bytes, name: bytes) -> Bucket:
        """Return a handle to an existing bucket.

        Raises:
            BucketNotFoundError: If the namespace or bucket does not exist
        """
        ...

    @abstractmethod
    def create_bucket(self, namespace: bytes, name: bytes, exist_ok: bool = False) -> Bucket: ...

    @abstractmethod
    def delete_bucket(self, namespace: bytes, name: bytes) -> None: ...

    # Backend hooks

    @abstractmethod
    def _commit(self) -> None: ...

    @abstractmethod
    def _rollback(self) -> None: ...


class KVStore(ABC):
    """Transactional store handing out one writer at a time.

    Write transactions are serialized with an asyncio lock: begin(True)
    waits until the previous writer commits or rolls back. Read
    transactions never take the lock.

    Example:
        >>> async with store.update() as tx:
        ...     tx.create_namespace(b"orders", exist_ok=True)
        >>> async with store.view() as tx:
        ...     tx.namespace_exists(b"orders")
        True
    """

    def __init__(self) -> None:
        self._write_lock = asyncio.Lock()

    async def begin(self, writable: bool = False) -> Transaction:
        """Start a transaction.

        Args:
            writable: Whether the transaction may write

        Returns:
            Open Transaction; the caller must commit or roll it back
        """
        if not writable:
            return self._open_transaction(False, None)

        await self._write_lock.acquire()
        try:
            return self._open_transaction(True, self._write_lock.release)
        except BaseException:
            self._write_lock.release()
            raise

    @asynccontextmanager
    async def view(self) -> AsyncIterator[Transaction]:
        """Read-only transaction, always rolled back on exit."""
        tx = await self.begin(writable=False)
        try:
            yield tx
        finally:
            tx.rollback()

    @asynccontextmanager
    async def update(self) -> AsyncIterator[Transaction]:
        """Read-write transaction committed on clean exit.

        Any exception raised inside the block rolls the transaction back
        and propagates.
        """
        tx = await self.begin(writable=True)
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        if not tx.closed:
            tx.commit()

    @abstractmethod
    def _open_transaction(
        self, writable: bool, release: Callable[[], None] | None
    ) -> Transaction: ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...
