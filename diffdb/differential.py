"""
Differential change tracking.

A Differential tracks one logical collection of objects inside a named
namespace of a KVStore. It keeps six buckets:

    _m   ID -> content hash of the last successfully applied version
    _ph  ID -> content hash of the latest staged, unapplied version
    _pd  content hash -> encoded payload of a pending version
    _dk  ID -> marker, set while conflict tracking is enabled
    _ud  free-form user data, outside the change protocol
    _mo  persisted mode flags (conflict tracking)

Objects are staged with add()/add_tx()/add_stream(); only objects whose
content differs from both the committed and the pending version create a
pending entry. each_n()/each() later hand pending entries to a callback and
promote the ones it accepts.

Invariants:
    - A pending hash always has its payload in _pd
    - Staging content equal to the committed or pending version is a no-op
    - Superseding a pending version deletes the old payload
    - Committed hashes are written only by promotion and never deleted here
    - Conflict tracking is read from _mo inside the staging transaction,
      so it takes effect only once the enabling transaction has committed

How to change safely:
    - Keep every multi-bucket change inside one transaction
    - Bucket names are persisted; never rename them
    - Test supersession and conflict tracking with both store backends
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from typing import Any, Union

from . import codec
from .apply import ApplyFunc, ApplyResult, apply_pending
from .errors import ConflictingKeyError, NamespaceNotFoundError, OperationCancelled
from .hashing import hash_of
from .store.base import Bucket, BucketNotFoundError, KVStore, Transaction

logger = logging.getLogger(__name__)

BUCKET_HASHES = b"_m"
BUCKET_PENDING_HASHES = b"_ph"
BUCKET_PENDING_DATA = b"_pd"
BUCKET_USER_DATA = b"_ud"
BUCKET_KEY_CONFLICTS = b"_dk"
BUCKET_MODE = b"_mo"

# Buckets created when a differential is opened; _dk is created on demand.
BASE_BUCKETS = (
    BUCKET_HASHES,
    BUCKET_PENDING_HASHES,
    BUCKET_PENDING_DATA,
    BUCKET_USER_DATA,
    BUCKET_MODE,
)

MODE_TRACK_CONFLICTS = b"track_conflicts"

IdFunc = Callable[[Any], Union[bytes, str]]
ObjectSource = Union["asyncio.Queue[Any]", AsyncIterable[Any], Iterable[Any]]


def default_id(obj: Any) -> bytes | str:
    """Default ID accessor: obj.object_id()."""
    return obj.object_id()


def as_key(object_id: bytes | str) -> bytes:
    """Normalize an object ID to bytes (str IDs are UTF-8 encoded)."""
    if isinstance(object_id, str):
        return object_id.encode("utf-8")
    if isinstance(object_id, (bytes, bytearray, memoryview)):
        return bytes(object_id)
    raise TypeError(f"object ID must be bytes or str, got {type(object_id).__name__}")


def content_hash(object_id: bytes, obj: Any) -> bytes:
    """Hash an object's content together with its ID.

    Binding the ID into the digest keeps the payload bucket one-to-one with
    pending IDs even when two objects have identical content.
    """
    return hash_of((object_id, obj))


class Differential:
    """Tracks changes of serialisable objects identified by stable IDs.

    Thread safety:
        Safe for concurrent use from coroutines. Writers are serialized by
        the store; readers run concurrently.

    Example:
        >>> diff = await db.open("orders")
        >>> for order in load_orders():
        ...     await diff.add(order)
        >>> result = await diff.each(export_order)
        >>> result.raise_for_errors()
    """

    def __init__(self, store: KVStore, name: str, id_func: IdFunc | None = None) -> None:
        """Bind to an existing namespace. Use DiffDB.open() to create one.

        Args:
            store: Transactional store holding the namespace
            name: Namespace name
            id_func: ID accessor; defaults to obj.object_id()
        """
        self._store = store
        self._name = name
        self._ns = name.encode("utf-8")
        self._id_func = id_func or default_id

    @property
    def name(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"Differential({self._name!r})"

    def _bucket(self, tx: Transaction, name: bytes) -> Bucket:
        try:
            return tx.bucket(self._ns, name)
        except BucketNotFoundError:
            if not tx.namespace_exists(self._ns):
                raise NamespaceNotFoundError(self._name) from None
            raise

    # Conflict tracking

    async def must_not_conflict(self) -> None:
        """Reject duplicate IDs in subsequent stages.

        Starts a new epoch: existing conflict markers are deleted and every
        later add() of an ID already added in this epoch raises
        ConflictingKeyError. Useful as a debugging aid to check that one
        change version has no conflicting IDs.
        """
        async with self._store.update() as tx:
            mode = self._bucket(tx, BUCKET_MODE)
            try:
                tx.delete_bucket(self._ns, BUCKET_KEY_CONFLICTS)
            except BucketNotFoundError:
                pass
            tx.create_bucket(self._ns, BUCKET_KEY_CONFLICTS)
            mode.put(MODE_TRACK_CONFLICTS, b"1")

        logger.info("Conflict tracking enabled", extra={"differential": self._name})

    async def allow_conflicts(self) -> None:
        """Stop rejecting duplicate IDs and drop the epoch's markers."""
        async with self._store.update() as tx:
            self._bucket(tx, BUCKET_MODE).delete(MODE_TRACK_CONFLICTS)
            try:
                tx.delete_bucket(self._ns, BUCKET_KEY_CONFLICTS)
            except BucketNotFoundError:
                pass

        logger.info("Conflict tracking disabled", extra={"differential": self._name})

    async def conflict_tracking(self) -> bool:
        """Whether conflict tracking is enabled."""
        async with self._store.view() as tx:
            return self._tracks_conflicts(tx)

    def _tracks_conflicts(self, tx: Transaction) -> bool:
        return self._bucket(tx, BUCKET_MODE).get(MODE_TRACK_CONFLICTS) == b"1"

    # Staging

    def add_tx(self, tx: Transaction, obj: Any) -> bool:
        """Stage obj using an existing write transaction.

        The caller owns the transaction and decides whether to commit. A
        raised error leaves the transaction unchanged, so the caller may
        still commit the rest of its work.

        Args:
            tx: Open read-write transaction of this differential's store
            obj: Object to stage

        Returns:
            True if a new pending version was written, False if obj matches
            the committed or the pending version

        Raises:
            ConflictingKeyError: If conflict tracking is enabled and the ID
                was already added in this epoch
            HashingError: If obj cannot be hashed
            CodecError: If obj cannot be encoded
        """
        object_id = as_key(self._id_func(obj))
        tracking = self._tracks_conflicts(tx)

        if tracking and self._bucket(tx, BUCKET_KEY_CONFLICTS).get(object_id) is not None:
            raise ConflictingKeyError(object_id)

        digest = content_hash(object_id, obj)

        # Committed version is identical, nothing to do
        if self._bucket(tx, BUCKET_HASHES).get(object_id) == digest:
            return False

        pending = self._bucket(tx, BUCKET_PENDING_HASHES)
        payloads = self._bucket(tx, BUCKET_PENDING_DATA)

        previous = pending.get(object_id)
        # Identical to the version already waiting to be applied
        if previous == digest:
            return False

        # Encode before the first write so a failed stage changes nothing
        raw = codec.encode(obj)
        if previous is not None:
            payloads.delete(previous)
        pending.put(object_id, digest)
        payloads.put(digest, raw)

        if tracking:
            self._bucket(tx, BUCKET_KEY_CONFLICTS).put(object_id, b"")

        logger.debug(
            "Staged change",
            extra={
                "differential": self._name,
                "object_id": object_id.hex(),
                "hash": digest.hex(),
                "superseded": previous is not None,
            },
        )
        return True

    async def add(self, obj: Any) -> bool:
        """Stage obj as a pending change.

        Changes are tracked through the object's ID, which must identify it
        across versions (for an SQL row, its primary key). If the same ID is
        added several times before applying, only the latest version is
        applied.

        Returns:
            True if obj differs from its committed and pending versions
        """
        async with self._store.update() as tx:
            return self.add_tx(tx, obj)

    async def add_stream(self, source: ObjectSource, cancel: asyncio.Event | None = None) -> int:
        """Stage every object from source in one transaction.

        Consumption stops at a None item, when source is exhausted, or when
        cancel is set. The batch commits only when the stream ends normally;
        any staging error or cancellation rolls back everything staged in
        this call. Items already read from source stay consumed; a queue
        item read in the same turn as the cancellation is put back.

        Args:
            source: asyncio.Queue, async iterable or iterable of objects
            cancel: Optional event cancelling the stream between items

        Returns:
            Number of objects that created a new pending version

        Raises:
            OperationCancelled: If cancel was set before the stream ended
        """
        next_item = _item_reader(source)
        unread = source.put_nowait if isinstance(source, asyncio.Queue) else None
        updated = 0

        tx = await self._store.begin(writable=True)
        try:
            while True:
                try:
                    obj = await _next_or_cancel(next_item, cancel, unread)
                except StopAsyncIteration:
                    break
                if obj is None:
                    break
                if self.add_tx(tx, obj):
                    updated += 1
            tx.commit()
        except BaseException as e:
            tx.rollback()
            logger.warning(
                f"Discarded streamed batch: {e!r}",
                extra={"differential": self._name, "discarded": updated},
            )
            raise

        logger.info(
            "Staged streamed batch",
            extra={"differential": self._name, "updated": updated},
        )
        return updated

    # Queries

    async def changed(self, object_id: bytes | str, candidate: Any) -> bool:
        """Whether candidate differs from the committed version of object_id.

        Pending versions are ignored. Nothing is staged.
        """
        key = as_key(object_id)
        digest = content_hash(key, candidate)
        async with self._store.view() as tx:
            return self._bucket(tx, BUCKET_HASHES).get(key) != digest

    async def count_tracking(self) -> int:
        """Number of IDs with a committed version."""
        async with self._store.view() as tx:
            return self._bucket(tx, BUCKET_HASHES).count()

    async def count_changes(self) -> int:
        """Number of pending changes."""
        async with self._store.view() as tx:
            return self._bucket(tx, BUCKET_PENDING_HASHES).count()

    async def pending_ids(self) -> list[bytes]:
        """Pending IDs in the order each() would visit them."""
        async with self._store.view() as tx:
            return [object_id for object_id, _ in self._bucket(tx, BUCKET_PENDING_HASHES).cursor()]

    # Applying

    async def each_n(
        self,
        fn: ApplyFunc,
        n: int,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Apply pending changes until n of them have been promoted.

        Every pending change is passed to fn(object_id, payload). Changes fn
        accepts are promoted; failures are collected in the result and stay
        pending. All promotions commit together after the scan, including
        when the run is cancelled part way.

        Args:
            fn: Apply callback, sync or async
            n: Maximum promotions; <= 0 applies all pending changes
            cancel: Optional event stopping the scan between items

        Returns:
            ApplyResult; check result.error or call result.raise_for_errors()

        Raises:
            CorruptStateError: If stored state is inconsistent (nothing is
                committed)
            StoreError: If the transaction cannot be opened or committed
                (nothing is committed)
        """
        async with self._store.update() as tx:
            try:
                result = await apply_pending(
                    self._bucket(tx, BUCKET_HASHES),
                    self._bucket(tx, BUCKET_PENDING_HASHES),
                    self._bucket(tx, BUCKET_PENDING_DATA),
                    fn,
                    limit=n,
                    cancel=cancel,
                )
            except Exception as e:
                logger.error(
                    f"Apply aborted: {e}",
                    extra={"differential": self._name},
                )
                raise

        logger.info(
            "Applied pending changes",
            extra={
                "differential": self._name,
                "applied": len(result.applied),
                "failed": len(result.failures),
                "cancelled": result.cancelled,
            },
        )
        return result

    async def each(self, fn: ApplyFunc, cancel: asyncio.Event | None = None) -> ApplyResult:
        """Apply all pending changes. See each_n()."""
        return await self.each_n(fn, 0, cancel)

    # User data

    @asynccontextmanager
    async def view_user_data(self) -> AsyncIterator[Bucket]:
        """Read-only access to the user data bucket.

        Holds things like run times or the last exported version.
        """
        async with self._store.view() as tx:
            yield self._bucket(tx, BUCKET_USER_DATA)

    @asynccontextmanager
    async def update_user_data(self) -> AsyncIterator[Bucket]:
        """Read-write access to the user data bucket, committed on exit."""
        async with self._store.update() as tx:
            yield self._bucket(tx, BUCKET_USER_DATA)


def _item_reader(source: ObjectSource) -> Callable[[], Awaitable[Any]]:
    """Return a coroutine function producing the next item of source.

    Exhaustion is signalled with StopAsyncIteration.
    """
    if isinstance(source, asyncio.Queue):
        return source.get

    if isinstance(source, AsyncIterable):
        iterator = source.__aiter__()
        return iterator.__anext__

    sync_iterator = iter(source)

    async def next_item() -> Any:
        try:
            return next(sync_iterator)
        except StopIteration:
            raise StopAsyncIteration from None

    return next_item


async def _next_or_cancel(
    next_item: Callable[[], Awaitable[Any]],
    cancel: asyncio.Event | None,
    unread: Callable[[Any], None] | None = None,
) -> Any:
    """Wait for the next item or cancellation, whichever comes first.

    When both finish in the same loop turn the cancellation wins, and an
    item already taken from the source is handed to unread (if given) so
    it is not lost.
    """
    if cancel is None:
        return await next_item()
    if cancel.is_set():
        raise OperationCancelled("stream cancelled")

    getter = asyncio.ensure_future(next_item())
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (getter, waiter):
            if not task.done():
                task.cancel()

    if cancel.is_set():
        if unread is not None and getter.done() and not getter.cancelled():
            if getter.exception() is None:
                _put_back(unread, getter.result())
        raise OperationCancelled("stream cancelled")
    return getter.result()


def _put_back(unread: Callable[[Any], None], item: Any) -> None:
    try:
        unread(item)
    except asyncio.QueueFull:
        logger.warning("Queue full, dropped item read during cancellation")
