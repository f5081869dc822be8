"""
Unit tests for Differential staging, queries and conflict tracking.

Every test runs against MemoryStore and SqliteStore.

Tests cover:
- Stage idempotency and supersession
- Changed/count queries
- Conflict tracking epochs
- Streaming stage commit and rollback
- User data access
"""

import asyncio
from dataclasses import dataclass, field

import pytest

from diffdb import hash_of
from diffdb.differential import (
    BUCKET_HASHES,
    BUCKET_PENDING_DATA,
    BUCKET_PENDING_HASHES,
    Differential,
    as_key,
    content_hash,
)
from diffdb.errors import (
    CodecError,
    ConflictingKeyError,
    HashingError,
    NamespaceNotFoundError,
    OperationCancelled,
)
from tests.conftest import Item


@dataclass
class Doc:
    """Object whose ID is not part of its hashed content."""

    ref: str = field(metadata={"hash": "ignore"})
    body: str = ""


async def _bucket_items(diff, name):
    async with diff._store.view() as tx:
        return dict(tx.bucket(diff.name.encode(), name).cursor())


async def _accept(object_id, payload):
    return None


class TestAdd:
    """Tests for add()."""

    @pytest.mark.asyncio
    async def test_add_new_object(self, diff):
        """A never-seen object becomes pending."""
        assert await diff.add(Item("a", 1)) is True
        assert await diff.count_changes() == 1
        assert await diff.count_tracking() == 0

    @pytest.mark.asyncio
    async def test_add_identical_twice_is_noop(self, diff):
        """Re-staging identical content reports not updated."""
        assert await diff.add(Item("a", 1)) is True
        pending_before = await _bucket_items(diff, BUCKET_PENDING_HASHES)

        assert await diff.add(Item("a", 1)) is False

        assert await _bucket_items(diff, BUCKET_PENDING_HASHES) == pending_before
        assert await diff.count_changes() == 1

    @pytest.mark.asyncio
    async def test_supersede_pending(self, diff):
        """A newer version replaces the pending one and its payload."""
        await diff.add(Item("a", 1))
        await diff.add(Item("a", 2))

        pending = await _bucket_items(diff, BUCKET_PENDING_HASHES)
        payloads = await _bucket_items(diff, BUCKET_PENDING_DATA)

        h2 = content_hash(b"a", Item("a", 2))
        assert pending == {b"a": h2}
        assert list(payloads) == [h2]

    @pytest.mark.asyncio
    async def test_add_committed_content_is_noop(self, diff):
        """Content equal to the committed version is not staged."""
        await diff.add(Item("a", 1))
        await diff.each(_accept)

        assert await diff.add(Item("a", 1)) is False
        assert await diff.count_changes() == 0

    @pytest.mark.asyncio
    async def test_add_back_to_committed_keeps_pending(self, diff):
        """Reverting to committed content leaves the newer pending version."""
        await diff.add(Item("a", 1))
        await diff.each(_accept)
        await diff.add(Item("a", 2))

        assert await diff.add(Item("a", 1)) is False
        pending = await _bucket_items(diff, BUCKET_PENDING_HASHES)
        assert pending == {b"a": content_hash(b"a", Item("a", 2))}

    @pytest.mark.asyncio
    async def test_same_content_different_ids(self, db):
        """Identical content under two IDs keeps two payloads."""
        diff = await db.open("shared", id_func=lambda doc: doc.ref)
        assert hash_of(Doc("x", "same")) == hash_of(Doc("y", "same"))

        await diff.add(Doc("x", "same"))
        await diff.add(Doc("y", "same"))

        assert len(await _bucket_items(diff, BUCKET_PENDING_DATA)) == 2
        result = await diff.each(_accept)
        assert result.ok
        assert sorted(result.applied) == [b"x", b"y"]

    @pytest.mark.asyncio
    async def test_unhashable_object(self, diff):
        """Hashing failures leave no state behind."""
        with pytest.raises(HashingError):
            await diff.add(Item("a", object()))

        assert await diff.count_changes() == 0

    @pytest.mark.asyncio
    async def test_add_tx_with_external_transaction(self, diff):
        """add_tx participates in the caller's transaction."""
        tx = await diff._store.begin(writable=True)
        assert diff.add_tx(tx, Item("a", 1)) is True
        assert diff.add_tx(tx, Item("b", 1)) is True
        tx.rollback()

        assert await diff.count_changes() == 0

        async with diff._store.update() as tx:
            diff.add_tx(tx, Item("a", 1))

        assert await diff.count_changes() == 1

    @pytest.mark.asyncio
    async def test_codec_error_leaves_pending_intact(self, diff):
        """A failed add_tx writes nothing, so the caller can still commit."""
        await diff.add(Item("a", 1))

        async with diff._store.update() as tx:
            with pytest.raises(CodecError):
                diff.add_tx(tx, Item("a", b"\xff"))
            assert diff.add_tx(tx, Item("b", 1)) is True

        result = await diff.each(_accept)

        assert result.ok
        assert result.applied == [b"a", b"b"]

    @pytest.mark.asyncio
    async def test_custom_id_func(self, db):
        """id_func overrides object_id() and str IDs are encoded."""
        diff = await db.open("custom", id_func=lambda obj: obj["sku"])

        assert await diff.add({"sku": "sku-1", "qty": 1}) is True
        assert await diff.pending_ids() == [b"sku-1"]


class TestQueries:
    """Tests for changed() and the counters."""

    @pytest.mark.asyncio
    async def test_changed_ignores_pending(self, diff):
        """changed() compares with committed state only."""
        assert await diff.changed(b"a", Item("a", 1)) is True

        await diff.add(Item("a", 1))
        assert await diff.changed(b"a", Item("a", 1)) is True

        await diff.each(_accept)
        assert await diff.changed(b"a", Item("a", 1)) is False
        assert await diff.changed("a", Item("a", 1)) is False
        assert await diff.changed(b"a", Item("a", 2)) is True

    @pytest.mark.asyncio
    async def test_changed_has_no_side_effect(self, diff):
        """changed() never stages."""
        await diff.changed(b"a", Item("a", 1))
        assert await diff.count_changes() == 0

    @pytest.mark.asyncio
    async def test_promotion_counts(self, diff):
        """Applying moves an ID from pending to tracked."""
        await diff.add(Item("a", 1))
        await diff.add(Item("b", 1))
        assert await diff.count_changes() == 2

        await diff.each_n(_accept, 1)

        assert await diff.count_changes() == 1
        assert await diff.count_tracking() == 1
        committed = await _bucket_items(diff, BUCKET_HASHES)
        assert committed == {b"a": content_hash(b"a", Item("a", 1))}

    @pytest.mark.asyncio
    async def test_pending_ids_in_key_order(self, diff):
        """pending_ids() lists IDs in ascending byte order."""
        for key in ("b", "c", "a"):
            await diff.add(Item(key))

        assert await diff.pending_ids() == [b"a", b"b", b"c"]

    def test_as_key(self):
        """IDs normalize to bytes."""
        assert as_key("é") == "é".encode()
        assert as_key(bytearray(b"x")) == b"x"
        with pytest.raises(TypeError):
            as_key(42)


class TestConflictTracking:
    """Tests for must_not_conflict()."""

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, diff):
        """Without tracking the last stage wins."""
        assert await diff.conflict_tracking() is False
        await diff.add(Item("x", 1))
        assert await diff.add(Item("x", 2)) is True

    @pytest.mark.asyncio
    async def test_conflicting_key_rejected(self, diff):
        """Second stage of an ID in one epoch fails without changes."""
        await diff.must_not_conflict()
        assert await diff.conflict_tracking() is True

        assert await diff.add(Item("x", 1)) is True
        with pytest.raises(ConflictingKeyError) as exc:
            await diff.add(Item("x", 2))

        assert exc.value.object_id == b"x"
        pending = await _bucket_items(diff, BUCKET_PENDING_HASHES)
        assert pending == {b"x": content_hash(b"x", Item("x", 1))}

    @pytest.mark.asyncio
    async def test_unchanged_objects_do_not_mark(self, diff):
        """Only stages that write a pending version set a marker."""
        await diff.add(Item("x", 1))
        await diff.each(_accept)

        await diff.must_not_conflict()
        assert await diff.add(Item("x", 1)) is False
        assert await diff.add(Item("x", 2)) is True

    @pytest.mark.asyncio
    async def test_reenable_starts_new_epoch(self, diff):
        """Enabling again clears the markers."""
        await diff.must_not_conflict()
        await diff.add(Item("x", 1))

        await diff.must_not_conflict()
        assert await diff.add(Item("x", 2)) is True

    @pytest.mark.asyncio
    async def test_allow_conflicts(self, diff):
        """Disabling tracking accepts duplicates again."""
        await diff.must_not_conflict()
        await diff.add(Item("x", 1))

        await diff.allow_conflicts()
        assert await diff.conflict_tracking() is False
        assert await diff.add(Item("x", 2)) is True

    @pytest.mark.asyncio
    async def test_mode_is_persisted(self, db):
        """Tracking mode is read from the store, not the handle."""
        first = await db.open("mode")
        await first.must_not_conflict()
        await first.add(Item("x", 1))

        second = Differential(db.store, "mode")
        assert await second.conflict_tracking() is True
        with pytest.raises(ConflictingKeyError):
            await second.add(Item("x", 2))


class TestAddStream:
    """Tests for add_stream()."""

    @pytest.mark.asyncio
    async def test_iterable(self, diff):
        """A plain iterable is consumed until exhausted."""
        updated = await diff.add_stream([Item("a", 1), Item("b", 1), Item("a", 1)])

        assert updated == 2
        assert await diff.count_changes() == 2

    @pytest.mark.asyncio
    async def test_none_sentinel(self, diff):
        """A None item ends the stream; later items are not consumed."""
        items = iter([Item("a"), None, Item("b")])

        assert await diff.add_stream(items) == 1
        assert await diff.pending_ids() == [b"a"]
        assert next(items) == Item("b")

    @pytest.mark.asyncio
    async def test_async_iterable(self, diff):
        """Async generators are supported."""

        async def produce():
            for key in ("a", "b", "c"):
                await asyncio.sleep(0)
                yield Item(key)

        assert await diff.add_stream(produce()) == 3

    @pytest.mark.asyncio
    async def test_queue_with_sentinel(self, diff):
        """Items from a queue are staged until the sentinel."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=2)

        async def produce():
            for key in ("a", "b", "c"):
                await queue.put(Item(key))
            await queue.put(None)

        producer = asyncio.ensure_future(produce())
        assert await diff.add_stream(queue) == 3
        await producer

        assert await diff.count_changes() == 3

    @pytest.mark.asyncio
    async def test_error_rolls_back_everything(self, diff):
        """A staging error discards the whole run."""
        await diff.must_not_conflict()

        with pytest.raises(ConflictingKeyError):
            await diff.add_stream([Item("a", 1), Item("b", 1), Item("a", 2)])

        assert await diff.count_changes() == 0

    @pytest.mark.asyncio
    async def test_cancel_rolls_back_everything(self, diff):
        """Cancellation while waiting for input discards the run."""
        queue: asyncio.Queue = asyncio.Queue()
        cancel = asyncio.Event()
        await queue.put(Item("a"))
        await queue.put(Item("b"))

        task = asyncio.ensure_future(diff.add_stream(queue, cancel=cancel))
        while not queue.empty():
            await asyncio.sleep(0.01)
        cancel.set()

        with pytest.raises(OperationCancelled):
            await task

        assert await diff.count_changes() == 0

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, diff):
        """An already set event consumes nothing."""
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(OperationCancelled):
            await diff.add_stream([Item("a")], cancel=cancel)

        assert await diff.count_changes() == 0

    @pytest.mark.asyncio
    async def test_cancel_returns_in_flight_queue_item(self, diff):
        """An item read in the same turn as cancellation goes back on the queue."""
        cancel = asyncio.Event()

        class CancellingQueue(asyncio.Queue):
            async def get(self):
                item = await super().get()
                cancel.set()
                return item

        queue = CancellingQueue()
        queue.put_nowait(Item("a"))

        with pytest.raises(OperationCancelled):
            await diff.add_stream(queue, cancel=cancel)

        assert queue.qsize() == 1
        assert queue.get_nowait() == Item("a")
        assert await diff.count_changes() == 0

    @pytest.mark.asyncio
    async def test_stream_completes_with_unset_cancel(self, diff):
        """An unused cancel event does not disturb a normal run."""
        cancel = asyncio.Event()
        assert await diff.add_stream([Item("a"), Item("b")], cancel=cancel) == 2
        assert await diff.count_changes() == 2


class TestUserData:
    """Tests for the user data bucket."""

    @pytest.mark.asyncio
    async def test_round_trip(self, diff):
        """Updates commit and are visible to later views."""
        async with diff.update_user_data() as bucket:
            bucket.put(b"last_run", b"2024-01-01")

        async with diff.view_user_data() as bucket:
            assert bucket.get(b"last_run") == b"2024-01-01"

    @pytest.mark.asyncio
    async def test_failed_update_rolls_back(self, diff):
        """An exception inside update_user_data discards writes."""
        with pytest.raises(ValueError):
            async with diff.update_user_data() as bucket:
                bucket.put(b"k", b"v")
                raise ValueError("abort")

        async with diff.view_user_data() as bucket:
            assert bucket.get(b"k") is None

    @pytest.mark.asyncio
    async def test_user_data_outside_diff(self, diff):
        """User data does not count as tracked or pending."""
        async with diff.update_user_data() as bucket:
            bucket.put(b"k", b"v")

        assert await diff.count_changes() == 0
        assert await diff.count_tracking() == 0


class TestDeletedNamespace:
    """Tests for differentials whose namespace is gone."""

    @pytest.mark.asyncio
    async def test_operations_raise_not_found(self, db):
        """Handles to a deleted differential raise NamespaceNotFoundError."""
        diff = await db.open("gone")
        await db.delete("gone")

        with pytest.raises(NamespaceNotFoundError):
            await diff.add(Item("a"))
        with pytest.raises(NamespaceNotFoundError):
            await diff.count_changes()
