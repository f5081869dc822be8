"""
Apply driver for pending changes.

The driver walks the pending table in ascending ID order, hands each staged
payload to a caller callback and promotes every item the callback accepts:
- Success: committed hash written, pending hash and payload deleted
- Failure: recorded against the ID, pending entry left for retry
- Cancellation: scan stops, promotions made so far are kept

The driver works on buckets of an already open write transaction; the
caller (Differential.each_n) owns begin/commit/rollback, so a failed commit
discards every promotion of the run.

Invariants:
    - Per-item failures never abort the scan
    - Cancellation is only observed between items
    - A pending hash without payload raises CorruptStateError, which is
      never collected as a per-item failure
    - The limit counts promotions, not visited items

How to change safely:
    - Keep promotion as three writes inside the caller's transaction
    - Test partial failure, limits and cancellation together
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .codec import Payload
from .errors import ApplyError, CorruptStateError
from .store.base import Bucket

logger = logging.getLogger(__name__)

ApplyFunc = Callable[[bytes, Payload], "Awaitable[None] | None"]
"""Callback applying one pending change.

Called with (object_id, payload). May be a plain function or a coroutine
function. Raising any Exception marks the item as failed.
"""


@dataclass(frozen=True)
class ItemFailure:
    """A pending change the apply callback rejected.

    Attributes:
        object_id: ID of the object that stays pending
        error: Exception raised by the callback
    """

    object_id: bytes
    error: Exception


@dataclass
class ApplyResult:
    """Outcome of one apply run.

    Attributes:
        applied: IDs promoted to committed state, in apply order
        failures: Items the callback rejected, in apply order
        cancelled: Whether the run stopped on its cancellation signal
    """

    applied: list[bytes] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        """True when nothing failed and the run was not cancelled."""
        return not self.failures and not self.cancelled

    @property
    def failed_ids(self) -> list[bytes]:
        """IDs left pending by callback failures."""
        return [f.object_id for f in self.failures]

    @property
    def error(self) -> ApplyError | None:
        """Aggregated error, or None for a clean run."""
        if self.ok:
            return None
        return ApplyError(self.failures, cancelled=self.cancelled)

    def raise_for_errors(self) -> None:
        """Raise the aggregated ApplyError if the run was not clean."""
        err = self.error
        if err is not None:
            raise err


async def apply_pending(
    committed: Bucket,
    pending: Bucket,
    payloads: Bucket,
    fn: ApplyFunc,
    limit: int = 0,
    cancel: asyncio.Event | None = None,
) -> ApplyResult:
    """Apply pending changes through fn, promoting each success.

    Args:
        committed: Committed hash bucket (ID -> hash)
        pending: Pending hash bucket (ID -> hash)
        payloads: Pending payload bucket (hash -> encoded object)
        fn: Apply callback
        limit: Stop after this many promotions; <= 0 means no limit
        cancel: Optional event checked before each item

    Returns:
        ApplyResult describing promotions, failures and cancellation

    Raises:
        CorruptStateError: If a pending hash has no payload
    """
    result = ApplyResult()

    for object_id, content_hash in pending.cursor():
        if cancel is not None and cancel.is_set():
            result.cancelled = True
            break

        data = payloads.get(content_hash)
        if data is None:
            raise CorruptStateError(object_id, content_hash)

        try:
            outcome = fn(object_id, Payload(data))
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(
                f"Failed to apply change: {e}",
                extra={"object_id": object_id.hex(), "hash": content_hash.hex()},
            )
            result.failures.append(ItemFailure(object_id, e))
            continue

        committed.put(object_id, content_hash)
        pending.delete(object_id)
        payloads.delete(content_hash)
        result.applied.append(object_id)

        if 0 < limit <= len(result.applied):
            break

    return result
