"""
DiffDB handle: opens, lists and deletes named differentials in one store.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .config import Settings
from .differential import BASE_BUCKETS, Differential, IdFunc
from .errors import NamespaceNotFoundError
from .store import KVStore, SqliteStore, create_store
from .store.base import BucketNotFoundError

logger = logging.getLogger(__name__)


class DiffDB:
    """A store holding any number of named differentials.

    One handle is safe for concurrent use by many coroutines. Differentials
    opened from it are independent; they only share the store's writer
    queue.

    Example:
        >>> async with DiffDB.open_path("/var/lib/diffdb/state.db") as db:
        ...     orders = await db.open("orders")
        ...     await orders.add(order)
    """

    def __init__(self, store: KVStore) -> None:
        self.store = store

    @classmethod
    def open_path(cls, path: str | Path, **options) -> DiffDB:
        """Create a handle on a SQLite file (created if missing).

        Args:
            path: Database file
            **options: Extra SqliteStore options (wal_mode, busy_timeout_ms, ...)
        """
        return cls(SqliteStore(path, **options))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DiffDB:
        """Create a handle from settings (loaded from env if not provided)."""
        return cls(create_store(settings or Settings()))

    async def open(self, name: str, id_func: IdFunc | None = None) -> Differential:
        """Open a named differential, creating it if it does not exist.

        Args:
            name: Differential name
            id_func: ID accessor for staged objects; defaults to
                obj.object_id()

        Returns:
            Differential bound to the namespace
        """
        ns = name.encode("utf-8")
        async with self.store.update() as tx:
            created = not tx.namespace_exists(ns)
            tx.create_namespace(ns, exist_ok=True)
            for bucket in BASE_BUCKETS:
                tx.create_bucket(ns, bucket, exist_ok=True)

        if created:
            logger.info(f"Created differential: {name}")
        return Differential(self.store, name, id_func=id_func)

    async def delete(self, name: str) -> None:
        """Delete the named differential and all of its state.

        Raises:
            NamespaceNotFoundError: If no differential has that name
        """
        async with self.store.update() as tx:
            try:
                tx.delete_namespace(name.encode("utf-8"))
            except BucketNotFoundError:
                raise NamespaceNotFoundError(name) from None

        logger.info(f"Deleted differential: {name}")

    async def names(self) -> list[str]:
        """Names of all differentials in the store."""
        async with self.store.view() as tx:
            return [ns.decode("utf-8") for ns in tx.namespaces()]

    async def close(self) -> None:
        """Close the underlying store."""
        await self.store.close()

    async def __aenter__(self) -> DiffDB:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
