"""
SQLite-backed transactional store for diffdb.

All namespaces of a DiffDB live in one SQLite file:
- namespaces: one row per named differential
- buckets: one row per (namespace, bucket)
- entries: the key/value pairs of every bucket

Invariants:
    - One SQLite file per store
    - Keys and values are BLOBs; SQLite orders BLOBs with memcmp, which is
      the ascending byte order cursors promise
    - Write transactions use BEGIN IMMEDIATE and are additionally
      serialized in-process by KVStore's writer lock
    - Read transactions use a deferred BEGIN, so WAL mode readers see a
      stable snapshot while a writer is active

How to change safely:
    - Schema migrations must be backward compatible
    - Cursors page with "key > last" so deletes during a scan are safe;
      keep that property if the query changes
    - Use transactions for all write operations

Table schema:
    namespaces:
        - name BLOB PRIMARY KEY

    buckets:
        - namespace BLOB
        - name BLOB
        - PRIMARY KEY (namespace, name)

    entries:
        - namespace BLOB
        - bucket BLOB
        - key BLOB
        - value BLOB
        - PRIMARY KEY (namespace, bucket, key)
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator
from pathlib import Path

from .base import (
    BucketExistsError,
    BucketNotFoundError,
    CommitError,
    KVStore,
    StoreError,
    Transaction,
)

logger = logging.getLogger(__name__)


class SqliteBucket:
    """Bucket stored as rows of the entries table."""

    def __init__(self, tx: SqliteTransaction, namespace: bytes, name: bytes) -> None:
        self._tx = tx
        self._namespace = namespace
        self._name = name

    def get(self, key: bytes) -> bytes | None:
        row = self._tx._execute(
            "SELECT value FROM entries WHERE namespace = ? AND bucket = ? AND key = ?",
            (self._namespace, self._name, bytes(key)),
        ).fetchone()
        return bytes(row[0]) if row else None

    def put(self, key: bytes, value: bytes) -> None:
        self._tx._check_writable()
        self._tx._execute(
            """
            INSERT OR REPLACE INTO entries (namespace, bucket, key, value)
            VALUES (?, ?, ?, ?)
            """,
            (self._namespace, self._name, bytes(key), bytes(value)),
        )

    def delete(self, key: bytes) -> None:
        self._tx._check_writable()
        self._tx._execute(
            "DELETE FROM entries WHERE namespace = ? AND bucket = ? AND key = ?",
            (self._namespace, self._name, bytes(key)),
        )

    def cursor(self) -> Iterator[tuple[bytes, bytes]]:
        page_size = self._tx._store.cursor_page_size
        last: bytes | None = None

        while True:
            if last is None:
                rows = self._tx._execute(
                    """
                    SELECT key, value FROM entries
                    WHERE namespace = ? AND bucket = ?
                    ORDER BY key
                    LIMIT ?
                    """,
                    (self._namespace, self._name, page_size),
                ).fetchall()
            else:
                rows = self._tx._execute(
                    """
                    SELECT key, value FROM entries
                    WHERE namespace = ? AND bucket = ? AND key > ?
                    ORDER BY key
                    LIMIT ?
                    """,
                    (self._namespace, self._name, last, page_size),
                ).fetchall()

            for key, value in rows:
                yield bytes(key), bytes(value)

            if len(rows) < page_size:
                return
            last = bytes(rows[-1][0])

    def count(self) -> int:
        row = self._tx._execute(
            "SELECT COUNT(*) FROM entries WHERE namespace = ? AND bucket = ?",
            (self._namespace, self._name),
        ).fetchone()
        return row[0]


class SqliteTransaction(Transaction):
    """Transaction bound to its own SQLite connection."""

    def __init__(
        self,
        store: SqliteStore,
        conn: sqlite3.Connection,
        writable: bool,
        release: Callable[[], None] | None,
    ) -> None:
        super().__init__(writable, release)
        self._store = store
        self._conn = conn

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        self._check_open()
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreError(f"sqlite error: {e}") from e

    def namespace_exists(self, namespace: bytes) -> bool:
        row = self._execute("SELECT 1 FROM namespaces WHERE name = ?", (namespace,)).fetchone()
        return row is not None

    def namespaces(self) -> list[bytes]:
        rows = self._execute("SELECT name FROM namespaces ORDER BY name").fetchall()
        return [bytes(r[0]) for r in rows]

    def create_namespace(self, namespace: bytes, exist_ok: bool = False) -> None:
        self._check_writable()
        if self.namespace_exists(namespace):
            if exist_ok:
                return
            raise BucketExistsError(namespace)
        self._execute("INSERT INTO namespaces (name) VALUES (?)", (namespace,))

    def delete_namespace(self, namespace: bytes) -> None:
        self._check_writable()
        if not self.namespace_exists(namespace):
            raise BucketNotFoundError(namespace)
        self._execute("DELETE FROM entries WHERE namespace = ?", (namespace,))
        self._execute("DELETE FROM buckets WHERE namespace = ?", (namespace,))
        self._execute("DELETE FROM namespaces WHERE name = ?", (namespace,))

    def _bucket_exists(self, namespace: bytes, name: bytes) -> bool:
        row = self._execute(
            "SELECT 1 FROM buckets WHERE namespace = ? AND name = ?",
            (namespace, name),
        ).fetchone()
        return row is not None

    def bucket(self, namespace: bytes, name: bytes) -> SqliteBucket:
        if not self._bucket_exists(namespace, name):
            raise BucketNotFoundError(namespace, name)
        return SqliteBucket(self, namespace, name)

    def create_bucket(self, namespace: bytes, name: bytes, exist_ok: bool = False) -> SqliteBucket:
        self._check_writable()
        if not self.namespace_exists(namespace):
            raise BucketNotFoundError(namespace)
        if self._bucket_exists(namespace, name):
            if not exist_ok:
                raise BucketExistsError(namespace, name)
        else:
            self._execute(
                "INSERT INTO buckets (namespace, name) VALUES (?, ?)",
                (namespace, name),
            )
        return SqliteBucket(self, namespace, name)

    def delete_bucket(self, namespace: bytes, name: bytes) -> None:
        self._check_writable()
        if not self._bucket_exists(namespace, name):
            raise BucketNotFoundError(namespace, name)
        self._execute(
            "DELETE FROM entries WHERE namespace = ? AND bucket = ?",
            (namespace, name),
        )
        self._execute(
            "DELETE FROM buckets WHERE namespace = ? AND name = ?",
            (namespace, name),
        )

    def _commit(self) -> None:
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise CommitError(f"sqlite commit failed: {e}") from e
        self._conn.close()

    def _rollback(self) -> None:
        try:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"Rollback failed: {e}", extra={"path": str(self._store.path)})
        finally:
            self._conn.close()


class SqliteStore(KVStore):
    """Single-file SQLite implementation of KVStore.

    Thread safety:
        Each transaction opens its own connection. Writers are serialized by
        the store's asyncio lock; SQLite handles concurrent readers via WAL
        mode.

    Example:
        >>> store = SqliteStore("/var/lib/diffdb/state.db")
        >>> async with store.update() as tx:
        ...     tx.create_namespace(b"orders", exist_ok=True)
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        cursor_page_size: int = 256,
    ) -> None:
        """Initialize the store.

        Args:
            path: SQLite database file (created if missing)
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
            cursor_page_size: Rows fetched per cursor round trip
        """
        super().__init__()
        if cursor_page_size <= 0:
            raise ValueError("cursor_page_size must be positive")
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.cursor_page_size = cursor_page_size
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Explicit transactions only
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True
        except sqlite3.Error as e:
            conn.close()
            raise StoreError(f"cannot open {self.path}: {e}") from e
        return conn

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS namespaces (
                name BLOB PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS buckets (
                namespace BLOB NOT NULL,
                name BLOB NOT NULL,
                PRIMARY KEY (namespace, name)
            );

            CREATE TABLE IF NOT EXISTS entries (
                namespace BLOB NOT NULL,
                bucket BLOB NOT NULL,
                key BLOB NOT NULL,
                value BLOB NOT NULL,
                PRIMARY KEY (namespace, bucket, key)
            ) WITHOUT ROWID;

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES ({self.SCHEMA_VERSION}, strftime('%s', 'now') * 1000);
        """)
        logger.info(f"Initialized diffdb store: {self.path}")

    def _open_transaction(
        self, writable: bool, release: Callable[[], None] | None
    ) -> SqliteTransaction:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if writable else "BEGIN")
        except sqlite3.Error as e:
            conn.close()
            raise StoreError(f"cannot begin transaction: {e}") from e
        return SqliteTransaction(self, conn, writable, release)

    async def close(self) -> None:
        """Nothing is held open between transactions."""
        logger.debug("SqliteStore closed", extra={"path": str(self.path)})
