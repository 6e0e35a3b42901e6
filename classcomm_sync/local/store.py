"""
Durable client-side store.

One SQLite file holds everything the client needs to work offline:

    records:
        - collection TEXT
        - record_id TEXT
        - data TEXT (JSON snapshot including sync metadata)
        - version INTEGER
        - updated_at INTEGER (epoch ms)
        - is_deleted INTEGER
        - PRIMARY KEY (collection, record_id)

    pending_operations: see classcomm_sync.sync.tracker

    sync_state:
        - key TEXT PRIMARY KEY  ("client_id", "last_sync")
        - value TEXT

Local writes (put/delete) update the record and append a pending
operation in the same transaction. Writes that come from applying a
pulled change go through LocalTransaction.write and never enqueue, or
the change would be echoed back to the server forever.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import (
    RecordNotFoundError,
    StorageIOError,
    StorageUnavailableError,
    ValidationError,
)
from ..protocol import OperationType, PendingOperation
from ..sync.tracker import PendingOperationQueue
from ..sync.version import (
    DELETED_FIELD,
    UPDATED_AT_FIELD,
    VERSION_FIELD,
    next_version,
    now_ms,
    stamp,
)

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "client_id"
LAST_SYNC_KEY = "last_sync"


class LocalTransaction:
    """Handle to an open local transaction.

    Obtained from LocalStore.transaction(); all reads and writes made
    through it commit or roll back together.
    """

    def __init__(self, store: LocalStore, conn: aiosqlite.Connection):
        self.store = store
        self.conn = conn

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        return await self.store._read_record(self.conn, collection, record_id)

    async def write(self, collection: str, record: dict[str, Any]) -> None:
        """Upsert a record without enqueueing a pending operation."""
        await self.store._write_record(self.conn, collection, record)

    async def set_state(self, key: str, value: str) -> None:
        await self.conn.execute(
            "INSERT INTO sync_state (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )


class LocalStore:
    """Persistent key-value storage per collection, plus the pending queue.

    Collections are fixed at construction time, each with its primary key
    field (always ``id`` for the default schema).

    Example:
        >>> store = await LocalStore.open("local.db", {"students": "id"})
        >>> record = await store.put("students", {"id": "s1", "firstName": "Ada"}, client_id)
        >>> await store.get("students", "s1")
    """

    def __init__(self, db_path: str | Path, collections: Mapping[str, str]):
        """
        Initialize the local store.

        Args:
            db_path: SQLite file path (":memory:" is accepted for tests but is not durable)
            collections: Mapping of collection name to primary key field
        """
        self.db_path = db_path
        self.collections = dict(collections)
        self.conn: aiosqlite.Connection | None = None
        self.queue = PendingOperationQueue(self)
        self._lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    async def open(cls, db_path: str | Path, collections: Mapping[str, str]) -> LocalStore:
        """Create and initialize a local store."""
        store = cls(db_path, collections)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the database and create the schema.

        Raises:
            StorageUnavailableError: If the database cannot be opened
        """
        if self._initialized:
            return

        path = str(self.db_path)
        try:
            if path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = await aiosqlite.connect(path, isolation_level=None)
            if path != ":memory:":
                await self.conn.execute("PRAGMA journal_mode = WAL")
            await self.conn.execute("PRAGMA synchronous = FULL")

            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (collection, record_id)
                )
            """)
            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            await PendingOperationQueue.create_schema(self.conn)
        except (sqlite3.Error, OSError) as e:
            if self.conn is not None:
                await self.conn.close()
                self.conn = None
            raise StorageUnavailableError(path, e) from e

        self._initialized = True
        logger.info(f"Local store opened: {path} ({len(self.collections)} collections)")

    async def close(self) -> None:
        """Close the database connection."""
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LocalTransaction]:
        """Run a block of reads and writes atomically.

        Mutations made mid-cycle by the application wait on the same lock,
        so they never interleave with a pull batch being applied.
        """
        conn = self._require_conn()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield LocalTransaction(self, conn)
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                try:
                    await conn.execute("COMMIT")
                except sqlite3.Error as e:
                    await conn.execute("ROLLBACK")
                    raise StorageIOError("commit", str(self.db_path), e) from e

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Read committed state only; waits for any open transaction to finish."""
        conn = self._require_conn()
        async with self._lock:
            yield conn

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        """Get a record by id, tombstones included."""
        self._check_collection(collection)
        async with self.read() as conn:
            return await self._read_record(conn, collection, record_id)

    async def scan(self, collection: str, include_deleted: bool = True) -> list[dict[str, Any]]:
        """List all records of a collection."""
        self._check_collection(collection)
        query = "SELECT data FROM records WHERE collection = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        query += " ORDER BY record_id"

        async with self.read() as conn:
            async with conn.execute(query, (collection,)) as cursor:
                rows = await cursor.fetchall()
        return [json.loads(row[0]) for row in rows]

    # =========================================================================
    # Local writes (enqueue a pending operation)
    # =========================================================================

    async def put(
        self,
        collection: str,
        record: dict[str, Any],
        client_id: str,
    ) -> PendingOperation:
        """Insert or update a record and enqueue the matching operation.

        The record's sync metadata is assigned here: version is bumped by
        one over the stored copy, timestamp is now, tombstone flag cleared.

        Returns:
            The enqueued pending operation (its ``data`` is the stored record)
        """
        primary_key = self._check_collection(collection)
        record_id = record.get(primary_key)
        if not isinstance(record_id, str) or not record_id:
            raise ValidationError(primary_key, "record needs a non-empty string id")

        async with self.transaction() as txn:
            current = await txn.get(collection, record_id)
            stamped = stamp(record, next_version(current), client_id)
            operation = OperationType.INSERT if current is None else OperationType.UPDATE
            await txn.write(collection, stamped)
            return await self.queue.enqueue(txn, collection, operation, stamped, client_id)

    async def delete(self, collection: str, record_id: str, client_id: str) -> PendingOperation | None:
        """Tombstone a record and enqueue a delete operation.

        Deleting an already-deleted record is a no-op and returns None.

        Raises:
            RecordNotFoundError: If the record does not exist locally
        """
        self._check_collection(collection)

        async with self.transaction() as txn:
            current = await txn.get(collection, record_id)
            if current is None:
                raise RecordNotFoundError(collection, record_id)
            if current.get(DELETED_FIELD):
                return None
            tombstone = stamp(current, next_version(current), client_id, deleted=True)
            await txn.write(collection, tombstone)
            return await self.queue.enqueue(
                txn, collection, OperationType.DELETE, tombstone, client_id
            )

    # =========================================================================
    # Persisted client state
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        async with self.read() as conn:
            async with conn.execute(
                "SELECT value FROM sync_state WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else None

    async def set_state(self, key: str, value: str) -> None:
        async with self.transaction() as txn:
            await txn.set_state(key, value)

    async def get_or_create_client_id(self) -> str:
        """Client id is generated once and then stable for this store."""
        client_id = await self.get_state(CLIENT_ID_KEY)
        if client_id is None:
            client_id = str(uuid.uuid4())
            await self.set_state(CLIENT_ID_KEY, client_id)
            logger.info(f"Generated new client id: {client_id}")
        return client_id

    async def get_last_sync(self) -> int:
        value = await self.get_state(LAST_SYNC_KEY)
        return int(value) if value is not None else 0

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_conn(self) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageUnavailableError(str(self.db_path))
        return self.conn

    def _check_collection(self, collection: str) -> str:
        try:
            return self.collections[collection]
        except KeyError:
            raise ValidationError("collection", "unknown collection", collection) from None

    async def _read_record(
        self, conn: aiosqlite.Connection, collection: str, record_id: str
    ) -> dict[str, Any] | None:
        async with conn.execute(
            "SELECT data FROM records WHERE collection = ? AND record_id = ?",
            (collection, record_id),
        ) as cursor:
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def _write_record(
        self, conn: aiosqlite.Connection, collection: str, record: dict[str, Any]
    ) -> None:
        primary_key = self._check_collection(collection)
        await conn.execute(
            """
            INSERT INTO records (collection, record_id, data, version, updated_at, is_deleted)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(collection, record_id) DO UPDATE SET
                data = excluded.data,
                version = excluded.version,
                updated_at = excluded.updated_at,
                is_deleted = excluded.is_deleted
            """,
            (
                collection,
                record[primary_key],
                json.dumps(record),
                int(record.get(VERSION_FIELD) or 0),
                int(record.get(UPDATED_AT_FIELD) or now_ms()),
                1 if record.get(DELETED_FIELD) else 0,
            ),
        )
