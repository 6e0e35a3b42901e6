"""
Authoritative SQLite database.

Schema:
    records:
        - table_name, record_id (PRIMARY KEY)
        - data TEXT (JSON snapshot including sync metadata)
        - version, updated_at, client_id, is_deleted
        - owner_id, is_shared (scoping columns)

    change_log:
        - sequence INTEGER PRIMARY KEY AUTOINCREMENT (global pull cursor)
        - table_name, record_id, data, version, updated_at
        - origin_client_id
        - owner_id, is_shared (so pull can filter in SQL)

    applied_operations:
        - tenant_id, operation_id (PRIMARY KEY)
        - outcome, reason, version, sequence, applied_at

    client_state:
        - tenant_id, client_id (PRIMARY KEY)
        - last_push_at, operations_pushed

AUTOINCREMENT guarantees sequence numbers are never reused, so a
client's cursor stays meaningful for the life of the database.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from ..config import ServerSyncConfig
from ..exceptions import StorageIOError, StorageUnavailableError

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS records (
        table_name TEXT NOT NULL,
        record_id TEXT NOT NULL,
        data TEXT NOT NULL,
        version INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        client_id TEXT NOT NULL,
        is_deleted INTEGER NOT NULL DEFAULT 0,
        owner_id TEXT,
        is_shared INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (table_name, record_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS change_log (
        sequence INTEGER PRIMARY KEY AUTOINCREMENT,
        table_name TEXT NOT NULL,
        record_id TEXT NOT NULL,
        data TEXT NOT NULL,
        version INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        origin_client_id TEXT NOT NULL,
        owner_id TEXT,
        is_shared INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_change_log_owner ON change_log(owner_id, sequence)",
    "CREATE INDEX IF NOT EXISTS idx_change_log_shared ON change_log(is_shared, sequence)",
    """
    CREATE TABLE IF NOT EXISTS applied_operations (
        tenant_id TEXT NOT NULL,
        operation_id TEXT NOT NULL,
        outcome TEXT NOT NULL,
        reason TEXT,
        version INTEGER,
        sequence INTEGER,
        applied_at INTEGER NOT NULL,
        PRIMARY KEY (tenant_id, operation_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS client_state (
        tenant_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        last_push_at INTEGER NOT NULL,
        operations_pushed INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (tenant_id, client_id)
    )
    """,
)


class ServerDatabase:
    """Connection owner for the authoritative store and change log.

    All statements share one connection; an asyncio lock serializes
    transactions and reads on it so a read never observes another
    coroutine's uncommitted writes.
    """

    def __init__(self, config: ServerSyncConfig | None = None):
        self.config = config or ServerSyncConfig()
        self.conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema.

        Raises:
            StorageUnavailableError: If the database cannot be opened
        """
        if self.conn is not None:
            return

        path = str(self.config.db_path)
        try:
            if path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = await aiosqlite.connect(path, isolation_level=None)
            await self.conn.execute(f"PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)}")
            if path != ":memory:":
                await self.conn.execute("PRAGMA journal_mode = WAL")
            for statement in _SCHEMA:
                await self.conn.execute(statement)
        except (sqlite3.Error, OSError) as e:
            if self.conn is not None:
                await self.conn.close()
                self.conn = None
            raise StorageUnavailableError(path, e) from e

        logger.info(f"Server database opened: {path}")

    async def close(self) -> None:
        if self.conn is not None:
            await self.conn.close()
            self.conn = None

    def require_conn(self) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageUnavailableError(str(self.config.db_path))
        return self.conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Write transaction; commits on normal exit, rolls back on any error."""
        conn = self.require_conn()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                try:
                    await conn.execute("COMMIT")
                except sqlite3.Error as e:
                    await conn.execute("ROLLBACK")
                    raise StorageIOError("commit", str(self.config.db_path), e) from e

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Consistent read outside any write transaction."""
        conn = self.require_conn()
        async with self._lock:
            yield conn
