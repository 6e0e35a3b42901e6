"""
Append-only change log.

Every accepted mutation is appended with the next global sequence
number, in the same transaction as the record write. Entries are never
updated or removed.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aiosqlite

from ..protocol import ChangeLogEntry
from ..sync.version import CLIENT_ID_FIELD, UPDATED_AT_FIELD, VERSION_FIELD
from .database import ServerDatabase

logger = logging.getLogger(__name__)

_COLUMNS = "sequence, table_name, record_id, data, version, updated_at, origin_client_id"


class ChangeLog:
    """Reads and appends change log entries."""

    def __init__(self, database: ServerDatabase):
        self.database = database

    async def append(
        self,
        conn: aiosqlite.Connection,
        table: str,
        record_id: str,
        record: dict[str, Any],
        owner_id: str | None,
        shared: bool,
    ) -> int:
        """Append an accepted record version inside an open transaction.

        Returns:
            The sequence number assigned to the entry
        """
        cursor = await conn.execute(
            """
            INSERT INTO change_log
                (table_name, record_id, data, version, updated_at, origin_client_id,
                 owner_id, is_shared)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                table,
                record_id,
                json.dumps(record),
                int(record[VERSION_FIELD]),
                int(record[UPDATED_AT_FIELD]),
                str(record[CLIENT_ID_FIELD]),
                owner_id,
                1 if shared else 0,
            ),
        )
        sequence = cursor.lastrowid
        await cursor.close()
        return sequence

    async def since(self, after: int, tenant_id: str, limit: int) -> list[ChangeLogEntry]:
        """Entries visible to ``tenant_id`` with sequence greater than ``after``.

        Returned in ascending sequence order, at most ``limit`` of them.
        """
        async with self.database.read() as conn:
            async with conn.execute(
                f"""
                SELECT {_COLUMNS} FROM change_log
                WHERE sequence > ? AND (owner_id = ? OR is_shared = 1)
                ORDER BY sequence
                LIMIT ?
                """,
                (after, tenant_id, limit),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def history(self, table: str, record_id: str) -> list[ChangeLogEntry]:
        """Every logged version of one record, oldest first."""
        async with self.database.read() as conn:
            async with conn.execute(
                f"SELECT {_COLUMNS} FROM change_log "
                "WHERE table_name = ? AND record_id = ? ORDER BY sequence",
                (table, record_id),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def latest_sequence(self) -> int:
        async with self.database.read() as conn:
            async with conn.execute("SELECT MAX(sequence) FROM change_log") as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0


def _row_to_entry(row: Any) -> ChangeLogEntry:
    sequence, table, record_id, data, version, updated_at, origin_client_id = row
    return ChangeLogEntry(
        sequence=sequence,
        table=table,
        record_id=record_id,
        data=json.loads(data),
        version=version,
        updated_at=updated_at,
        origin_client_id=origin_client_id,
    )
