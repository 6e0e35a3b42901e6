"""
Authoritative record store.

Holds the current version of every record, plus the bookkeeping the
server engine needs: which operations have already been decided (so a
replayed push gets the same answer) and when each client last pushed.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aiosqlite

from ..protocol import PushOutcome, PushOutcomeType
from ..sync.version import (
    CLIENT_ID_FIELD,
    DELETED_FIELD,
    UPDATED_AT_FIELD,
    VERSION_FIELD,
    RecordVersion,
    now_ms,
)
from .database import ServerDatabase

logger = logging.getLogger(__name__)


class AuthoritativeStore:
    """Current record versions with compare-and-swap writes."""

    def __init__(self, database: ServerDatabase):
        self.database = database

    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        """Current version of a record, tombstones included."""
        async with self.database.read() as conn:
            async with conn.execute(
                "SELECT data FROM records WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            ) as cursor:
                row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def scan(self, table: str, owner_id: str) -> list[dict[str, Any]]:
        """Records of ``table`` owned by ``owner_id`` or shared, by id."""
        async with self.database.read() as conn:
            async with conn.execute(
                "SELECT data FROM records WHERE table_name = ? "
                "AND (owner_id = ? OR is_shared = 1) ORDER BY record_id",
                (table, owner_id),
            ) as cursor:
                rows = await cursor.fetchall()
        return [json.loads(row[0]) for row in rows]

    async def compare_and_swap(
        self,
        conn: aiosqlite.Connection,
        table: str,
        record_id: str,
        expected: RecordVersion | None,
        record: dict[str, Any],
        owner_id: str | None,
        shared: bool,
    ) -> bool:
        """Write ``record`` only if the stored row still carries ``expected``.

        The token is the full (version, updatedAt, clientId) triple, which is
        unique per accepted write. ``expected=None`` means the record must
        not exist yet.

        Returns:
            True if the write happened, False if another writer got there first
        """
        values = (
            json.dumps(record),
            int(record[VERSION_FIELD]),
            int(record[UPDATED_AT_FIELD]),
            str(record[CLIENT_ID_FIELD]),
            1 if record.get(DELETED_FIELD) else 0,
            owner_id,
            1 if shared else 0,
        )

        if expected is None:
            cursor = await conn.execute(
                """
                INSERT INTO records
                    (data, version, updated_at, client_id, is_deleted, owner_id, is_shared,
                     table_name, record_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(table_name, record_id) DO NOTHING
                """,
                (*values, table, record_id),
            )
        else:
            cursor = await conn.execute(
                """
                UPDATE records
                SET data = ?, version = ?, updated_at = ?, client_id = ?, is_deleted = ?,
                    owner_id = ?, is_shared = ?
                WHERE table_name = ? AND record_id = ?
                    AND version = ? AND updated_at = ? AND client_id = ?
                """,
                (*values, table, record_id, *expected.order_key),
            )
        swapped = cursor.rowcount == 1
        await cursor.close()
        return swapped

    # =========================================================================
    # Operation bookkeeping
    # =========================================================================

    async def get_recorded_outcome(self, tenant_id: str, operation_id: str) -> PushOutcome | None:
        """Outcome previously decided for an operation, if any."""
        async with self.database.read() as conn:
            async with conn.execute(
                "SELECT outcome, reason, version, sequence FROM applied_operations "
                "WHERE tenant_id = ? AND operation_id = ?",
                (tenant_id, operation_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        outcome, reason, version, sequence = row
        return PushOutcome(
            id=operation_id,
            outcome=PushOutcomeType(outcome),
            reason=reason,
            version=version,
            sequence=sequence,
        )

    async def record_outcome(
        self, conn: aiosqlite.Connection, tenant_id: str, outcome: PushOutcome
    ) -> None:
        """Remember a final outcome inside an open transaction.

        Transient failures are not recorded so the operation can be retried.
        """
        await conn.execute(
            """
            INSERT INTO applied_operations
                (tenant_id, operation_id, outcome, reason, version, sequence, applied_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tenant_id, operation_id) DO NOTHING
            """,
            (
                tenant_id,
                outcome.id,
                outcome.outcome.value,
                outcome.reason,
                outcome.version,
                outcome.sequence,
                now_ms(),
            ),
        )

    async def touch_client(self, tenant_id: str, client_id: str, pushed: int) -> None:
        """Track the last push time of a client."""
        async with self.database.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO client_state (tenant_id, client_id, last_push_at, operations_pushed)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id, client_id) DO UPDATE SET
                    last_push_at = excluded.last_push_at,
                    operations_pushed = operations_pushed + excluded.operations_pushed
                """,
                (tenant_id, client_id, now_ms(), pushed),
            )

    async def get_client_state(self, tenant_id: str, client_id: str) -> dict[str, Any] | None:
        async with self.database.read() as conn:
            async with conn.execute(
                "SELECT last_push_at, operations_pushed FROM client_state "
                "WHERE tenant_id = ? AND client_id = ?",
                (tenant_id, client_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return {"last_push_at": row[0], "operations_pushed": row[1]}
