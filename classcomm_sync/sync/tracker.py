"""
Pending operation queue.

Durable log of local mutations awaiting transmission, stored in the same
SQLite file as the local records so a mutation and its queue entry commit
together:

    pending_operations:
        - seq INTEGER PRIMARY KEY AUTOINCREMENT (enqueue order)
        - id TEXT UNIQUE (operation id)
        - table_name TEXT
        - record_id TEXT
        - operation TEXT (insert/update/delete)
        - data TEXT (JSON record snapshot)
        - timestamp INTEGER (epoch ms)
        - client_id TEXT
        - version INTEGER
        - status TEXT (pending/synced/error)
        - attempts INTEGER
        - last_error TEXT

Delivery is at-least-once: an operation leaves retry consideration only
when the server acknowledges it. Operations are always read back in
enqueue order so the server sees each record's mutations in causal order.
Rejected operations stay in the queue as ``error`` until an operator
retries or discards them.
"""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles
import aiofiles.os
import aiosqlite

from ..protocol import (
    OperationStatus,
    OperationType,
    PendingOperation,
    PushOutcome,
    PushOutcomeType,
    RejectionReason,
)
from .version import UPDATED_AT_FIELD, VERSION_FIELD

if TYPE_CHECKING:
    from ..local.store import LocalStore, LocalTransaction

_COLUMNS = (
    "seq, id, table_name, operation, data, timestamp, client_id, version, "
    "status, attempts, last_error"
)


class PendingOperationQueue:
    """Tracks and persists local operations for synchronization."""

    def __init__(self, store: LocalStore):
        """Initialize the queue.

        Args:
            store: Local store whose connection and transactions the queue shares
        """
        self.store = store

    @staticmethod
    async def create_schema(conn: aiosqlite.Connection) -> None:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS pending_operations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                table_name TEXT NOT NULL,
                record_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                data TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                client_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT
            )
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_pending_status ON pending_operations(status, seq)"
        )

    async def enqueue(
        self,
        txn: LocalTransaction,
        table: str,
        operation: OperationType,
        record: dict[str, Any],
        client_id: str,
    ) -> PendingOperation:
        """Append an operation inside the caller's transaction.

        Args:
            txn: Open local transaction that also wrote the record
            table: Collection name
            operation: Kind of mutation
            record: Stamped record snapshot
            client_id: This client's id

        Returns:
            The enqueued operation
        """
        op = PendingOperation(
            id=str(uuid.uuid4()),
            table=table,
            operation=operation,
            data=record,
            timestamp=int(record[UPDATED_AT_FIELD]),
            client_id=client_id,
            version=int(record[VERSION_FIELD]),
        )
        cursor = await txn.conn.execute(
            """
            INSERT INTO pending_operations
                (id, table_name, record_id, operation, data, timestamp, client_id, version, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                op.id,
                op.table,
                op.record_id,
                op.operation.value,
                json.dumps(op.data),
                op.timestamp,
                op.client_id,
                op.version,
                op.status.value,
            ),
        )
        op.sequence = cursor.lastrowid
        await cursor.close()
        return op

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_retryable(self, limit: int, max_retries: int) -> list[PendingOperation]:
        """Operations to push next, in enqueue order.

        Includes everything still ``pending`` plus ``error`` operations that
        failed for a transient server reason and have attempts left.
        Forbidden and validation rejections wait for an operator.

        Args:
            limit: Maximum operations to return (batch size)
            max_retries: Attempts after which a transient failure stops retrying
        """
        return await self._select(
            "WHERE status = ? OR (status = ? AND last_error = ? AND attempts < ?) "
            "ORDER BY seq LIMIT ?",
            (
                OperationStatus.PENDING.value,
                OperationStatus.ERROR.value,
                RejectionReason.SERVER_ERROR.value,
                max_retries,
                limit,
            ),
        )

    async def get_pending(self) -> list[PendingOperation]:
        return await self._select(
            "WHERE status = ? ORDER BY seq", (OperationStatus.PENDING.value,)
        )

    async def get_failed(self) -> list[PendingOperation]:
        return await self._select(
            "WHERE status = ? ORDER BY seq", (OperationStatus.ERROR.value,)
        )

    async def get(self, op_id: str) -> PendingOperation | None:
        ops = await self._select("WHERE id = ?", (op_id,))
        return ops[0] if ops else None

    async def count_by_status(self) -> dict[OperationStatus, int]:
        counts = {status: 0 for status in OperationStatus}
        async with self.store.read() as conn:
            async with conn.execute(
                "SELECT status, COUNT(*) FROM pending_operations GROUP BY status"
            ) as cursor:
                async for status, count in cursor:
                    counts[OperationStatus(status)] = count
        return counts

    # =========================================================================
    # Status transitions
    # =========================================================================

    async def apply_outcomes(self, outcomes: list[PushOutcome]) -> dict[str, int]:
        """Record the server's verdict for each pushed operation.

        applied / superseded -> synced; rejected -> error with the reason.
        All transitions of one push commit together.

        Returns:
            Count per outcome value
        """
        counts = {outcome.value: 0 for outcome in PushOutcomeType}

        async with self.store.transaction() as txn:
            for outcome in outcomes:
                counts[outcome.outcome.value] += 1
                if outcome.outcome is PushOutcomeType.REJECTED:
                    await txn.conn.execute(
                        "UPDATE pending_operations SET status = ?, attempts = attempts + 1, "
                        "last_error = ? WHERE id = ?",
                        (
                            OperationStatus.ERROR.value,
                            outcome.reason or RejectionReason.VALIDATION_FAILURE.value,
                            outcome.id,
                        ),
                    )
                else:
                    await txn.conn.execute(
                        "UPDATE pending_operations SET status = ?, last_error = NULL WHERE id = ?",
                        (OperationStatus.SYNCED.value, outcome.id),
                    )

        return counts

    async def retry(self, op_id: str) -> bool:
        """Operator hook: put a failed operation back in the pending queue."""
        async with self.store.transaction() as txn:
            cursor = await txn.conn.execute(
                "UPDATE pending_operations SET status = ?, attempts = 0, last_error = NULL "
                "WHERE id = ? AND status = ?",
                (OperationStatus.PENDING.value, op_id, OperationStatus.ERROR.value),
            )
            changed = cursor.rowcount
            await cursor.close()
        return changed > 0

    async def retry_all_failed(self) -> int:
        """Operator hook: requeue every failed operation."""
        async with self.store.transaction() as txn:
            cursor = await txn.conn.execute(
                "UPDATE pending_operations SET status = ?, attempts = 0, last_error = NULL "
                "WHERE status = ?",
                (OperationStatus.PENDING.value, OperationStatus.ERROR.value),
            )
            changed = cursor.rowcount
            await cursor.close()
        return changed

    async def discard(self, op_id: str) -> bool:
        """Operator hook: drop a failed operation for good.

        Only ``error`` operations can be discarded; pending ones are never
        dropped.
        """
        async with self.store.transaction() as txn:
            cursor = await txn.conn.execute(
                "DELETE FROM pending_operations WHERE id = ? AND status = ?",
                (op_id, OperationStatus.ERROR.value),
            )
            changed = cursor.rowcount
            await cursor.close()
        return changed > 0

    async def purge_synced(self) -> int:
        """Remove acknowledged operations."""
        async with self.store.transaction() as txn:
            cursor = await txn.conn.execute(
                "DELETE FROM pending_operations WHERE status = ?",
                (OperationStatus.SYNCED.value,),
            )
            changed = cursor.rowcount
            await cursor.close()
        return changed

    async def export_failed(self, path: Path) -> int:
        """Write failed operations to a JSONL file for offline inspection.

        Returns:
            Number of operations written
        """
        failed = await self.get_failed()
        await aiofiles.os.makedirs(path.parent, exist_ok=True)

        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            for op in failed:
                line = op.to_dict()
                line["attempts"] = op.attempts
                line["lastError"] = op.last_error
                await f.write(json.dumps(line) + "\n")

        return len(failed)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _select(self, clause: str, params: tuple[Any, ...]) -> list[PendingOperation]:
        async with self.store.read() as conn:
            async with conn.execute(
                f"SELECT {_COLUMNS} FROM pending_operations {clause}", params
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_operation(row) for row in rows]


def _row_to_operation(row: Any) -> PendingOperation:
    seq, op_id, table, operation, data, timestamp, client_id, version, status, attempts, last_error = row
    return PendingOperation(
        id=op_id,
        table=table,
        operation=OperationType(operation),
        data=json.loads(data),
        timestamp=timestamp,
        client_id=client_id,
        version=version,
        status=OperationStatus(status),
        attempts=attempts,
        last_error=last_error,
        sequence=seq,
    )
