"""
Server sync engine.

Authoritative side of the protocol:

- push: validate, scope-check and conflict-resolve each operation, then
  write the record and append the change log entry in one transaction
- pull: serve change log entries after a cursor, filtered by tenant

Concurrent pushes for the same record are serialized by a compare-and-swap
on the stored version metadata; a lost race re-reads and re-resolves.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from typing import Any

from ..auth import require_tenant
from ..config import ServerSyncConfig
from ..exceptions import ForbiddenError, StorageIOError, ValidationError
from ..logging_utils import SyncLoggerAdapter
from ..protocol import (
    OperationType,
    PendingOperation,
    PullResult,
    PushOutcome,
    PushOutcomeType,
    RejectionReason,
)
from ..scoping import DEFAULT_SCHEMA, RowScopingPolicy, SyncSchema, TableSchema
from ..sync.conflict import Resolution, resolve_records
from ..sync.version import (
    CLIENT_ID_FIELD,
    DELETED_FIELD,
    ID_FIELD,
    UPDATED_AT_FIELD,
    VERSION_FIELD,
    RecordVersion,
)
from .changelog import ChangeLog
from .database import ServerDatabase
from .store import AuthoritativeStore

logger = logging.getLogger(__name__)


class ServerSyncEngine:
    """Applies pushes and serves pulls against the authoritative database.

    Example:
        >>> server = await ServerSyncEngine.create(ServerSyncConfig(db_path="sync.db"))
        >>> outcomes = await server.push([op.to_dict()], tenant_id="teacher-1")
        >>> page = await server.pull(0, "client-1", tenant_id="teacher-1")
    """

    def __init__(
        self,
        database: ServerDatabase,
        schema: SyncSchema = DEFAULT_SCHEMA,
        config: ServerSyncConfig | None = None,
    ):
        self.database = database
        self.config = config or database.config
        self.schema = schema
        self.policy = RowScopingPolicy(schema)
        self.store = AuthoritativeStore(database)
        self.changelog = ChangeLog(database)

    @classmethod
    async def create(
        cls,
        config: ServerSyncConfig | None = None,
        schema: SyncSchema = DEFAULT_SCHEMA,
    ) -> ServerSyncEngine:
        """Open the database described by ``config`` and build an engine."""
        config = config or ServerSyncConfig()
        database = ServerDatabase(config)
        await database.initialize()
        return cls(database, schema, config)

    async def close(self) -> None:
        await self.database.close()

    # =========================================================================
    # Push
    # =========================================================================

    async def push(
        self,
        operations: Sequence[PendingOperation | dict[str, Any]],
        tenant_id: str | None,
    ) -> list[PushOutcome]:
        """Apply operations in order for an authenticated tenant.

        Args:
            operations: Pending operations, parsed or in wire format
            tenant_id: Authenticated tenant; never taken from the payload

        Returns:
            One outcome per operation, in input order

        Raises:
            UnauthorizedError: If no tenant is supplied
        """
        tenant = require_tenant(tenant_id)
        log = SyncLoggerAdapter(logger, {"tenant_id": tenant})
        log.info(f"Push received: {len(operations)} operations")

        outcomes: list[PushOutcome] = []
        pushed_by: dict[str, int] = {}
        for raw in operations:
            outcome, client_id = await self._push_one(raw, tenant, log)
            outcomes.append(outcome)
            if client_id:
                pushed_by[client_id] = pushed_by.get(client_id, 0) + 1

        for client_id, count in pushed_by.items():
            await self.store.touch_client(tenant, client_id, count)

        return outcomes

    async def _push_one(
        self,
        raw: PendingOperation | dict[str, Any],
        tenant_id: str,
        log: logging.LoggerAdapter,
    ) -> tuple[PushOutcome, str | None]:
        op_id = raw.id if isinstance(raw, PendingOperation) else _raw_id(raw)

        try:
            op = raw if isinstance(raw, PendingOperation) else PendingOperation.from_dict(raw)
        except ValidationError as e:
            log.warning(f"Operation {op_id} rejected: {e}")
            return _rejected(op_id, RejectionReason.VALIDATION_FAILURE), None

        try:
            recorded = await self.store.get_recorded_outcome(tenant_id, op.id)
            if recorded is not None:
                log.debug(f"Operation {op.id} replayed, returning recorded outcome")
                return recorded, op.client_id

            outcome = await self._apply(op, tenant_id)
        except ForbiddenError as e:
            log.warning(f"Operation {op.id} rejected: {e}")
            outcome = _rejected(op.id, RejectionReason.FORBIDDEN)
        except ValidationError as e:
            log.warning(f"Operation {op.id} rejected: {e}")
            outcome = _rejected(op.id, RejectionReason.VALIDATION_FAILURE)
        except (sqlite3.Error, StorageIOError) as e:
            log.error(f"Operation {op.id} failed: {e}")
            outcome = _rejected(op.id, RejectionReason.SERVER_ERROR)
        else:
            log.debug(
                f"Operation {op.id} on {op.table}/{op.record_id}: "
                f"{outcome.outcome.value} (version={outcome.version})"
            )

        return outcome, op.client_id

    async def _apply(self, op: PendingOperation, tenant_id: str) -> PushOutcome:
        definition = self.schema.table(op.table)
        candidate = self._candidate_record(op, definition)
        record_id = candidate[ID_FIELD]

        for attempt in range(self.config.max_cas_retries):
            stored = await self.store.get(op.table, record_id)
            self.policy.check_write(op.table, record_id, candidate, stored, tenant_id)
            _check_version_step(op, stored)

            decision = resolve_records(candidate, stored)
            if decision.resolution is Resolution.STORED_WINS:
                outcome = PushOutcome(
                    id=op.id,
                    outcome=PushOutcomeType.SUPERSEDED,
                    version=int(stored[VERSION_FIELD]),
                )
                async with self.database.transaction() as conn:
                    await self.store.record_outcome(conn, tenant_id, outcome)
                return outcome

            if decision.resolution is Resolution.IDENTICAL:
                # Same version already stored (lost acknowledgement)
                outcome = PushOutcome(
                    id=op.id,
                    outcome=PushOutcomeType.APPLIED,
                    version=int(stored[VERSION_FIELD]),
                )
                async with self.database.transaction() as conn:
                    await self.store.record_outcome(conn, tenant_id, outcome)
                return outcome

            expected = RecordVersion.from_record(stored) if stored is not None else None
            async with self.database.transaction() as conn:
                swapped = await self.store.compare_and_swap(
                    conn,
                    op.table,
                    record_id,
                    expected,
                    candidate,
                    definition.owner_of(candidate),
                    definition.is_shared(candidate),
                )
                if swapped:
                    sequence = await self.changelog.append(
                        conn,
                        op.table,
                        record_id,
                        candidate,
                        definition.owner_of(candidate),
                        definition.is_shared(candidate),
                    )
                    outcome = PushOutcome(
                        id=op.id,
                        outcome=PushOutcomeType.APPLIED,
                        version=candidate[VERSION_FIELD],
                        sequence=sequence,
                    )
                    await self.store.record_outcome(conn, tenant_id, outcome)

            if swapped:
                return outcome

            logger.debug(
                f"Version of {op.table}/{record_id} changed during push, "
                f"retrying (attempt {attempt + 1})"
            )

        raise StorageIOError(
            "compare_and_swap", f"{op.table}/{record_id}", RuntimeError("too much contention")
        )

    def _candidate_record(self, op: PendingOperation, definition: TableSchema) -> dict[str, Any]:
        """Build the record version an operation proposes.

        The operation envelope is authoritative for the sync metadata;
        the snapshot's copies must agree with it.
        """
        data = dict(op.data)
        record_id = data.get(definition.primary_key)
        if not isinstance(record_id, str) or not record_id:
            raise ValidationError(definition.primary_key, "record needs a non-empty string id")

        definition.validate_columns(data)

        snapshot_version = data.get(VERSION_FIELD)
        if snapshot_version is not None and snapshot_version != op.version:
            raise ValidationError(VERSION_FIELD, "does not match operation version", str(snapshot_version))

        updated_at = data.get(UPDATED_AT_FIELD, op.timestamp)
        if isinstance(updated_at, bool) or not isinstance(updated_at, int):
            raise ValidationError(UPDATED_AT_FIELD, "must be epoch milliseconds", str(updated_at))

        data[ID_FIELD] = record_id
        data[VERSION_FIELD] = op.version
        data[UPDATED_AT_FIELD] = updated_at
        data[CLIENT_ID_FIELD] = op.client_id
        data[DELETED_FIELD] = op.operation is OperationType.DELETE
        return data

    # =========================================================================
    # Pull
    # =========================================================================

    async def pull(
        self,
        last_sync: int,
        client_id: str,
        tenant_id: str | None,
        limit: int | None = None,
    ) -> PullResult:
        """Change log entries after ``last_sync`` visible to the tenant.

        Safe to repeat with the same cursor; has no side effects.

        Raises:
            UnauthorizedError: If no tenant is supplied
            ValidationError: If the cursor is not a non-negative integer
        """
        tenant = require_tenant(tenant_id)
        if isinstance(last_sync, bool) or not isinstance(last_sync, int) or last_sync < 0:
            raise ValidationError("lastSync", "must be a non-negative integer", str(last_sync))

        page_size = self.config.pull_batch_size
        if limit is not None:
            page_size = max(1, min(limit, page_size))

        entries = await self.changelog.since(last_sync, tenant, page_size + 1)
        has_more = len(entries) > page_size
        entries = entries[:page_size]

        changes = [e for e in entries if self.policy.can_read(e.table, e.data, tenant)]
        cursor = entries[-1].sequence if entries else last_sync

        logger.debug(
            f"Pull for client {client_id}: {len(changes)} changes after {last_sync}, "
            f"cursor={cursor} has_more={has_more}"
        )
        return PullResult(changes=changes, cursor=cursor, has_more=has_more)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_record(self, table: str, record_id: str, tenant_id: str | None) -> dict[str, Any] | None:
        """Current authoritative version of a record, if visible to the tenant."""
        tenant = require_tenant(tenant_id)
        record = await self.store.get(table, record_id)
        if record is None or not self.policy.can_read(table, record, tenant):
            return None
        return record

    async def list_records(self, table: str, tenant_id: str | None) -> list[dict[str, Any]]:
        """Every record of ``table`` visible to the tenant, tombstones included."""
        tenant = require_tenant(tenant_id)
        self.schema.table(table)
        records = await self.store.scan(table, tenant)
        return [r for r in records if self.policy.can_read(table, r, tenant)]


def _raw_id(raw: Any) -> str:
    if isinstance(raw, dict) and isinstance(raw.get("id"), str):
        return raw["id"]
    return ""


def _rejected(op_id: str, reason: RejectionReason) -> PushOutcome:
    return PushOutcome(id=op_id, outcome=PushOutcomeType.REJECTED, reason=reason.value)


def _check_version_step(op: PendingOperation, stored: dict[str, Any] | None) -> None:
    """A write may move a record forward by at most one version.

    Inserts start at 1. Equal or lower versions are left to conflict
    resolution, which reports them as superseded.

    Raises:
        ValidationError: If the operation skips versions
    """
    if stored is None:
        if op.version != 1:
            raise ValidationError(VERSION_FIELD, "a new record starts at version 1", str(op.version))
        return
    if op.version > int(stored[VERSION_FIELD]) + 1:
        raise ValidationError(
            VERSION_FIELD,
            f"skips ahead of stored version {stored[VERSION_FIELD]}",
            str(op.version),
        )
