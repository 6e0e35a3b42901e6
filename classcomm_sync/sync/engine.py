"""
Client synchronization engine.

Orchestrates push-then-pull cycles between the local store and the server:
- Push: pending operations -> server, statuses updated from the outcomes
- Pull: change log entries after the cursor -> local store
- Last-write-wins conflict resolution per record
- Single-flight cycles, periodic scheduling with exponential backoff

Cancellation and failure leave local state exactly as it was: operations
are only marked after a push response arrives, and each pulled page is
applied together with its cursor in one transaction.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TypeVar

from ..config import ClientSyncConfig
from ..exceptions import (
    StorageIOError,
    StorageUnavailableError,
    SyncInProgressError,
    SyncStorageError,
    TransportFailureError,
)
from ..local.store import LAST_SYNC_KEY, LocalStore
from ..logging_utils import SyncLoggerAdapter
from ..protocol import (
    ChangeLogEntry,
    OperationStatus,
    PendingOperation,
    PullResult,
    PushOutcome,
    PushOutcomeType,
    SyncStatus,
)
from ..scoping import DEFAULT_SCHEMA, SyncSchema
from .client import SyncTransport
from .collection import Collection
from .conflict import resolve_records

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncState(Enum):
    """Current state of the sync engine."""

    IDLE = "idle"
    SYNCING = "syncing"
    PAUSED = "paused"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass
class SyncResult:
    """Result of one sync cycle."""

    success: bool
    pushed: int = 0
    superseded: int = 0
    rejected: int = 0
    pulled: int = 0
    skipped: bool = False
    rejections: list[PushOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


class ClientSyncEngine:
    """Offline-first sync engine for one client instance.

    Construct once per process/session and pass it to the code that needs
    it; there is no module-level instance.

    Example:
        >>> engine = await ClientSyncEngine.create(transport, ClientSyncConfig(db_path="local.db"))
        >>> students = engine.collection("students")
        >>> await students.create({"userId": "t1", "firstName": "Ada", ...})
        >>> result = await engine.sync_now()
        >>> await engine.start_auto_sync()
    """

    def __init__(
        self,
        store: LocalStore,
        transport: SyncTransport,
        config: ClientSyncConfig | None = None,
        schema: SyncSchema = DEFAULT_SCHEMA,
    ):
        """Initialize the sync engine.

        Args:
            store: Local store (opened by init() if not yet open)
            transport: Push/pull transport
            config: Sync configuration
            schema: Tables this client syncs
        """
        self.store = store
        self.transport = transport
        self.config = config or ClientSyncConfig()
        self.schema = schema

        self._client_id: str | None = None
        self._last_sync = 0
        self._state = SyncState.IDLE
        self._paused = False
        self._consecutive_failures = 0
        self._cycle_lock = asyncio.Lock()
        self._sync_task: asyncio.Task[None] | None = None
        self._log: logging.LoggerAdapter = SyncLoggerAdapter(logger, {})

    @classmethod
    async def create(
        cls,
        transport: SyncTransport,
        config: ClientSyncConfig | None = None,
        schema: SyncSchema = DEFAULT_SCHEMA,
    ) -> ClientSyncEngine:
        """Open the local store described by ``config`` and initialize an engine."""
        config = config or ClientSyncConfig()
        store = LocalStore(config.db_path, schema.primary_keys())
        engine = cls(store, transport, config, schema)
        await engine.init()
        return engine

    async def init(self) -> None:
        """Open the store and load the persisted client id and cursor.

        Raises:
            StorageUnavailableError: If the local store cannot be opened
        """
        await self.store.initialize()
        try:
            self._client_id = await self.store.get_or_create_client_id()
            self._last_sync = await self.store.get_last_sync()
        except sqlite3.Error as e:
            raise StorageUnavailableError(str(self.store.db_path), e) from e

        self._log = SyncLoggerAdapter(logger, {"client_id": self._client_id})
        self._log.info(f"Sync engine initialized (last_sync={self._last_sync})")

    async def close(self) -> None:
        """Stop background sync and release resources."""
        await self.stop_auto_sync()
        await self.transport.close()
        await self.store.close()

    @property
    def client_id(self) -> str:
        if self._client_id is None:
            raise StorageUnavailableError(str(self.store.db_path))
        return self._client_id

    @property
    def last_sync(self) -> int:
        return self._last_sync

    @property
    def state(self) -> SyncState:
        """Get current sync state."""
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._cycle_lock.locked()

    def collection(self, table: str) -> Collection:
        """Get a handle for reading and writing one synced table."""
        self.schema.table(table)
        return Collection(self, table)

    # =========================================================================
    # Cycle
    # =========================================================================

    async def sync_now(self, raise_if_running: bool = False) -> SyncResult:
        """Run one push-then-pull cycle.

        If a cycle is already running the call returns immediately with
        ``skipped=True``; cycles never overlap.

        Args:
            raise_if_running: Raise instead of returning a skipped result

        Returns:
            Result of the cycle

        Raises:
            SyncInProgressError: If a cycle is running and raise_if_running is set
        """
        if self._cycle_lock.locked():
            if raise_if_running:
                raise SyncInProgressError(self.client_id)
            return SyncResult(success=False, skipped=True, errors=["Sync already in progress"])

        async with self._cycle_lock:
            previous_state = self._state
            self._state = SyncState.SYNCING
            start_time = datetime.now(UTC)
            result = SyncResult(success=True)
            self._log.info("Sync cycle started")

            try:
                await self._push(result)
                result.pulled = await self._pull()
            except TransportFailureError as e:
                self._consecutive_failures += 1
                self._state = SyncState.OFFLINE
                result.success = False
                result.errors.append(str(e))
                self._log.warning(
                    f"Sync cycle aborted, server unreachable "
                    f"(failure #{self._consecutive_failures}): {e.details.get('cause', e)}"
                )
            except (SyncStorageError, sqlite3.Error) as e:
                self._consecutive_failures += 1
                self._state = SyncState.ERROR
                result.success = False
                result.errors.append(str(e))
                self._log.error(f"Sync cycle failed: {e}")
            except asyncio.CancelledError:
                self._state = previous_state if previous_state is not SyncState.SYNCING else SyncState.IDLE
                raise
            else:
                self._consecutive_failures = 0
                self._state = SyncState.PAUSED if self._paused else SyncState.IDLE

            result.duration_ms = int((datetime.now(UTC) - start_time).total_seconds() * 1000)
            self._log.info(
                f"Sync cycle finished: pushed={result.pushed} superseded={result.superseded} "
                f"rejected={result.rejected} pulled={result.pulled} success={result.success}"
            )
            return result

    async def _push(self, result: SyncResult) -> None:
        """Push retryable operations in enqueue order, one batch at a time.

        Each operation is sent at most once per cycle. An operation left
        retryable by the server holds back later operations on the same
        record until the next cycle.
        """
        attempted: set[str] = set()
        window = self.config.batch_size

        while True:
            operations = await self.store.queue.get_retryable(window, self.config.max_retries)
            held: set[tuple[str, str]] = set()
            batch: list[PendingOperation] = []
            for op in operations:
                key = (op.table, op.record_id)
                if op.id in attempted or key in held:
                    held.add(key)
                    continue
                batch.append(op)

            if len(batch) < self.config.batch_size and len(operations) == window:
                # Held operations fill the window; look further down the queue
                window += self.config.batch_size
                continue
            batch = batch[: self.config.batch_size]
            if not batch:
                return

            outcomes = await self._call(self.transport.push(batch), "push")
            attempted.update(op.id for op in batch)

            counts = await self.store.queue.apply_outcomes(outcomes)
            result.pushed += counts[PushOutcomeType.APPLIED.value]
            result.superseded += counts[PushOutcomeType.SUPERSEDED.value]
            result.rejected += counts[PushOutcomeType.REJECTED.value]

            for outcome in outcomes:
                if outcome.outcome is PushOutcomeType.REJECTED:
                    result.rejections.append(outcome)
                    self._log.warning(f"Operation {outcome.id} rejected: {outcome.reason}")
                else:
                    self._log.debug(f"Operation {outcome.id} {outcome.outcome.value}")

            await self.store.queue.purge_synced()

    async def _pull(self) -> int:
        """Pull pages until the server reports no more changes."""
        applied = 0
        while True:
            before = self._last_sync
            page: PullResult = await self._call(
                self.transport.pull(self._last_sync, self.client_id), "pull"
            )
            applied += await self._apply_page(page)
            if not page.has_more or self._last_sync <= before:
                return applied

    async def _apply_page(self, page: PullResult) -> int:
        """Apply one page of changes and advance the cursor, atomically.

        Returns:
            Number of entries that changed the local store
        """
        applied = 0
        new_cursor = max(self._last_sync, page.cursor)

        async with self.store.transaction() as txn:
            for entry in page.changes:
                if entry.table not in self.store.collections:
                    self._log.warning(f"Ignoring change for unknown table {entry.table}")
                    continue

                local = await txn.get(entry.table, entry.record_id)
                if self._is_self_echo(entry, local):
                    continue

                decision = resolve_records(entry.data, local)
                if decision.candidate_wins:
                    await txn.write(entry.table, entry.data)
                    applied += 1
                    self._log.debug(
                        f"Applied {entry.table}/{entry.record_id} v{entry.version} "
                        f"(decided by {decision.decided_by})"
                    )

            await txn.set_state(LAST_SYNC_KEY, str(new_cursor))

        self._last_sync = new_cursor
        return applied

    def _is_self_echo(self, entry: ChangeLogEntry, local: dict | None) -> bool:
        """Our own write coming back, with the local copy already as new or newer.

        Another tab of the same client may have written a later version, so
        the origin alone is not enough; the version must be compared too.
        """
        if entry.origin_client_id != self._client_id or local is None:
            return False
        return int(local.get("_version") or 0) >= entry.version

    async def _call(self, awaitable: Awaitable[T], name: str) -> T:
        """Await a transport call with the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.request_timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise TransportFailureError(name, "timed out") from e

    # =========================================================================
    # Status and operator hooks
    # =========================================================================

    async def get_status(self) -> SyncStatus:
        """Counts an application can show as "N changes not yet synced"."""
        counts = await self.store.queue.count_by_status()
        return SyncStatus(
            client_id=self._client_id,
            state=self._state.value,
            pending_changes=counts[OperationStatus.PENDING],
            failed_changes=counts[OperationStatus.ERROR],
            last_sync=self._last_sync,
            consecutive_failures=self._consecutive_failures,
        )

    async def get_pending_operations(self) -> list[PendingOperation]:
        return await self.store.queue.get_pending()

    async def get_failed_operations(self) -> list[PendingOperation]:
        return await self.store.queue.get_failed()

    async def retry_operation(self, op_id: str) -> bool:
        """Requeue one failed operation for the next cycle."""
        return await self.store.queue.retry(op_id)

    async def retry_failed(self) -> int:
        """Requeue every failed operation for the next cycle."""
        return await self.store.queue.retry_all_failed()

    async def discard_operation(self, op_id: str) -> bool:
        """Give up on a failed operation. The local record is left as is."""
        discarded = await self.store.queue.discard(op_id)
        if discarded:
            self._log.warning(f"Operation {op_id} discarded by operator")
        return discarded

    async def export_failed_operations(self, path: Path) -> int:
        """Dump failed operations to JSONL for support/diagnostics."""
        try:
            return await self.store.queue.export_failed(Path(path))
        except OSError as e:
            raise StorageIOError("export_failed", str(path), e) from e

    # =========================================================================
    # Scheduling
    # =========================================================================

    def next_delay_ms(self) -> int:
        """Delay before the next scheduled cycle (backoff after failures)."""
        if self._consecutive_failures:
            return self.config.backoff_ms(self._consecutive_failures)
        return self.config.sync_interval_ms

    async def start_auto_sync(self) -> None:
        """Start periodic background sync."""
        if self._sync_task is not None:
            return

        async def sync_loop() -> None:
            while True:
                await asyncio.sleep(self.next_delay_ms() / 1000)
                if self._paused:
                    continue
                try:
                    await self.sync_now()
                except Exception:
                    self._log.exception("Unexpected error in sync loop")

        self._sync_task = asyncio.create_task(sync_loop())
        self._log.info(f"Auto sync started (interval={self.config.sync_interval_ms}ms)")

    async def stop_auto_sync(self) -> None:
        """Stop periodic background sync."""
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
            self._log.info("Auto sync stopped")

    def pause(self) -> None:
        """Pause scheduled sync operations."""
        self._paused = True
        if self._state is not SyncState.SYNCING:
            self._state = SyncState.PAUSED

    def resume(self) -> None:
        """Resume scheduled sync operations."""
        self._paused = False
        if self._state is SyncState.PAUSED:
            self._state = SyncState.IDLE
