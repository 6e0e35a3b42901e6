"""
Per-table record access for application code.

Writes go through the local store, so they work offline and are queued
for the next sync cycle.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from ..exceptions import RecordNotFoundError, ValidationError
from .version import DELETED_FIELD, ID_FIELD, business_fields

if TYPE_CHECKING:
    from .engine import ClientSyncEngine


class Collection:
    """CRUD handle for one synced table.

    Example:
        >>> students = engine.collection("students")
        >>> student = await students.create({"userId": "t1", "firstName": "Ada"})
        >>> await students.update(student["id"], {"grade": "5"})
        >>> await students.delete(student["id"])
    """

    def __init__(self, engine: ClientSyncEngine, table: str):
        self.engine = engine
        self.table = table

    @property
    def _store(self):
        return self.engine.store

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a new record; an ``id`` is generated when absent.

        Raises:
            ValidationError: If a live record with that id already exists
        """
        record = business_fields(data)
        record_id = data.get(ID_FIELD) or str(uuid.uuid4())
        record[ID_FIELD] = record_id

        existing = await self._store.get(self.table, record_id)
        if existing is not None and not existing.get(DELETED_FIELD):
            raise ValidationError(ID_FIELD, "record already exists", record_id)

        op = await self._store.put(self.table, record, self.engine.client_id)
        return op.data

    async def update(self, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge ``changes`` into a live record.

        Raises:
            RecordNotFoundError: If the record is missing or deleted
        """
        current = await self.get(record_id)
        if current is None:
            raise RecordNotFoundError(self.table, record_id)

        record = {**business_fields(current), **business_fields(changes), ID_FIELD: record_id}
        op = await self._store.put(self.table, record, self.engine.client_id)
        return op.data

    async def restore(self, record_id: str) -> dict[str, Any]:
        """Bring a tombstoned record back to life as a new version."""
        current = await self._store.get(self.table, record_id)
        if current is None:
            raise RecordNotFoundError(self.table, record_id)

        record = {**business_fields(current), ID_FIELD: record_id}
        op = await self._store.put(self.table, record, self.engine.client_id)
        return op.data

    async def delete(self, record_id: str) -> None:
        """Tombstone a record. Deleting twice is a no-op.

        Raises:
            RecordNotFoundError: If the record was never seen locally
        """
        await self._store.delete(self.table, record_id, self.engine.client_id)

    async def get(self, record_id: str, include_deleted: bool = False) -> dict[str, Any] | None:
        record = await self._store.get(self.table, record_id)
        if record is None or (record.get(DELETED_FIELD) and not include_deleted):
            return None
        return record

    async def list(self, include_deleted: bool = False) -> list[dict[str, Any]]:
        return await self._store.scan(self.table, include_deleted=include_deleted)
