"""
Versioned record metadata.

Every synced row carries the same metadata fields next to its business
columns:

- ``id``: stable identity, never changes
- ``_version``: +1 on every accepted mutation, 1 on insert
- ``_updatedAt``: epoch milliseconds of the mutation
- ``_clientId``: client instance that produced the mutation
- ``_isDeleted``: tombstone flag; rows are never hard-deleted

This module extracts and stamps that metadata. Ordering between two
versions lives in :mod:`classcomm_sync.sync.conflict`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

ID_FIELD = "id"
VERSION_FIELD = "_version"
UPDATED_AT_FIELD = "_updatedAt"
CLIENT_ID_FIELD = "_clientId"
DELETED_FIELD = "_isDeleted"

SYNC_FIELDS = frozenset(
    {ID_FIELD, VERSION_FIELD, UPDATED_AT_FIELD, CLIENT_ID_FIELD, DELETED_FIELD}
)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RecordVersion:
    """The ordering-relevant metadata of one record version.

    Attributes:
        version: Monotonic per-record version number
        updated_at: Epoch milliseconds of the mutation
        client_id: Originating client instance
        is_deleted: Tombstone flag (carried along, never used for ordering)
    """

    version: int
    updated_at: int
    client_id: str
    is_deleted: bool = False

    @property
    def order_key(self) -> tuple[int, int, str]:
        """Total order: version, then timestamp, then client id."""
        return (self.version, self.updated_at, self.client_id)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> RecordVersion:
        """Read the metadata off a record dict.

        Missing fields default to the lowest possible value so that a
        record without metadata never beats one that has it.
        """
        return cls(
            version=int(record.get(VERSION_FIELD) or 0),
            updated_at=int(record.get(UPDATED_AT_FIELD) or 0),
            client_id=str(record.get(CLIENT_ID_FIELD) or ""),
            is_deleted=bool(record.get(DELETED_FIELD, False)),
        )


def stamp(
    record: dict[str, Any],
    version: int,
    client_id: str,
    updated_at: int | None = None,
    deleted: bool = False,
) -> dict[str, Any]:
    """Return a copy of ``record`` with fresh sync metadata.

    Args:
        record: Business fields plus ``id``
        version: Version number to assign
        client_id: Client producing this version
        updated_at: Mutation time (defaults to now)
        deleted: Whether this version is a tombstone

    Returns:
        New dict; the input is not modified
    """
    stamped = dict(record)
    stamped[VERSION_FIELD] = version
    stamped[UPDATED_AT_FIELD] = updated_at if updated_at is not None else now_ms()
    stamped[CLIENT_ID_FIELD] = client_id
    stamped[DELETED_FIELD] = deleted
    return stamped


def next_version(current: dict[str, Any] | None) -> int:
    """Version number a local mutation of ``current`` should produce."""
    if current is None:
        return 1
    return int(current.get(VERSION_FIELD) or 0) + 1


def business_fields(record: dict[str, Any]) -> dict[str, Any]:
    """Strip sync metadata, leaving business columns (``id`` excluded)."""
    return {key: value for key, value in record.items() if key not in SYNC_FIELDS}
