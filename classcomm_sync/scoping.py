"""
Sync schema and row-scoping policy.

Each synced table declares which field binds a row to its tenant, and
optionally a flag that makes a row visible to every tenant (system
defaults such as the stock message templates). The same predicate is
checked on every push and every pull:

    owner_field == tenant_id  OR  shared_field is true

Tenant ids always come from the authenticated caller, never from the
payload.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .exceptions import ForbiddenError, ValidationError
from .sync.version import SYNC_FIELDS


@dataclass(frozen=True)
class AccessDecision:
    """Result of a row-scoping check."""

    allowed: bool
    reason: str


@dataclass(frozen=True)
class TableSchema:
    """Sync definition of one table.

    Attributes:
        name: Table / collection name
        owner_field: Record field holding the owning tenant id
        shared_field: Optional boolean field admitting the row for all tenants
        columns: Business columns; empty means any payload is accepted
        primary_key: Identity field of the record
    """

    name: str
    owner_field: str = "userId"
    shared_field: str | None = None
    columns: tuple[str, ...] = ()
    primary_key: str = "id"

    def owner_of(self, record: dict[str, Any]) -> str | None:
        owner = record.get(self.owner_field)
        return str(owner) if owner is not None else None

    def is_shared(self, record: dict[str, Any]) -> bool:
        if self.shared_field is None:
            return False
        return record.get(self.shared_field) is True

    def check(self, record: dict[str, Any], tenant_id: str) -> AccessDecision:
        """Evaluate the scoping predicate for one record."""
        if self.owner_of(record) == tenant_id:
            return AccessDecision(allowed=True, reason="owner")
        if self.is_shared(record):
            return AccessDecision(allowed=True, reason="shared")
        return AccessDecision(allowed=False, reason="not_owner")

    def validate_columns(self, record: dict[str, Any]) -> None:
        """Reject fields that are neither business columns nor sync metadata."""
        if not self.columns:
            return
        allowed = set(self.columns) | SYNC_FIELDS
        unknown = sorted(key for key in record if key not in allowed)
        if unknown:
            raise ValidationError(
                f"{self.name}.data", "unknown columns", ",".join(unknown)
            )


class SyncSchema:
    """The set of tables a client and server agree to sync."""

    def __init__(self, tables: Iterable[TableSchema]):
        self._tables = {table.name: table for table in tables}

    @property
    def table_names(self) -> list[str]:
        return list(self._tables)

    def primary_keys(self) -> dict[str, str]:
        """Mapping of table name to primary key, used to initialize local stores."""
        return {name: table.primary_key for name, table in self._tables.items()}

    def __contains__(self, name: object) -> bool:
        return name in self._tables

    def table(self, name: str) -> TableSchema:
        """Look up a table definition.

        Raises:
            ValidationError: If the table is not part of the schema
        """
        try:
            return self._tables[name]
        except KeyError:
            raise ValidationError("table", "not a synced table", name) from None


class RowScopingPolicy:
    """Enforces the per-table tenant predicate on push and pull."""

    def __init__(self, schema: SyncSchema):
        self.schema = schema

    def can_read(self, table: str, record: dict[str, Any], tenant_id: str) -> bool:
        """Whether a row may be returned to ``tenant_id``.

        Unknown tables are never readable.
        """
        if table not in self.schema:
            return False
        return self.schema.table(table).check(record, tenant_id).allowed

    def check_write(
        self,
        table: str,
        record_id: str,
        candidate: dict[str, Any],
        stored: dict[str, Any] | None,
        tenant_id: str,
    ) -> None:
        """Verify a pushed record may be accepted from ``tenant_id``.

        Both the incoming version and the currently stored row must
        satisfy the predicate, so a tenant cannot claim another tenant's
        row by pushing a copy carrying its own owner id. A row reachable
        only through its shared flag may be edited but must keep its
        owner and stay shared.

        Raises:
            ForbiddenError: If either version falls outside the tenant's scope
        """
        definition = self.schema.table(table)
        if not definition.check(candidate, tenant_id).allowed:
            raise ForbiddenError(tenant_id, table, record_id)
        if stored is None:
            return

        stored_access = definition.check(stored, tenant_id)
        if not stored_access.allowed:
            raise ForbiddenError(tenant_id, table, record_id)
        if stored_access.reason == "shared" and (
            definition.owner_of(candidate) != definition.owner_of(stored)
            or not definition.is_shared(candidate)
        ):
            raise ForbiddenError(tenant_id, table, record_id)


# =============================================================================
# Default schema of the parent-communication application
# =============================================================================

DEFAULT_SCHEMA = SyncSchema(
    [
        TableSchema(
            name="students",
            columns=(
                "userId", "firstName", "lastName", "grade", "class", "notes", "createdAt",
            ),
        ),
        TableSchema(
            name="contacts",
            columns=(
                "userId", "studentId", "name", "relationship", "email", "phone",
                "preferredMethod", "preferredLanguage", "notes", "createdAt",
            ),
        ),
        TableSchema(
            name="communications",
            columns=(
                "userId", "studentId", "contactId", "subject", "message",
                "translatedMessage", "targetLanguage", "tone", "status", "method",
                "scheduledFor", "sentAt", "templateId", "tags", "followUpDate",
                "followUpCompleted", "createdAt",
            ),
        ),
        TableSchema(
            name="templates",
            shared_field="isDefault",
            columns=(
                "userId", "name", "category", "subject", "body", "tone",
                "usageCount", "isDefault", "createdAt",
            ),
        ),
        TableSchema(
            name="reminders",
            columns=(
                "userId", "communicationId", "dueDate", "description", "completed",
                "completedAt", "createdAt",
            ),
        ),
        # One settings row per teacher, keyed by the teacher's user id
        TableSchema(
            name="settings",
            owner_field="id",
            columns=(
                "teacherName", "schoolName", "defaultLanguage", "theme", "updatedAt",
            ),
        ),
    ]
)
