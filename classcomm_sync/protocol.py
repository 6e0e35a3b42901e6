"""
Wire and queue types shared by the client and server engines.

Wire dictionaries use the camelCase keys the browser client sends
(``lastSync``, ``clientId``, ``originClientId``); Python attributes are
snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .exceptions import ValidationError

# =============================================================================
# Enums
# =============================================================================


class OperationType(Enum):
    """Kind of local mutation captured by a pending operation."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(Enum):
    """Delivery status of a pending operation."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class PushOutcomeType(Enum):
    """Server verdict for one pushed operation."""

    APPLIED = "applied"
    SUPERSEDED = "superseded"
    REJECTED = "rejected"


class RejectionReason(Enum):
    """Why an operation was rejected or failed server-side."""

    FORBIDDEN = "forbidden"
    VALIDATION_FAILURE = "validation_failure"
    SERVER_ERROR = "server_error"

    @property
    def retryable(self) -> bool:
        """Only transient server errors are retried automatically."""
        return self is RejectionReason.SERVER_ERROR


# =============================================================================
# Pending Operation
# =============================================================================


@dataclass
class PendingOperation:
    """A local mutation awaiting transmission.

    Attributes:
        id: Operation identifier (uuid4); push outcomes are aligned on it
        table: Collection the record lives in
        operation: insert, update or delete
        data: Full record snapshot including sync metadata
        timestamp: Epoch milliseconds when the mutation was made
        client_id: Client instance that made the mutation
        version: Record version produced by the mutation
        status: pending, synced or error
        attempts: Number of pushes that returned a retryable failure
        last_error: Reason reported by the server for the last failure
        sequence: Local enqueue order (not sent on the wire)
    """

    id: str
    table: str
    operation: OperationType
    data: dict[str, Any]
    timestamp: int
    client_id: str
    version: int
    status: OperationStatus = OperationStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    sequence: int | None = None

    @property
    def record_id(self) -> str | None:
        """Identity of the record this operation targets."""
        record_id = self.data.get("id") if isinstance(self.data, dict) else None
        return record_id if isinstance(record_id, str) else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format."""
        return {
            "id": self.id,
            "table": self.table,
            "operation": self.operation.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "clientId": self.client_id,
            "version": self.version,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingOperation:
        """Parse the wire format.

        Raises:
            ValidationError: If a required key is missing or malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("operation", "must be an object")

        op_id = data.get("id")
        if not isinstance(op_id, str) or not op_id:
            raise ValidationError("id", "must be a non-empty string")

        table = data.get("table")
        if not isinstance(table, str) or not table:
            raise ValidationError("table", "must be a non-empty string")

        try:
            operation = OperationType(data.get("operation"))
        except ValueError:
            raise ValidationError(
                "operation", "must be insert, update or delete", str(data.get("operation"))
            ) from None

        payload = data.get("data")
        if not isinstance(payload, dict):
            raise ValidationError("data", "must be an object")

        client_id = data.get("clientId")
        if not isinstance(client_id, str) or not client_id:
            raise ValidationError("clientId", "must be a non-empty string")

        version = data.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ValidationError("version", "must be a positive integer", str(version))

        timestamp = _coerce_timestamp(data.get("timestamp"))

        try:
            status = OperationStatus(data.get("status", OperationStatus.PENDING.value))
        except ValueError:
            raise ValidationError("status", "unknown status", str(data.get("status"))) from None

        return cls(
            id=op_id,
            table=table,
            operation=operation,
            data=payload,
            timestamp=timestamp,
            client_id=client_id,
            version=version,
            status=status,
        )


def _coerce_timestamp(value: Any) -> int:
    """Accept epoch milliseconds or an ISO string, return epoch milliseconds."""
    if isinstance(value, bool):
        raise ValidationError("timestamp", "must be epoch milliseconds or ISO 8601")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            pass
    raise ValidationError("timestamp", "must be epoch milliseconds or ISO 8601", str(value))


# =============================================================================
# Change Log
# =============================================================================


@dataclass
class ChangeLogEntry:
    """One accepted mutation, as served by pull.

    The sequence number is the pull cursor unit.
    """

    sequence: int
    table: str
    record_id: str
    data: dict[str, Any]
    version: int
    updated_at: int
    origin_client_id: str

    @property
    def is_deleted(self) -> bool:
        """True when the snapshot is a tombstone."""
        return bool(self.data.get("_isDeleted", False))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format."""
        return {
            "sequence": self.sequence,
            "table": self.table,
            "recordId": self.record_id,
            "data": self.data,
            "version": self.version,
            "updatedAt": self.updated_at,
            "originClientId": self.origin_client_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeLogEntry:
        """Parse the wire format."""
        return cls(
            sequence=int(data["sequence"]),
            table=data["table"],
            record_id=data["recordId"],
            data=data["data"],
            version=int(data["version"]),
            updated_at=int(data["updatedAt"]),
            origin_client_id=data.get("originClientId", ""),
        )


# =============================================================================
# Push / Pull results
# =============================================================================


@dataclass
class PushOutcome:
    """Per-operation result of a push, aligned by operation id."""

    id: str
    outcome: PushOutcomeType
    reason: str | None = None
    version: int | None = None
    sequence: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format."""
        result: dict[str, Any] = {"id": self.id, "outcome": self.outcome.value}
        if self.reason is not None:
            result["reason"] = self.reason
        if self.version is not None:
            result["version"] = self.version
        if self.sequence is not None:
            result["sequence"] = self.sequence
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PushOutcome:
        """Parse the wire format."""
        return cls(
            id=data["id"],
            outcome=PushOutcomeType(data["outcome"]),
            reason=data.get("reason"),
            version=data.get("version"),
            sequence=data.get("sequence"),
        )


@dataclass
class PullResult:
    """A page of change log entries plus the cursor to resume from."""

    changes: list[ChangeLogEntry] = field(default_factory=list)
    cursor: int = 0
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format."""
        return {
            "changes": [entry.to_dict() for entry in self.changes],
            "cursor": self.cursor,
            "hasMore": self.has_more,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PullResult:
        """Parse the wire format."""
        return cls(
            changes=[ChangeLogEntry.from_dict(entry) for entry in data.get("changes", [])],
            cursor=int(data.get("cursor", 0)),
            has_more=bool(data.get("hasMore", False)),
        )


@dataclass
class SyncStatus:
    """Current synchronization status of a client."""

    client_id: str | None
    state: str
    pending_changes: int
    failed_changes: int
    last_sync: int
    consecutive_failures: int = 0

    @property
    def is_synced(self) -> bool:
        """True when nothing is waiting to be pushed."""
        return self.pending_changes == 0 and self.failed_changes == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "client_id": self.client_id,
            "state": self.state,
            "is_synced": self.is_synced,
            "pending_changes": self.pending_changes,
            "failed_changes": self.failed_changes,
            "last_sync": self.last_sync,
            "consecutive_failures": self.consecutive_failures,
        }
