"""
Custom exceptions for the sync engine.

Storage and transport errors abort the current sync cycle segment.
Per-operation business errors (Forbidden, ValidationError) are turned
into push outcomes by the server and never abort the rest of a batch.
A superseded write is an expected outcome, not an exception.
"""


class SyncStorageError(Exception):
    """Base exception for all sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StorageUnavailableError(SyncStorageError):
    """Raised when a local or server store cannot be opened."""

    def __init__(self, path: str, cause: Exception | None = None):
        details = {"path": path}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Storage unavailable: {path}", details)
        self.path = path
        self.cause = cause


class StorageIOError(SyncStorageError):
    """Raised when a storage I/O operation fails on an open store."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class TransportFailureError(SyncStorageError):
    """Raised when push or pull cannot reach the server.

    Covers network errors, timeouts and server-side 5xx responses.
    The pending queue is left untouched and the cycle is retried later.
    """

    def __init__(self, endpoint: str, cause: Exception | str | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Transport failure talking to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class ForbiddenError(SyncStorageError):
    """Raised when a record falls outside the tenant's row-scoping policy."""

    def __init__(self, tenant_id: str, table: str, record_id: str | None = None):
        details = {"tenant_id": tenant_id, "table": table}
        if record_id:
            details["record_id"] = record_id
        super().__init__(
            f"Tenant {tenant_id} may not access {table}/{record_id or '?'}",
            details,
        )
        self.tenant_id = tenant_id
        self.table = table
        self.record_id = record_id


class ValidationError(SyncStorageError):
    """Raised when an operation or record is malformed."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class UnauthorizedError(SyncStorageError):
    """Raised when a push or pull arrives without an authenticated tenant."""

    def __init__(self, reason: str = "missing credentials"):
        super().__init__(f"Unauthorized: {reason}", {"reason": reason})
        self.reason = reason


class RecordNotFoundError(SyncStorageError):
    """Raised when a local collection record does not exist."""

    def __init__(self, table: str, record_id: str):
        super().__init__(
            f"Record not found: {table}/{record_id}",
            {"table": table, "record_id": record_id},
        )
        self.table = table
        self.record_id = record_id


class SyncInProgressError(SyncStorageError):
    """Raised when a caller insists on a cycle while another is in flight."""

    def __init__(self, client_id: str):
        super().__init__(f"Sync already in progress for client {client_id}", {"client_id": client_id})
        self.client_id = client_id
