"""
ClassComm Sync

Offline-first bidirectional sync between browser-style local stores and an
authoritative server.

Provides:
- Durable local store with a pending operation queue (SQLite)
- Client sync engine: periodic push-then-pull cycles, single-flight
- Last-write-wins conflict resolution with deterministic tie-breaking
- Server sync engine: compare-and-swap writes and an append-only change log
- Per-table row scoping (owned by tenant OR flagged shared)
- HTTP transport and aiohttp endpoints

Usage:

    >>> from classcomm_sync import ClientSyncEngine, ClientSyncConfig, HttpSyncTransport
    >>> transport = HttpSyncTransport("https://api.example.com", auth_token=token)
    >>> engine = await ClientSyncEngine.create(transport, ClientSyncConfig.from_env())
    >>> students = engine.collection("students")
    >>> await students.create({"userId": user_id, "firstName": "Ada", "lastName": "Lovelace"})
    >>> result = await engine.sync_now()
    >>> await engine.start_auto_sync()

Server:

    >>> from classcomm_sync import ServerSyncEngine, SyncServer, StaticTokenAuthenticator
    >>> server = await ServerSyncEngine.create(ServerSyncConfig.from_env())
    >>> app = SyncServer(server, StaticTokenAuthenticator(tokens)).create_app()
"""

from .auth import Authenticator, CallbackAuthenticator, StaticTokenAuthenticator
from .config import ClientSyncConfig, ServerSyncConfig
from .exceptions import (
    ForbiddenError,
    RecordNotFoundError,
    StorageIOError,
    StorageUnavailableError,
    SyncInProgressError,
    SyncStorageError,
    TransportFailureError,
    UnauthorizedError,
    ValidationError,
)
from .protocol import (
    ChangeLogEntry,
    OperationStatus,
    OperationType,
    PendingOperation,
    PullResult,
    PushOutcome,
    PushOutcomeType,
    RejectionReason,
    SyncStatus,
)
from .scoping import DEFAULT_SCHEMA, RowScopingPolicy, SyncSchema, TableSchema
from .local import LocalStore
from .sync.client import HttpSyncTransport, InProcessTransport, SyncTransport
from .sync.collection import Collection
from .sync.engine import ClientSyncEngine, SyncResult, SyncState
from .sync.tracker import PendingOperationQueue
from .server import ServerSyncEngine, SyncServer

__version__ = "0.1.0"

__all__ = [
    # Client
    "ClientSyncEngine",
    "Collection",
    "LocalStore",
    "PendingOperationQueue",
    "SyncResult",
    "SyncState",
    # Transports
    "HttpSyncTransport",
    "InProcessTransport",
    "SyncTransport",
    # Server
    "ServerSyncEngine",
    "SyncServer",
    # Auth
    "Authenticator",
    "CallbackAuthenticator",
    "StaticTokenAuthenticator",
    # Scoping
    "DEFAULT_SCHEMA",
    "RowScopingPolicy",
    "SyncSchema",
    "TableSchema",
    # Config
    "ClientSyncConfig",
    "ServerSyncConfig",
    # Protocol types
    "ChangeLogEntry",
    "OperationStatus",
    "OperationType",
    "PendingOperation",
    "PullResult",
    "PushOutcome",
    "PushOutcomeType",
    "RejectionReason",
    "SyncStatus",
    # Exceptions
    "ForbiddenError",
    "RecordNotFoundError",
    "StorageIOError",
    "StorageUnavailableError",
    "SyncInProgressError",
    "SyncStorageError",
    "TransportFailureError",
    "UnauthorizedError",
    "ValidationError",
]
