"""
Authoritative server side of the sync protocol.

Provides the change log, the compare-and-swap record store, the server
sync engine and its aiohttp endpoints.
"""

from .changelog import ChangeLog
from .database import ServerDatabase
from .engine import ServerSyncEngine
from .http import SyncServer
from .store import AuthoritativeStore

__all__ = [
    "AuthoritativeStore",
    "ChangeLog",
    "ServerDatabase",
    "ServerSyncEngine",
    "SyncServer",
]
