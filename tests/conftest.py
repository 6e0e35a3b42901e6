"""
Shared test configuration and fixtures.

Clients run against an in-memory server through InProcessTransport; each
client gets its own SQLite file in a temporary directory so restarts can
be simulated by reopening the same path.
"""

import tempfile
import uuid
from pathlib import Path
from typing import Any

import pytest
from helpers import FakeClock

from classcomm_sync.config import ClientSyncConfig, ServerSyncConfig
from classcomm_sync.server.engine import ServerSyncEngine
from classcomm_sync.sync import version
from classcomm_sync.sync.client import InProcessTransport
from classcomm_sync.sync.engine import ClientSyncEngine


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock(monkeypatch):
    """Freeze record timestamps; tests advance time explicitly."""
    fake = FakeClock()
    monkeypatch.setattr(version, "now_ms", fake)
    return fake


@pytest.fixture
async def server():
    """In-memory authoritative server."""
    engine = await ServerSyncEngine.create(ServerSyncConfig(db_path=":memory:"))
    yield engine
    await engine.close()


@pytest.fixture
async def make_client(temp_dir, server):
    """Factory for client engines bound to a tenant.

    Calling it twice with the same name reopens the same local database.
    """
    engines: list[ClientSyncEngine] = []

    async def factory(tenant_id: str | None, name: str | None = None, **config: Any) -> ClientSyncEngine:
        db_path = temp_dir / f"{name or uuid.uuid4().hex}.db"
        engine = await ClientSyncEngine.create(
            InProcessTransport(server, tenant_id),
            ClientSyncConfig(db_path=db_path, **config),
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.close()
