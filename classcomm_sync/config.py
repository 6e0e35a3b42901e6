"""
Configuration for the client and server sync engines.

Configuration can be provided directly, from environment variables, or
from a YAML settings file:

```yaml
sync:
  client:
    db_path: ~/.classcomm/local.db
    sync_interval_ms: 30000
  server:
    db_path: /var/lib/classcomm/sync.db
    pull_batch_size: 500
```
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CLIENT_DB_PATH = Path.home() / ".classcomm" / "local.db"


@dataclass
class ClientSyncConfig:
    """Configuration for the client sync engine.

    Environment Variables:
        CLASSCOMM_SYNC_DB_PATH: Local store database path
        CLASSCOMM_SYNC_INTERVAL_MS: Periodic cycle interval (default: 30000)
        CLASSCOMM_SYNC_BATCH_SIZE: Max operations per push (default: 100)
        CLASSCOMM_SYNC_REQUEST_TIMEOUT_MS: Push/pull timeout (default: 10000)
        CLASSCOMM_SYNC_MAX_RETRIES: Attempts for server_error operations (default: 5)
    """

    db_path: str | Path = DEFAULT_CLIENT_DB_PATH

    # Sync behavior
    sync_interval_ms: int = 30000  # 30 seconds
    batch_size: int = 100
    request_timeout_ms: int = 10000

    # Retry settings
    max_retries: int = 5
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 60000
    backoff_multiplier: float = 2.0

    @classmethod
    def from_env(cls) -> ClientSyncConfig:
        """Create config from environment variables."""
        return cls(
            db_path=os.environ.get("CLASSCOMM_SYNC_DB_PATH", str(DEFAULT_CLIENT_DB_PATH)),
            sync_interval_ms=int(os.environ.get("CLASSCOMM_SYNC_INTERVAL_MS", "30000")),
            batch_size=int(os.environ.get("CLASSCOMM_SYNC_BATCH_SIZE", "100")),
            request_timeout_ms=int(os.environ.get("CLASSCOMM_SYNC_REQUEST_TIMEOUT_MS", "10000")),
            max_retries=int(os.environ.get("CLASSCOMM_SYNC_MAX_RETRIES", "5")),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> ClientSyncConfig:
        """Create config from the ``sync.client`` section of a settings file."""
        return cls(**_section(path, "client", cls))

    def backoff_ms(self, failures: int) -> int:
        """Delay before the next cycle after ``failures`` consecutive failures."""
        if failures <= 0:
            return self.sync_interval_ms
        delay = self.initial_backoff_ms * self.backoff_multiplier ** (failures - 1)
        return int(min(delay, self.max_backoff_ms))


@dataclass
class ServerSyncConfig:
    """Configuration for the server sync engine.

    Environment Variables:
        CLASSCOMM_SERVER_DB_PATH: Authoritative database path
        CLASSCOMM_SERVER_PULL_BATCH_SIZE: Max change log entries per pull (default: 500)
        CLASSCOMM_SERVER_MAX_CAS_RETRIES: Compare-and-swap attempts per operation (default: 5)
        CLASSCOMM_SERVER_BUSY_TIMEOUT_MS: SQLite busy timeout (default: 5000)
    """

    db_path: str | Path = ":memory:"
    pull_batch_size: int = 500
    max_cas_retries: int = 5
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> ServerSyncConfig:
        """Create config from environment variables."""
        return cls(
            db_path=os.environ.get("CLASSCOMM_SERVER_DB_PATH", ":memory:"),
            pull_batch_size=int(os.environ.get("CLASSCOMM_SERVER_PULL_BATCH_SIZE", "500")),
            max_cas_retries=int(os.environ.get("CLASSCOMM_SERVER_MAX_CAS_RETRIES", "5")),
            busy_timeout_ms=int(os.environ.get("CLASSCOMM_SERVER_BUSY_TIMEOUT_MS", "5000")),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> ServerSyncConfig:
        """Create config from the ``sync.server`` section of a settings file."""
        return cls(**_section(path, "server", cls))


def _section(path: Path, name: str, config_cls: type) -> dict[str, Any]:
    """Load ``sync.<name>`` from a YAML file, keeping only known fields."""
    path = Path(path).expanduser()
    if not path.exists():
        return {}

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    section = (data.get("sync") or {}).get(name) or {}
    known = {f.name for f in fields(config_cls)}
    values = {key: value for key, value in section.items() if key in known}
    if "db_path" in values and values["db_path"] != ":memory:":
        values["db_path"] = Path(values["db_path"]).expanduser()
    return values
