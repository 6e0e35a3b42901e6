"""
Run the sync server.

    python -m classcomm_sync.server

Configuration comes from CLASSCOMM_SERVER_* environment variables (or the
``sync.server`` section of the file named by CLASSCOMM_SERVER_CONFIG).
Bearer tokens are read from CLASSCOMM_SERVER_TOKENS as
``token1:user1,token2:user2``.
"""

from __future__ import annotations

import os
from pathlib import Path

from aiohttp import web

from ..auth import StaticTokenAuthenticator
from ..config import ServerSyncConfig
from ..logging_utils import configure_structured_logging, get_sync_logger
from .engine import ServerSyncEngine
from .http import SyncServer

logger = get_sync_logger("server")


def parse_tokens(value: str) -> dict[str, str]:
    """Parse ``token:user`` pairs separated by commas."""
    tokens = {}
    for pair in value.split(","):
        token, sep, user_id = pair.strip().partition(":")
        if sep and token and user_id:
            tokens[token] = user_id
    return tokens


def load_config() -> ServerSyncConfig:
    config_file = os.environ.get("CLASSCOMM_SERVER_CONFIG")
    if config_file:
        return ServerSyncConfig.from_yaml(Path(config_file))
    return ServerSyncConfig.from_env()


async def build_app() -> web.Application:
    config = load_config()
    engine = await ServerSyncEngine.create(config)
    authenticator = StaticTokenAuthenticator(parse_tokens(os.environ.get("CLASSCOMM_SERVER_TOKENS", "")))
    app = SyncServer(engine, authenticator).create_app()

    async def close_engine(app: web.Application) -> None:
        await engine.close()

    app.on_cleanup.append(close_engine)
    logger.info(f"Sync server ready (db={config.db_path})")
    return app


def main() -> None:
    configure_structured_logging()
    port = int(os.environ.get("CLASSCOMM_SERVER_PORT", "8080"))
    web.run_app(build_app(), port=port)


if __name__ == "__main__":
    main()
