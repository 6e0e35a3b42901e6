"""
HTTP endpoints for the sync protocol.

    POST /sync/push   {"operations": [PendingOperation, ...]}
                      -> {"results": [{id, outcome, reason?, version?, sequence?}, ...]}
    POST /sync/pull   {"lastSync": int, "clientId": str}
                      -> {"changes": [...], "cursor": int, "hasMore": bool}
    GET  /sync/health -> {"status": "ok", "sequence": int}

The tenant is resolved from the Authorization header by an Authenticator;
anything in the body claiming an identity is ignored.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from aiohttp import web

from ..auth import Authenticator
from ..exceptions import SyncStorageError, UnauthorizedError, ValidationError
from .engine import ServerSyncEngine

logger = logging.getLogger(__name__)


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Map sync errors to JSON responses."""
    try:
        return await handler(request)
    except UnauthorizedError as e:
        return web.json_response({"error": e.message}, status=401)
    except ValidationError as e:
        return web.json_response(
            {"error": e.message, "field": e.details.get("field")}, status=400
        )
    except SyncStorageError as e:
        logger.error(f"Sync request failed: {e}")
        return web.json_response({"error": "internal error"}, status=500)


class SyncServer:
    """aiohttp front end for a ServerSyncEngine.

    Example:
        >>> server = SyncServer(engine, StaticTokenAuthenticator({"token": "teacher-1"}))
        >>> web.run_app(server.create_app(), port=8080)
    """

    def __init__(self, engine: ServerSyncEngine, authenticator: Authenticator):
        self.engine = engine
        self.authenticator = authenticator

    def create_app(self) -> web.Application:
        """Build the application with the sync routes."""
        app = web.Application(middlewares=[error_middleware])
        app.router.add_post("/sync/push", self.handle_push)
        app.router.add_post("/sync/pull", self.handle_pull)
        app.router.add_get("/sync/health", self.handle_health)
        return app

    async def handle_push(self, request: web.Request) -> web.Response:
        tenant_id = await self._authenticate(request)
        body = await _json_body(request)

        operations = body.get("operations")
        if not isinstance(operations, list):
            raise ValidationError("operations", "must be an array")

        outcomes = await self.engine.push(operations, tenant_id)
        return web.json_response({"results": [outcome.to_dict() for outcome in outcomes]})

    async def handle_pull(self, request: web.Request) -> web.Response:
        tenant_id = await self._authenticate(request)
        body = await _json_body(request)

        last_sync = body.get("lastSync", 0)
        client_id = body.get("clientId")
        if not isinstance(client_id, str) or not client_id:
            raise ValidationError("clientId", "must be a non-empty string")

        result = await self.engine.pull(last_sync, client_id, tenant_id)
        return web.json_response(result.to_dict())

    async def handle_health(self, request: web.Request) -> web.Response:
        sequence = await self.engine.changelog.latest_sequence()
        return web.json_response({"status": "ok", "sequence": sequence})

    async def _authenticate(self, request: web.Request) -> str:
        tenant_id = await self.authenticator.authenticate(request.headers.get("Authorization"))
        if not tenant_id:
            raise UnauthorizedError("invalid or missing bearer token")
        return tenant_id


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("body", "invalid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("body", "must be a JSON object")
    return body
