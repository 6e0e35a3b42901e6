"""
Transports between the client sync engine and the server.

Two implementations of the same contract:

- HttpSyncTransport: JSON over HTTP with a bearer token (production)
- InProcessTransport: calls a ServerSyncEngine directly for an
  already-authenticated tenant (tests, single-process deployments)

Transports raise TransportFailureError for anything the next cycle may
recover from (network, timeout, 5xx). They never touch local state.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import aiohttp

from ..exceptions import TransportFailureError, UnauthorizedError, ValidationError
from ..protocol import PendingOperation, PullResult, PushOutcome

if TYPE_CHECKING:
    from ..server.engine import ServerSyncEngine

logger = logging.getLogger(__name__)


class SyncTransport(ABC):
    """Push/pull contract used by the client sync engine."""

    @abstractmethod
    async def push(self, operations: Sequence[PendingOperation]) -> list[PushOutcome]:
        """Send operations in order; return one outcome per operation id."""
        ...

    @abstractmethod
    async def pull(self, last_sync: int, client_id: str) -> PullResult:
        """Fetch change log entries after ``last_sync``."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        return None


class InProcessTransport(SyncTransport):
    """Transport that calls a server engine in the same process.

    The tenant is bound at construction time, standing in for the
    authentication step an HTTP request would go through.
    """

    def __init__(self, server: ServerSyncEngine, tenant_id: str | None):
        self.server = server
        self.tenant_id = tenant_id

    async def push(self, operations: Sequence[PendingOperation]) -> list[PushOutcome]:
        # Round-trip through the wire format so in-process behaves like HTTP
        payload = [op.to_dict() for op in operations]
        return await self.server.push(payload, self.tenant_id)

    async def pull(self, last_sync: int, client_id: str) -> PullResult:
        return await self.server.pull(last_sync, client_id, self.tenant_id)


class HttpSyncTransport(SyncTransport):
    """Transport speaking JSON to a SyncServer over HTTP.

    Example:
        >>> transport = HttpSyncTransport("https://api.example.com", auth_token="...")
        >>> outcomes = await transport.push(operations)
        >>> page = await transport.pull(last_sync=0, client_id="c1")
        >>> await transport.close()
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout_ms: int = 10000,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the HTTP transport.

        Args:
            base_url: Server root; endpoints live under ``/sync``
            auth_token: Bearer token identifying the tenant
            timeout_ms: Total request timeout
            session: Optional externally managed client session
        """
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
        self._session = session
        self._owns_session = session is None

    async def push(self, operations: Sequence[PendingOperation]) -> list[PushOutcome]:
        body = await self._post("/sync/push", {"operations": [op.to_dict() for op in operations]})
        return [PushOutcome.from_dict(item) for item in body.get("results", [])]

    async def pull(self, last_sync: int, client_id: str) -> PullResult:
        body = await self._post("/sync/pull", {"lastSync": last_sync, "clientId": client_id})
        return PullResult.from_dict(body)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            async with self._get_session().post(url, json=payload, headers=headers) as response:
                if response.status == 401:
                    raise UnauthorizedError("server rejected credentials")
                if response.status == 400:
                    try:
                        detail = await response.json(content_type=None)
                    except ValueError:
                        detail = None
                    if not isinstance(detail, dict):
                        raise ValidationError("request", "bad request")
                    raise ValidationError(
                        detail.get("field", "request"), detail.get("error", "bad request")
                    )
                if response.status >= 500:
                    raise TransportFailureError(url, f"HTTP {response.status}")
                if response.status != 200:
                    raise TransportFailureError(url, f"unexpected HTTP {response.status}")
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Transport error on {url}: {e}")
            raise TransportFailureError(url, e) from e
