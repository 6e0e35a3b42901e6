"""
Authentication seam for the sync endpoints.

Session issuance lives outside this package. The sync server only needs
something that turns an ``Authorization`` header into a tenant id.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping

from .exceptions import UnauthorizedError


class Authenticator(ABC):
    """Resolves the authenticated tenant for a request."""

    @abstractmethod
    async def authenticate(self, auth_header: str | None) -> str | None:
        """Return the tenant (user) id, or None if the caller is not authenticated."""
        ...


class StaticTokenAuthenticator(Authenticator):
    """Bearer tokens looked up in a fixed mapping of token -> user id.

    Suitable for tests and single-user deployments.
    """

    def __init__(self, tokens: Mapping[str, str]):
        self._tokens = dict(tokens)

    async def authenticate(self, auth_header: str | None) -> str | None:
        token = _bearer_token(auth_header)
        if token is None:
            return None
        return self._tokens.get(token)


class CallbackAuthenticator(Authenticator):
    """Delegates token validation to an async callable (e.g. a session service)."""

    def __init__(self, validator: Callable[[str], Awaitable[str | None]]):
        self._validator = validator

    async def authenticate(self, auth_header: str | None) -> str | None:
        token = _bearer_token(auth_header)
        if token is None:
            return None
        return await self._validator(token)


def _bearer_token(auth_header: str | None) -> str | None:
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def require_tenant(tenant_id: str | None) -> str:
    """Guard used by every push and pull.

    Raises:
        UnauthorizedError: If no tenant was supplied
    """
    if not tenant_id:
        raise UnauthorizedError()
    return tenant_id
