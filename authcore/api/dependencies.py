from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import Header

from authcore.service.auth import AuthService
from authcore.service.errors import AuthenticationError
from authcore.storage.models import PublicUser


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def bearer_user(
    auth: AuthService,
) -> Callable[..., Awaitable[PublicUser]]:
    """Build a FastAPI dependency resolving ``Authorization: Bearer`` to a user.

    Token errors propagate as ``TokenError`` subclasses and render through
    the registered exception handlers.
    """

    async def _dependency(
        authorization: Optional[str] = Header(default=None),
    ) -> PublicUser:
        token = extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("missing bearer token")
        return await auth.validate_token(token)

    return _dependency
