from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` used by the API envelope:
    - validation_error (400)
    - unauthorized (401)
    - token_invalid / token_expired / token_reused (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """Base for token verification failures (401)."""
    error_code = "token_invalid"


class TokenInvalidError(TokenError):
    """Token is malformed, forged, of the wrong type, revoked or already used."""
    error_code = "token_invalid"


class TokenExpiredError(TokenError):
    """Token is well-formed and signed but past its expiry."""
    error_code = "token_expired"


class TokenReuseError(TokenError):
    """A rotated or logged-out refresh token was presented again.

    ``user_id`` names the token's owner so callers can revoke the rest of
    that user's sessions. It is never rendered to clients.
    """
    error_code = "token_reused"

    def __init__(self, message: str, *, user_id: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.user_id = user_id


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AdapterError(ServerError):
    """Storage backend failure, wrapped with the failing operation."""
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenReuseError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "AdapterError",
]
