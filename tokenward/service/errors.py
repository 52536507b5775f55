from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from tokenward.storage.models import Token


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP-equivalent status_code and a stable
    error_code so clients can tell re-login, token refresh and missing
    resources apart:
    - malformed_token / unauthorized / invalid_token (401)
    - not_found (404)
    - token_expired (410)
    - generation_failed / store_failure (500)
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


class UnauthenticatedError(ServiceError):
    """No credential matches the presented bearer value (401)."""
    status_code = 401
    error_code = "unauthorized"


class MalformedTokenError(UnauthenticatedError):
    """Bearer value is not of the form ``<name>:<secret>`` (401)."""
    error_code = "malformed_token"


class UnknownTokenError(UnauthenticatedError):
    """The authoritative store has no token with the presented name (401)."""


class InvalidTokenError(UnauthenticatedError):
    """A record was found but its name or secret does not match (401)."""
    error_code = "invalid_token"


class TokenExpiredError(ServiceError):
    """The token is valid but past its TTL (410).

    ``token`` carries the resolved record so callers can still act on its
    owner, e.g. to clean it up.
    """
    status_code = 410
    error_code = "token_expired"

    def __init__(self, message: str, *, token: "Token", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.token = token


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class GenerationError(ServerError):
    """No secure secret could be generated (500)."""
    error_code = "generation_failed"


class StoreError(ServerError):
    """The authoritative token store failed (500)."""
    error_code = "store_failure"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthenticatedError",
    "MalformedTokenError",
    "UnknownTokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "NotFoundError",
    "ServerError",
    "GenerationError",
    "StoreError",
]
