from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP status_code and a stable error_code that the
    API envelope exposes to clients:
    - validation_error (400)
    - unauthorized (401): no or garbled bearer token
    - invalid_token (401): bad signature or expired access token
    - session_expired (401): refresh token failed its expiry check
    - session_revoked (403): the refresh row behind the token is gone
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500): unhandled exceptions
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
    """Bearer credentials missing or malformed (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(UnauthenticatedError):
    """Access token signature or expiry check failed (401)."""
    error_code = "invalid_token"


class ExpiredSessionError(UnauthenticatedError):
    """Refresh token is past its expiry; the stored row has been dropped (401)."""
    error_code = "session_expired"


class SessionRevokedError(ServiceError):
    """No live refresh token backs this identity; full re-login required (403)."""
    status_code = 403
    error_code = "session_revoked"


class ForbiddenActionError(ServiceError):
    """Authorization policy denies the operation (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found or not visible to the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthenticatedError",
    "InvalidTokenError",
    "ExpiredSessionError",
    "SessionRevokedError",
    "ForbiddenActionError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
]
