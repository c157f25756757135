from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` that the API envelope exposes to clients.
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


class DuplicateIdentity(ValidationError):
    """Registration with an identity that already exists (400)."""
    error_code = "duplicate_identity"


class PasswordConfirmationMismatch(ValidationError):
    """Registration secret and its confirmation differ (400)."""
    error_code = "password_confirmation_mismatch"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown identity or wrong secret; both report the same message."""
    error_code = "invalid_credentials"


class TokenError(AuthenticationError):
    """A presented credential could not be verified (401)."""


class TokenExpired(TokenError):
    error_code = "token_expired"


class TokenInvalidSignature(TokenError):
    error_code = "token_invalid_signature"


class TokenMalformed(TokenError):
    error_code = "token_malformed"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class SessionRevoked(ForbiddenError):
    """No active session for the principal: logged out, expired or never created."""
    error_code = "session_revoked"


class TokenMismatch(ForbiddenError):
    """Presented refresh credential is not the current one (stale or replayed)."""
    error_code = "token_mismatch"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class PrincipalNotFound(NotFoundError):
    pass


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StorageUnavailable(ServerError):
    """The session or principal store could not be reached (503).

    The only retryable error; retries happen inside the store client, so a
    caller seeing this has already exhausted them.
    """
    status_code = 503
    error_code = "storage_unavailable"

    def __init__(self, message: str = "session storage unavailable", **kwargs) -> None:
        detail = {"retryable": True, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateIdentity",
    "PasswordConfirmationMismatch",
    "AuthenticationError",
    "InvalidCredentials",
    "TokenError",
    "TokenExpired",
    "TokenInvalidSignature",
    "TokenMalformed",
    "ForbiddenError",
    "SessionRevoked",
    "TokenMismatch",
    "NotFoundError",
    "PrincipalNotFound",
    "ServerError",
    "StorageUnavailable",
]
