from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - unauthorized (401)
    - invalid_token (401)
    - forbidden (403)
    - email_not_verified (403)
    - validation_error (400)
    - csrf_state_mismatch (400)
    - conflict (409)
    - account_conflict (409)
    - key_fetch_failed (503)
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """A signed identity token is malformed, expired, or fails signature checks."""
    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotVerifiedError(ForbiddenError):
    """The provider has not verified the email the caller wants to graduate with."""
    error_code = "email_not_verified"


class CsrfStateMismatchError(ServiceError):
    """OAuth callback state is missing or differs from the one issued."""
    status_code = 400
    error_code = "csrf_state_mismatch"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountConflictError(ConflictError):
    """An account already owns this email; linking must be explicit."""
    error_code = "account_conflict"


class KeyFetchError(ServiceError):
    """The identity provider's public keys could not be retrieved (503)."""
    status_code = 503
    error_code = "key_fetch_failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidTokenError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "CsrfStateMismatchError",
    "ConflictError",
    "AccountConflictError",
    "KeyFetchError",
    "ServerError",
]
