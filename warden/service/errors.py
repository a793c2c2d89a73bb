from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer errors mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code`` so
    callers can branch on the failure without parsing messages.
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
    """Malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Operation conflicts with current state (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateKeyError(ConflictError):
    """Unique email/username/name already taken (409)."""
    error_code = "duplicate_key"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthenticationError):
    """Too many failed attempts; clears once the lock window passes (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: Optional[datetime] = None) -> None:
        detail = {"locked_until": locked_until.isoformat()} if locked_until else {}
        super().__init__(
            "account is temporarily locked due to failed login attempts", detail=detail
        )
        self.locked_until = locked_until


class AccountDisabledError(AuthenticationError):
    """Account has been deactivated (403)."""
    status_code = 403
    error_code = "account_disabled"


class TwoFactorRequiredError(AuthenticationError):
    """Password accepted but a second factor must be supplied."""
    error_code = "two_factor_required"


class TokenInvalidError(AuthenticationError):
    """Token is malformed, badly signed, or unknown."""
    error_code = "token_invalid"


class TokenExpiredError(AuthenticationError):
    """Token signature is fine but its validity window has passed."""
    error_code = "token_expired"


class SessionInvalidError(AuthenticationError):
    """Token is structurally valid but its session is revoked or expired."""
    error_code = "session_invalid"


class InsufficientPermissionError(ServiceError):
    """Authorization denied (403)."""
    status_code = 403
    error_code = "insufficient_permission"


class NotFoundError(ServiceError):
    """Requested user, role, permission or session not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "DuplicateKeyError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountDisabledError",
    "TwoFactorRequiredError",
    "TokenInvalidError",
    "TokenExpiredError",
    "SessionInvalidError",
    "InsufficientPermissionError",
    "NotFoundError",
]
