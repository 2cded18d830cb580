from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class defines an HTTP-style ``status_code``, a stable ``error_code`` and
    a ``retryable`` flag. Retryable errors tell the client to re-authenticate or
    try again; terminal ones need an explicit wait or an administrator. Messages
    are deliberately generic so callers never learn which factor failed.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

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


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"
    retryable = True


class MfaRequiredError(AuthenticationError):
    """Password accepted; a second factor must be supplied."""
    error_code = "mfa_required"
    retryable = True


class MfaInvalidCodeError(AuthenticationError):
    error_code = "mfa_invalid_code"
    retryable = True


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"
    retryable = True


class TokenExpiredError(InvalidTokenError):
    error_code = "token_expired"


class TokenRevokedError(InvalidTokenError):
    error_code = "token_revoked"


class TokenReuseDetectedError(InvalidTokenError):
    """A rotated refresh token was presented again; the lineage is revoked."""
    error_code = "token_reuse_detected"
    retryable = False


class SessionExpiredError(AuthenticationError):
    """Session is absent, expired or terminated (401)."""
    error_code = "session_expired"
    retryable = True


class SessionSuspiciousError(AuthenticationError):
    """Raised only for callers that refuse flagged sessions."""
    error_code = "session_suspicious"
    retryable = True


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class PermissionDeniedError(ForbiddenError):
    error_code = "permission_denied"


class DeviceBlockedError(ForbiddenError):
    error_code = "device_blocked"


class MfaLockedError(ForbiddenError):
    """Too many failed second-factor attempts; wait until ``locked_until``."""

    error_code = "mfa_locked"

    def __init__(self, message: str, *, locked_until: datetime, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("locked_until", locked_until.isoformat())
        super().__init__(message, detail=detail, **kwargs)
        self.locked_until = locked_until


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class MfaStateError(ConflictError):
    """MFA operation attempted from the wrong enrollment state."""
    error_code = "mfa_state"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    retryable = True


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MfaRequiredError",
    "MfaInvalidCodeError",
    "MfaLockedError",
    "MfaStateError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "TokenReuseDetectedError",
    "SessionExpiredError",
    "SessionSuspiciousError",
    "ForbiddenError",
    "PermissionDeniedError",
    "DeviceBlockedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
