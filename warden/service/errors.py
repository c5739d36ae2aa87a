from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on without parsing messages:

    - validation_error (400)
    - conflict (400)
    - invalid_token (400)
    - unauthorized / invalid_credentials / account_locked / invalid_otp (401)
    - account_not_active / forbidden (403)
    - not_found (404)
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
    """Request validation or business-rule failure (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Duplicate username or email (400)."""
    status_code = 400
    error_code = "conflict"


class AuthenticationError(ServiceError):
    """Missing, malformed, or expired session token (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account or wrong password; never says which (401)."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthenticationError):
    """Too many failed password attempts (401)."""
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, **kwargs) -> None:
        super().__init__(
            "Account locked due to too many failed login attempts. Try again later.",
            detail={"lockedUntil": locked_until.isoformat()},
            **kwargs,
        )
        self.locked_until = locked_until


class AccountNotActiveError(ServiceError):
    """Account exists but has not been activated, or was deactivated (403)."""
    status_code = 403
    error_code = "account_not_active"


class InvalidOrExpiredTokenError(ServiceError):
    """Activation or reset token is wrong or expired; callers cannot tell which (400)."""
    status_code = 400
    error_code = "invalid_token"


class InvalidOrExpiredOtpError(ServiceError):
    """One-time login code is wrong or expired (401)."""
    status_code = 401
    error_code = "invalid_otp"

    def __init__(self, message: str = "Invalid or expired OTP", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Role or ownership rule violated (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountNotActiveError",
    "InvalidOrExpiredTokenError",
    "InvalidOrExpiredOtpError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
]
