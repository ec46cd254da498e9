from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries a stable ``error_code`` alongside its HTTP
    ``status_code`` so clients can branch on the code, not the message:

    - validation_error (400)
    - invalid_credentials (401)
    - unauthorized (401)
    - account_deactivated (403)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - invalid_or_expired_token / no_otp_pending / otp_expired / otp_mismatch (400)
    - same_password (400)
    - server_error (500)
    - dependency_failure (503)
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
    """Input failed normalization or validation (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Email or phone already registered (409)."""
    status_code = 409
    error_code = "conflict"


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password (401).

    Unknown accounts and wrong passwords share this error so the response
    does not reveal which emails are registered.
    """

    status_code = 401
    error_code = "invalid_credentials"

    def __init__(
        self,
        message: str = "Invalid email or password",
        *,
        attempts_remaining: Optional[int] = None,
    ) -> None:
        detail = {}
        if attempts_remaining is not None:
            detail["attempts_remaining"] = attempts_remaining
        super().__init__(message, detail=detail)
        self.attempts_remaining = attempts_remaining


class AccountLockedError(ServiceError):
    """Too many failed attempts; refused until ``unlock_at`` (423)."""

    status_code = 423
    error_code = "account_locked"

    def __init__(self, unlock_at: datetime, message: Optional[str] = None) -> None:
        super().__init__(
            message or "Account is temporarily locked due to too many failed login attempts",
            detail={"unlock_at": unlock_at.isoformat()},
        )
        self.unlock_at = unlock_at


class AccountDeactivatedError(ServiceError):
    status_code = 403
    error_code = "account_deactivated"


class InvalidOrExpiredTokenError(ServiceError):
    """Reset or verification token did not match an unexpired secret (400)."""

    status_code = 400
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "Token is invalid or has expired") -> None:
        super().__init__(message)


class OtpVerificationError(InvalidOrExpiredTokenError):
    """Phone OTP check failed; ``reason`` is the error code.

    Callers that only care whether the secret was usable can catch
    ``InvalidOrExpiredTokenError``.
    """

    REASONS = {
        "no_otp_pending": "No OTP is pending for this account",
        "otp_expired": "OTP has expired, request a new one",
        "otp_mismatch": "OTP does not match",
    }

    def __init__(self, reason: str) -> None:
        if reason not in self.REASONS:
            raise ValueError(f"unknown OTP failure reason: {reason}")
        super().__init__(self.REASONS[reason])
        self.error_code = reason
        self.reason = reason


class SamePasswordError(ServiceError):
    status_code = 400
    error_code = "same_password"

    def __init__(
        self, message: str = "New password must differ from the current password"
    ) -> None:
        super().__init__(message)


class UnauthorizedError(ServiceError):
    """Session token missing, invalid, expired or revoked (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class DependencyFailureError(ServiceError):
    """A notification channel failed and the workflow was rolled back (503).

    The caller may retry.
    """

    status_code = 503
    error_code = "dependency_failure"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountDeactivatedError",
    "InvalidOrExpiredTokenError",
    "OtpVerificationError",
    "SamePasswordError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "DependencyFailureError",
    "ServerError",
]
