from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can switch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400/422)
    - conflict (409)
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


class MissingFieldsError(ValidationError):
    """Required input was empty; detail maps field name to messages (422)."""
    status_code = 422

    def __init__(self, errors: dict[str, list[str]], message: str = "Validation failed") -> None:
        super().__init__(message, detail={"fields": errors})
        self.errors = errors


class OtpFormatError(ValidationError):
    """Submitted code is not six ASCII digits; no attempt is consumed (422)."""
    status_code = 422

    def __init__(self, message: str = "Verification code must be 6 digits") -> None:
        super().__init__(message, detail={"reason": "bad_format"})


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AccountLockedError(AuthenticationError):
    """Account is locked until ``locked_until`` (401)."""

    def __init__(self, locked_until: Optional[datetime] = None) -> None:
        detail: dict = {"reason": "locked"}
        if locked_until is not None:
            detail["locked_until"] = locked_until.isoformat()
        super().__init__(
            "Account is temporarily locked. Please try again later.", detail=detail
        )
        self.locked_until = locked_until


class ChallengeNotFoundError(AuthenticationError):
    """No live verification challenge exists for the user and purpose."""

    def __init__(self, message: str = "Session expired. Please login again.") -> None:
        super().__init__(message, detail={"reason": "not_found"})


class ChallengeExpiredError(AuthenticationError):
    """The verification challenge passed its expiry and was discarded."""

    def __init__(self, message: str = "Verification code has expired. Please login again.") -> None:
        super().__init__(message, detail={"reason": "expired"})


class InvalidCodeError(AuthenticationError):
    """Submitted code did not match; carries the attempts left."""

    def __init__(self, remaining_attempts: int) -> None:
        if remaining_attempts > 0:
            message = f"Invalid verification code. {remaining_attempts} attempts remaining."
        else:
            message = "Too many failed attempts. Please login again."
        super().__init__(
            message,
            detail={"reason": "invalid_code", "remaining_attempts": remaining_attempts},
        )
        self.remaining_attempts = remaining_attempts


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfError(ForbiddenError):
    """CSRF token missing or not bound to the caller (403)."""

    def __init__(self, message: str = "Invalid security token") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429); ``retry_after`` is in seconds."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, limit: int = 0) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after
        self.limit = limit


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "MissingFieldsError",
    "OtpFormatError",
    "AuthenticationError",
    "AccountLockedError",
    "ChallengeNotFoundError",
    "ChallengeExpiredError",
    "InvalidCodeError",
    "ForbiddenError",
    "CsrfError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
]
