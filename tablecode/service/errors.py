from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients branch on:
    - validation_error / invalid_otp (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found / expired (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - exhausted_retries (503)
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

    @classmethod
    def for_field(cls, field: str, reason: str, message: Optional[str] = None):
        return cls(message or f"invalid {field}", detail={"field": field, "reason": reason})


class InvalidOtpError(ValidationError):
    """Wrong one-time code; detail carries ``attempts_remaining``."""
    error_code = "invalid_otp"

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            "invalid verification code",
            detail={"attempts_remaining": attempts_remaining},
        )
        self.attempts_remaining = attempts_remaining


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class PinResetExpiredError(NotFoundError):
    """Pending PIN reset is missing, expired or already consumed."""
    error_code = "expired"


class ConflictError(ServiceError):
    """State conflict, e.g. deleting an already deleted tenant (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after_ms: int, message: str = "too many requests") -> None:
        super().__init__(message, detail={"retry_after_ms": retry_after_ms})
        self.retry_after_ms = retry_after_ms


class ExhaustedRetriesError(ServiceError):
    """A bounded retry loop gave up (503)."""
    status_code = 503
    error_code = "exhausted_retries"


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOtpError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "PinResetExpiredError",
    "ConflictError",
    "RateLimitedError",
    "ExhaustedRetriesError",
    "InternalError",
]
