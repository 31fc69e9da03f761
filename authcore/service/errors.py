from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - two_factor_invalid (401)
    - account_locked (403)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is malformed, e.g. a missing session id."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TwoFactorInvalidError(AuthenticationError):
    """Second factor code was rejected (401)."""
    error_code = "two_factor_invalid"


class AccountLockedError(ServiceError):
    """Account is locked after repeated failures or a ban (403)."""
    status_code = 403
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "account is locked",
        *,
        retry_after_seconds: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        merged = dict(detail or {})
        if retry_after_seconds is not None:
            merged.setdefault("retry_after_seconds", retry_after_seconds)
        super().__init__(message, detail=merged)
        self.retry_after_seconds = retry_after_seconds


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        retry_after_seconds: int = 0,
        remaining: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        merged = dict(detail or {})
        merged.setdefault("retry_after_seconds", retry_after_seconds)
        merged.setdefault("remaining", remaining)
        super().__init__(message, detail=merged)
        self.retry_after_seconds = retry_after_seconds
        self.remaining = remaining


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "TwoFactorInvalidError",
    "AccountLockedError",
    "NotFoundError",
    "RateLimitedError",
]
