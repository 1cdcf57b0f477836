from __future__ import annotations

from datetime import datetime
from typing import Optional

class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited / account_locked (429)
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

class BadRequestError(ServiceError):
    """Request is malformed, e.g. conflicting session identifiers (400)."""
    status_code = 400
    error_code = "validation_error"

class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"

class InvalidCredentialsError(AuthenticationError):
    """Unknown account or wrong password; the two are indistinguishable."""

    def __init__(self, message: str = "invalid email or password") -> None:
        super().__init__(message)

class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"

class ConflictError(ServiceError):
    """Precondition failure, e.g. logging in while a session is live (409)."""
    status_code = 409
    error_code = "conflict"

class RateLimitedError(ServiceError):
    """Too many attempts (429); ``retry_after`` in seconds when known."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many attempts",
        *,
        retry_after: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        detail = dict(detail or {})
        if retry_after is not None:
            detail["retry_after"] = retry_after
        super().__init__(message, detail=detail)
        self.retry_after = retry_after

class AccountLockedError(RateLimitedError):
    """Login rejected because the account is locked."""
    error_code = "account_locked"

    def __init__(self, locked_until: Optional[datetime], *, now: datetime) -> None:
        retry_after = None
        detail: dict = {"locked_until": None}
        if locked_until is not None:
            retry_after = max(1, int((locked_until - now).total_seconds()))
            detail["locked_until"] = locked_until.isoformat()
        super().__init__("account is locked", retry_after=retry_after, detail=detail)
        self.locked_until = locked_until


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
]
