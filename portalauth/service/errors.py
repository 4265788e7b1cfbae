from __future__ import annotations

import math
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer errors mapped to HTTP responses.

    Each class defines an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error / invalid_otp (400)
    - unauthorized (401)
    - forbidden / account_disabled (403)
    - not_found (404)
    - conflict (409)
    - rate_limited / account_locked / otp_locked (429)
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


class InvalidOTPError(BadRequestError):
    """Verification code did not match or has expired (400)."""

    error_code = "invalid_otp"

    def __init__(self, message: str = "invalid or expired code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthorizedError(AuthenticationError):
    """Generic credential failure.

    The message never says whether the account exists.
    """

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Session is missing, expired or was revoked (401).

    ``clear_cookies`` asks the HTTP layer to expire both session cookies
    on the error response.
    """

    def __init__(
        self,
        message: str = "session expired, please sign in again",
        *,
        clear_cookies: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.clear_cookies = clear_cookies


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabledError(ForbiddenError):
    """Credentials were right but the account is not active (403)."""

    error_code = "account_disabled"

    def __init__(self, status: str) -> None:
        super().__init__(
            f"account is {status}, please contact support",
            detail={"status": status},
        )
        self.status = status


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


def minutes_until(seconds: float) -> int:
    """Whole minutes a user has to wait, rounded up and never below one."""
    return max(1, math.ceil(seconds / 60))


class AccountLockedError(RateLimitedError):
    """Too many failed sign-ins; the account is temporarily locked (429)."""

    error_code = "account_locked"

    def __init__(self, minutes_remaining: int) -> None:
        super().__init__(
            f"account temporarily locked, try again in {minutes_remaining} minutes",
            detail={"minutes_remaining": minutes_remaining},
        )
        self.minutes_remaining = minutes_remaining


class OTPLockedError(RateLimitedError):
    """Too many wrong verification codes for this email (429)."""

    error_code = "otp_locked"

    def __init__(self, minutes_remaining: int) -> None:
        super().__init__(
            f"too many attempts, try again in {minutes_remaining} minutes",
            detail={"minutes_remaining": minutes_remaining},
        )
        self.minutes_remaining = minutes_remaining


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidOTPError",
    "AuthenticationError",
    "UnauthorizedError",
    "SessionExpiredError",
    "ForbiddenError",
    "AccountDisabledError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
    "OTPLockedError",
    "ServerError",
    "minutes_until",
]
