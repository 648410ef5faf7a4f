from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on:
    - validation_error (400)
    - unauthorized, invalid_credentials, invalid_token, token_expired,
      invalid_session, session_expired (401)
    - forbidden, account_disabled (403)
    - conflict (409)
    - account_locked (423)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email or password did not match; never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ExpiredTokenError(AuthenticationError):
    """Token is well formed and correctly signed but past ``exp``."""
    error_code = "token_expired"

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSessionError(AuthenticationError):
    """Session token is unknown or has been deactivated."""
    error_code = "invalid_session"

    def __init__(self, message: str = "Invalid session", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    error_code = "session_expired"

    def __init__(self, message: str = "Session has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "Account is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed logins; retry hint is coarse (whole minutes)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "Account temporarily locked due to too many failed login attempts",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateIdentityError(ConflictError):
    """Email or username already taken; ``detail["field"]`` names which."""

    def __init__(self, field: str) -> None:
        label = "Email" if field == "email" else "Username"
        super().__init__(f"{label} already registered", detail={"field": field})
        self.field = field


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str = "Too many attempts. Please try again later.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "InvalidSessionError",
    "SessionExpiredError",
    "ForbiddenError",
    "AccountDisabledError",
    "AccountLockedError",
    "ConflictError",
    "DuplicateIdentityError",
    "RateLimitedError",
    "ServerError",
]
