from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from fanauth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "token_expired",
    "invalid_session",
    "session_expired",
    "forbidden",
    "account_disabled",
    "not_found",
    "conflict",
    "account_locked",
    "rate_limited",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code clients can switch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


# Shape checks only; the auth service owns the policy and audits rejections
class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    username: str = Field(..., max_length=64)
    full_name: str = Field(..., max_length=200)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    remember_me: bool = False


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    full_name: str
    tier: str
    role: str
    coins: int
    level: int
    points: int
    is_verified: bool
    avatar_url: Optional[str] = None
    last_login: Optional[datetime] = None
    login_count: int = 0
    created_at: datetime


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime


class SessionResponse(BaseModel):
    session_token: str
    expires_at: datetime
    remember_me: bool


class LoginResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse
    session: SessionResponse


class RefreshResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class ClaimsResponse(BaseModel):
    user_id: str
    session_ref: str
    email: Optional[str] = None
    username: Optional[str] = None
    tier: Optional[str] = None
    role: Optional[str] = None
    expires_at: datetime
