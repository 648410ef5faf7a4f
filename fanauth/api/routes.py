from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Request

from fanauth.api.schemas import (
    ClaimsResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    RefreshResponse,
    RegisterRequest,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from fanauth.logging import get_logger
from fanauth.service.auth import AuthTokens, session_ref
from fanauth.service.errors import InvalidSessionError, InvalidTokenError
from fanauth.service.runtime import get_runtime
from fanauth.storage.models import UserView

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    runtime = get_runtime()
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else None


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _user_response(user: UserView) -> UserResponse:
    return UserResponse(**user.to_dict())


def _token_response(tokens: AuthTokens) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a fan account.

    New accounts start on the default tier with the welcome coin bonus.

    Raises:
        400: If any field fails the input policy
        409: If the email or username is taken (``details.field`` says which)
        429: If this IP has registered too often
    """
    runtime = get_runtime()
    user = await runtime.auth.register(
        email=body.email,
        password=body.password,
        username=body.username,
        full_name=body.full_name,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If the credentials do not match
        403: If the account is disabled
        423: If the account is locked after repeated failures
        429: If the IP or email is rate limited
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        email=body.email,
        password=body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        remember_me=body.remember_me,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=_user_response(result.user),
            tokens=_token_response(result.tokens),
            session=SessionResponse(
                session_token=result.session.session_token,
                expires_at=result.session.expires_at,
                remember_me=result.session.remember_me,
            ),
        ),
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(
    x_session_token: Optional[str] = Header(None, alias="X-Session-Token"),
):
    if not x_session_token:
        raise InvalidSessionError("Missing session token")
    runtime = get_runtime()
    user = await runtime.auth.validate_session(x_session_token)
    return Envelope(status="ok", data=_user_response(user))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(authorization: Optional[str] = Header(None)):
    token = _extract_bearer(authorization)
    if not token:
        raise InvalidTokenError("Missing bearer token")
    runtime = get_runtime()
    claims = await runtime.auth.authenticate(token)
    return Envelope(
        status="ok",
        data=ClaimsResponse(
            user_id=claims.subject,
            session_ref=session_ref(claims.session_id),
            email=claims.email,
            username=claims.username,
            tier=claims.tier,
            role=claims.role,
            expires_at=claims.expires_at,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh_token(body.refresh_token)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            user=_user_response(result.user),
            tokens=_token_response(result.tokens),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    x_session_token: Optional[str] = Header(None, alias="X-Session-Token"),
):
    """End the session named by ``X-Session-Token``; repeating it is harmless."""
    runtime = get_runtime()
    if x_session_token:
        await runtime.auth.logout(
            x_session_token,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
    return Envelope(status="ok", data={"message": "logged out"})
