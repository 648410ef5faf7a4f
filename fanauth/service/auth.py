from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from fanauth.config import Settings
from fanauth.logging import get_logger
from fanauth.service.audit import AuditLogger
from fanauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    DuplicateIdentityError,
    InvalidCredentialsError,
    InvalidSessionError,
    InvalidTokenError,
    RateLimitedError,
    ServerError,
    ServiceError,
    SessionExpiredError,
    ValidationError,
)
from fanauth.service.passwords import CredentialHasher
from fanauth.service.rate_limit import RateLimiter
from fanauth.service.sessions import SessionManager
from fanauth.service.tokens import ACCESS, REFRESH, TokenClaims, TokenIssuer
from fanauth.service.validation import normalize_email, validate_login, validate_registration
from fanauth.storage.errors import ConstraintViolation
from fanauth.storage.interfaces import AuthStore
from fanauth.storage.models import (
    AuditAction,
    Session,
    Tier,
    User,
    UserView,
    utcnow,
)
from fanauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class SessionDescriptor:
    session_token: str
    expires_at: datetime
    remember_me: bool


@dataclass(frozen=True)
class LoginResult:
    user: UserView
    tokens: AuthTokens
    session: SessionDescriptor


@dataclass(frozen=True)
class RefreshResult:
    user: UserView
    tokens: AuthTokens


def session_ref(token: str) -> str:
    """Short stable fingerprint of a session token, safe to log and audit."""
    return hashlib.sha256(token.encode()).hexdigest()[:16]


class AuthService:
    """Registration, login, session validation, token refresh and logout.

    Every collaborator is built from the injected settings; nothing reads
    process-wide configuration, so each instance is self-contained.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        hasher: Optional[CredentialHasher] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._clock = clock or utcnow
        self.hasher = hasher or CredentialHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )
        self.rate_limiter = rate_limiter or RateLimiter(cache, clock=self._clock)
        self.audit = AuditLogger(store, clock=self._clock)
        self.tokens = TokenIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.jwt_expires_in,
            refresh_ttl=settings.refresh_token_expires_in,
            leeway_seconds=settings.token_leeway_seconds,
            clock=self._clock,
        )
        self.sessions = SessionManager(
            store,
            max_concurrent_sessions=settings.max_concurrent_sessions,
            session_duration=settings.session_duration,
            remember_me_duration=settings.remember_me_duration,
            clock=self._clock,
        )

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _internal_failure(operation: str, exc: Exception) -> ServerError:
        logger.error(
            f"{operation}_internal_error",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return ServerError(f"{operation.capitalize()} failed")

    async def _rate_limit(
        self,
        key: str,
        limit: int,
        window: timedelta,
        *,
        scope: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        try:
            await self.rate_limiter.check_limit(key, limit, int(window.total_seconds()))
        except RateLimitedError:
            await self.audit.log(
                AuditAction.RATE_LIMIT_EXCEEDED,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"scope": scope},
            )
            raise

    # registration
    async def register(
        self,
        email: str,
        password: str,
        username: str,
        full_name: str,
        ip_address: Optional[str],
        user_agent: Optional[str] = None,
    ) -> UserView:
        try:
            return await self._register(
                email, password, username, full_name, ip_address, user_agent
            )
        except ServiceError:
            raise
        except Exception as exc:
            await self.audit.log(
                AuditAction.REGISTRATION_FAILED,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": "internal_error"},
            )
            raise self._internal_failure("registration", exc) from exc

    async def _register(
        self,
        email: str,
        password: str,
        username: str,
        full_name: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> UserView:
        await self._rate_limit(
            f"register:ip:{ip_address}",
            self.settings.register_rate_limit,
            self.settings.register_rate_window,
            scope="register",
            ip_address=ip_address,
            user_agent=user_agent,
        )

        async def _reject(reason: str, **extra) -> None:
            await self.audit.log(
                AuditAction.REGISTRATION_FAILED,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": reason, **extra},
            )

        try:
            reg = validate_registration(email, password, username, full_name)
        except ValidationError as exc:
            await _reject("invalid_input", errors=exc.detail.get("errors", []))
            raise

        existing = self.store.find_user_by_email_or_username(reg.email, reg.username)
        if existing:
            field = "email" if existing.email.lower() == reg.email else "username"
            await _reject(f"duplicate_{field}", email=reg.email, username=reg.username)
            raise DuplicateIdentityError(field)

        try:
            password_hash = self.hasher.hash(reg.password)
        except Exception as exc:
            await _reject("hash_failed", email=reg.email)
            raise self._internal_failure("registration", exc) from exc

        try:
            user = self.store.create_user(
                reg.email,
                reg.username,
                reg.full_name,
                password_hash,
                tier=Tier(self.settings.default_tier),
                coins=self.settings.welcome_bonus_coins,
                level=1,
                points=0,
                now=self._now(),
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            field = exc.detail.get("field", "email")
            await _reject(f"duplicate_{field}", email=reg.email, username=reg.username)
            raise DuplicateIdentityError(field) from exc

        await self.audit.log(
            AuditAction.USER_REGISTERED,
            ip_address=ip_address,
            user_id=user.id,
            user_agent=user_agent,
            metadata={
                "email": user.email,
                "username": user.username,
                "tier": user.tier.value,
            },
        )
        logger.info("user_registered", user_id=user.id)
        return user.to_view()

    # login
    async def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str],
        user_agent: Optional[str] = None,
        remember_me: bool = False,
    ) -> LoginResult:
        try:
            return await self._login(email, password, ip_address, user_agent, remember_me)
        except ServiceError:
            raise
        except Exception as exc:
            await self.audit.log(
                AuditAction.LOGIN_FAILED,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": "internal_error"},
            )
            raise self._internal_failure("login", exc) from exc

    async def _login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        remember_me: bool,
    ) -> LoginResult:
        settings = self.settings
        identity_key = normalize_email(email) if isinstance(email, str) else ""
        await self._rate_limit(
            f"login:ip:{ip_address}",
            settings.login_ip_rate_limit,
            settings.login_rate_window,
            scope="login_ip",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if identity_key:
            await self._rate_limit(
                f"login:email:{identity_key}",
                settings.login_identity_rate_limit,
                settings.login_rate_window,
                scope="login_email",
                ip_address=ip_address,
                user_agent=user_agent,
            )

        normalized_email = validate_login(email, password)
        user = self.store.get_user_by_email(normalized_email)

        await self._check_lockout(user, normalized_email, ip_address, user_agent)

        now = self._now()
        if user is None:
            self.hasher.dummy_verify(password)
            valid = False
        else:
            valid = self.hasher.verify(password, user.password_hash)

        if not valid:
            await self._record_failed_login(user, normalized_email, ip_address, user_agent, now)
            raise InvalidCredentialsError()

        if not user.can_authenticate:
            await self.audit.log(
                AuditAction.LOGIN_DENIED,
                ip_address=ip_address,
                user_id=user.id,
                user_agent=user_agent,
                metadata={
                    "email": normalized_email,
                    "reason": "account_banned" if user.is_banned else "account_inactive",
                },
            )
            raise AccountDisabledError()

        for evicted in self.sessions.enforce_cap(user.id):
            await self.audit.log(
                AuditAction.SESSION_EVICTED,
                ip_address=ip_address,
                user_id=user.id,
                user_agent=user_agent,
                metadata={
                    "session_ref": session_ref(evicted.token),
                    "reason": "concurrent_session_cap",
                },
            )

        session = self.sessions.create(user.id, ip_address, user_agent, remember_me)
        tokens = self._issue_tokens(user, session)

        updated = self.store.record_login(user.id, now) or user
        await self.audit.log(
            AuditAction.USER_LOGIN,
            ip_address=ip_address,
            user_id=user.id,
            user_agent=user_agent,
            metadata={
                "email": normalized_email,
                "session_ref": session_ref(session.token),
                "remember_me": remember_me,
                "device": session.device_info,
            },
        )
        logger.info("user_login", user_id=user.id, remember_me=remember_me)
        return LoginResult(
            user=updated.to_view(),
            tokens=tokens,
            session=SessionDescriptor(
                session_token=session.token,
                expires_at=session.expires_at,
                remember_me=session.remember_me,
            ),
        )

    def _lockout_minutes(self, until: Optional[datetime]) -> int:
        if until is None:
            remaining = self.settings.lockout_window.total_seconds()
        else:
            remaining = (until - self._now()).total_seconds()
        return max(1, math.ceil(remaining / 60))

    async def _check_lockout(
        self,
        user: Optional[User],
        email: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        """Block the attempt before any password comparison when locked out."""
        settings = self.settings
        now = self._now()
        reason: Optional[str] = None
        locked_until: Optional[datetime] = None
        if user is not None and user.is_locked(now):
            reason, locked_until = "account_locked", user.locked_until
        elif (
            await self.audit.count_recent(
                AuditAction.LOGIN_FAILED, settings.lockout_window, email=email
            )
            >= settings.max_login_attempts
        ):
            reason = "recent_failures"
        elif ip_address and (
            await self.audit.count_recent(
                AuditAction.LOGIN_FAILED, settings.lockout_window, ip_address=ip_address
            )
            >= settings.max_login_attempts * 2
        ):
            reason = "ip_blocked"
        if reason is None:
            return
        await self.audit.log(
            AuditAction.ACCOUNT_LOCKED,
            ip_address=ip_address,
            user_id=user.id if user else None,
            user_agent=user_agent,
            metadata={"email": email, "reason": reason, "blocked_attempt": True},
        )
        raise AccountLockedError(
            detail={"retry_after_minutes": self._lockout_minutes(locked_until)}
        )

    async def _record_failed_login(
        self,
        user: Optional[User],
        email: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> None:
        updated: Optional[User] = None
        if user is not None:
            updated = self.store.register_failed_login(
                user.id,
                self.settings.max_login_attempts,
                now + self.settings.lockout_duration,
            )
        await self.audit.log(
            AuditAction.LOGIN_FAILED,
            ip_address=ip_address,
            user_id=user.id if user else None,
            user_agent=user_agent,
            metadata={
                "email": email,
                "reason": "invalid_password" if user else "unknown_email",
            },
        )
        if updated is not None and updated.is_locked(now):
            await self.audit.log(
                AuditAction.ACCOUNT_LOCKED,
                ip_address=ip_address,
                user_id=updated.id,
                user_agent=user_agent,
                metadata={
                    "email": email,
                    "reason": "max_attempts_reached",
                    "failed_attempts": updated.failed_login_attempts,
                    "locked_until": updated.locked_until.isoformat(),
                },
            )
            logger.warning("account_locked", user_id=updated.id)

    def _issue_tokens(
        self,
        user: User,
        session: Session,
        *,
        refresh_token: Optional[str] = None,
        refresh_expires_at: Optional[datetime] = None,
    ) -> AuthTokens:
        """Mint an access token; mint and pin a new refresh token unless one is passed in."""
        access = self.tokens.issue_access_token(user, session.id)
        if refresh_token is None:
            refresh = self.tokens.issue_refresh_token(session.id, user.id)
            meta = dict(session.meta or {})
            meta["refresh_jti"] = refresh.jti
            self.store.set_session_meta(session.token, meta)
            session.meta = meta
            refresh_token, refresh_expires_at = refresh.token, refresh.expires_at
        return AuthTokens(
            access_token=access.token,
            refresh_token=refresh_token,
            expires_in=int(self.settings.jwt_expires_in.total_seconds()),
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    # sessions
    async def validate_session(self, session_token: str) -> UserView:
        try:
            session = self.sessions.validate(session_token)
        except SessionExpiredError:
            await self.audit.log(
                AuditAction.SESSION_EXPIRED,
                ip_address=None,
                metadata={"session_ref": session_ref(session_token)},
            )
            raise
        user = self._session_user(session)
        return user.to_view()

    def _session_user(self, session: Session) -> User:
        user = self.store.get_user(session.user_id)
        if user is None or not user.can_authenticate:
            self.sessions.deactivate(session.token)
            logger.warning("session_user_unavailable", user_id=session.user_id)
            raise InvalidSessionError()
        return user

    async def authenticate(self, access_token: str) -> TokenClaims:
        """Verify an access token and require its session to still be live."""
        claims = self.tokens.verify(access_token, expected_type=ACCESS)
        session = self.sessions.resolve(claims.session_id)
        if session.user_id != claims.subject:
            raise InvalidTokenError()
        self._session_user(session)
        return claims

    async def refresh_token(self, refresh_token: str) -> RefreshResult:
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH)
        session = self.sessions.resolve(claims.session_id)
        if session.user_id != claims.subject:
            raise InvalidTokenError()
        user = self._session_user(session)

        expected_jti = (session.meta or {}).get("refresh_jti")
        if expected_jti and expected_jti != claims.jti:
            if self.settings.rotate_refresh_tokens:
                # A rotated-out token came back: treat the session as compromised
                self.sessions.deactivate(session.token)
                await self.audit.log(
                    AuditAction.REFRESH_TOKEN_REUSED,
                    ip_address=session.ip_address,
                    user_id=user.id,
                    metadata={"session_ref": session_ref(session.token)},
                )
                logger.warning("refresh_token_reused", user_id=user.id)
            raise InvalidTokenError("Refresh token is no longer valid")

        if self.settings.rotate_refresh_tokens:
            tokens = self._issue_tokens(user, session)
        else:
            tokens = self._issue_tokens(
                user,
                session,
                refresh_token=refresh_token,
                refresh_expires_at=claims.expires_at,
            )
        await self.audit.log(
            AuditAction.TOKEN_REFRESHED,
            ip_address=session.ip_address,
            user_id=user.id,
            metadata={
                "session_ref": session_ref(session.token),
                "rotated": self.settings.rotate_refresh_tokens,
            },
        )
        return RefreshResult(user=user.to_view(), tokens=tokens)

    async def logout(
        self,
        session_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Deactivate the session; unknown or already inactive tokens are a no-op."""
        session = self.store.find_session_by_token(session_token) if session_token else None
        if session is None:
            logger.info("logout_unknown_session")
            return
        deactivated = self.sessions.deactivate(session_token)
        await self.audit.log(
            AuditAction.USER_LOGOUT,
            ip_address=ip_address,
            user_id=session.user_id,
            user_agent=user_agent,
            metadata={
                "session_ref": session_ref(session_token),
                "already_inactive": not deactivated,
            },
        )

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.list_active(user_id)

    async def revoke_all_sessions(
        self, user_id: str, *, except_token: Optional[str] = None
    ) -> int:
        """Deactivate every active session of ``user_id`` except ``except_token``."""
        revoked = 0
        for session in self.store.list_active_sessions_by_user(user_id):
            if except_token and session.token == except_token:
                continue
            if self.sessions.deactivate(session.token):
                revoked += 1
        await self.audit.log(
            AuditAction.SESSIONS_REVOKED,
            ip_address=None,
            user_id=user_id,
            metadata={"count": revoked, "kept_current": bool(except_token)},
        )
        return revoked


__all__ = [
    "AuthService",
    "AuthTokens",
    "LoginResult",
    "RefreshResult",
    "SessionDescriptor",
    "session_ref",
]
