"""Tests for the auth service flows.

Covers:
- Registration defaults, duplicate detection and per-IP throttling
- Login, lockout after repeated failures, disabled accounts
- Concurrent session cap (least recently active session is evicted)
- Session and access token validation
- Token refresh with and without rotation
- Logout and bulk revocation
"""

from datetime import timedelta

import pytest

from fanauth.service.auth import AuthService
from fanauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    DuplicateIdentityError,
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidSessionError,
    InvalidTokenError,
    RateLimitedError,
    ServerError,
    SessionExpiredError,
    ValidationError,
)
from fanauth.storage.models import AuditAction, Role, Tier

from conftest import STRONG_PASSWORD, make_settings

IP = "203.0.113.7"
UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0.0.0 Safari/537.36"


async def _register(service, email="fan@example.com", username="warri_fan", ip=IP, **kwargs):
    return await service.register(
        email=email,
        password=kwargs.pop("password", STRONG_PASSWORD),
        username=username,
        full_name=kwargs.pop("full_name", "Erigga Fan"),
        ip_address=ip,
        user_agent=UA,
    )


async def _login(service, email="fan@example.com", password=STRONG_PASSWORD, ip=IP, **kwargs):
    return await service.login(
        email=email, password=password, ip_address=ip, user_agent=UA, **kwargs
    )


def _actions(store, action):
    return [entry for entry in store.audit_log if entry.action == action]


class TestRegister:
    async def test_new_account_gets_defaults(self, auth_service, memory_store, clock):
        user = await _register(auth_service, email=" Fan@Example.com ", username="Warri_Fan")

        assert user.email == "fan@example.com"
        assert user.username == "warri_fan"
        assert user.tier == Tier.GRASSROOT
        assert user.role == Role.USER
        assert user.coins == 500
        assert user.level == 1
        assert user.points == 0
        assert user.is_verified is False
        assert user.created_at == clock()

        stored = memory_store.get_user(user.id)
        assert stored.password_hash != STRONG_PASSWORD
        assert auth_service.hasher.verify(STRONG_PASSWORD, stored.password_hash)

        registered = _actions(memory_store, AuditAction.USER_REGISTERED)
        assert len(registered) == 1
        assert registered[0].user_id == user.id
        assert registered[0].ip_address == IP

    async def test_configured_defaults_apply(self, memory_store, clock):
        service = AuthService(
            memory_store,
            make_settings(default_tier="pioneer", welcome_bonus_coins=0),
            clock=clock,
        )

        user = await _register(service)

        assert user.tier == Tier.PIONEER
        assert user.coins == 0

    async def test_duplicate_email(self, auth_service, memory_store):
        await _register(auth_service)

        with pytest.raises(DuplicateIdentityError) as exc_info:
            await _register(auth_service, email="FAN@example.com", username="someone_else")

        assert exc_info.value.field == "email"
        assert exc_info.value.status_code == 409
        failures = _actions(memory_store, AuditAction.REGISTRATION_FAILED)
        assert failures[-1].metadata["reason"] == "duplicate_email"

    async def test_duplicate_username_ignores_case(self, auth_service):
        await _register(auth_service)

        with pytest.raises(DuplicateIdentityError) as exc_info:
            await _register(auth_service, email="other@example.com", username="WARRI_FAN")

        assert exc_info.value.detail == {"field": "username"}

    async def test_invalid_input_creates_nothing(self, auth_service, memory_store):
        with pytest.raises(ValidationError) as exc_info:
            await _register(auth_service, password="weakpass")

        assert "special character" in exc_info.value.message
        assert memory_store.users == {}
        failures = _actions(memory_store, AuditAction.REGISTRATION_FAILED)
        assert failures[0].metadata["reason"] == "invalid_input"

    async def test_registration_is_throttled_per_ip(self, auth_service, memory_store, clock):
        for n in range(3):
            await _register(auth_service, email=f"fan{n}@example.com", username=f"fan_{n}")

        with pytest.raises(RateLimitedError):
            await _register(auth_service, email="fan9@example.com", username="fan_9")
        assert len(memory_store.users) == 3
        limited = _actions(memory_store, AuditAction.RATE_LIMIT_EXCEEDED)
        assert limited[0].metadata["scope"] == "register"

        # A different address is unaffected, and the window slides
        await _register(auth_service, email="fan9@example.com", username="fan_9", ip="198.51.100.1")
        clock.advance(hours=1)
        await _register(auth_service, email="fan10@example.com", username="fan_10")

    async def test_storage_failure_becomes_server_error(
        self, auth_service, memory_store, monkeypatch
    ):
        def explode(*args, **kwargs):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(memory_store, "find_user_by_email_or_username", explode)

        with pytest.raises(ServerError) as exc_info:
            await _register(auth_service)

        assert exc_info.value.status_code == 500
        assert "connection reset" not in exc_info.value.message
        failures = _actions(memory_store, AuditAction.REGISTRATION_FAILED)
        assert failures[-1].metadata["reason"] == "internal_error"


class TestLogin:
    async def test_successful_login(self, auth_service, memory_store, clock):
        user = await _register(auth_service)
        clock.advance(minutes=1)

        result = await _login(auth_service, email="FAN@example.com")

        assert result.user.id == user.id
        assert result.user.login_count == 1
        assert result.user.last_login == clock()
        assert result.tokens.token_type == "bearer"
        assert result.tokens.expires_in == 15 * 60
        assert result.tokens.access_expires_at == clock() + timedelta(minutes=15)
        assert result.tokens.refresh_expires_at == clock() + timedelta(days=7)
        assert result.session.session_token.startswith("sess_")
        assert result.session.expires_at == clock() + timedelta(hours=24)
        assert result.session.remember_me is False

        claims = auth_service.tokens.verify(result.tokens.access_token)
        session = memory_store.find_session_by_token(result.session.session_token)
        assert claims.subject == user.id
        assert claims.session_id == session.id
        assert result.session.session_token not in result.tokens.access_token
        assert result.session.session_token not in str(claims.raw)
        assert session.ip_address == IP
        assert session.device_info["platform"] == "Windows"
        assert session.meta["refresh_jti"]

        logins = _actions(memory_store, AuditAction.USER_LOGIN)
        assert len(logins) == 1
        assert "sess_" not in str(logins[0].metadata)

    async def test_remember_me_extends_session(self, auth_service, clock):
        await _register(auth_service)

        result = await _login(auth_service, remember_me=True)

        assert result.session.remember_me is True
        assert result.session.expires_at == clock() + timedelta(days=30)

    async def test_wrong_password_and_unknown_email_look_the_same(
        self, auth_service, memory_store
    ):
        await _register(auth_service)

        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await _login(auth_service, password="Wr0ng!Pass")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            await _login(auth_service, email="nobody@example.com")

        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.status_code == unknown_email.value.status_code == 401
        reasons = [e.metadata["reason"] for e in _actions(memory_store, AuditAction.LOGIN_FAILED)]
        assert reasons == ["invalid_password", "unknown_email"]

    async def test_malformed_email_is_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await _login(auth_service, email="not-an-email")

    async def test_lockout_after_repeated_failures(self, auth_service, memory_store, clock):
        user = await _register(auth_service)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await _login(auth_service, password="Wr0ng!Pass")

        stored = memory_store.get_user(user.id)
        assert stored.failed_login_attempts == 5
        assert stored.locked_until == clock() + timedelta(minutes=30)

        # Correct password is refused while locked
        with pytest.raises(AccountLockedError) as exc_info:
            await _login(auth_service)
        assert exc_info.value.status_code == 423
        assert exc_info.value.detail == {"retry_after_minutes": 30}

        locked = _actions(memory_store, AuditAction.ACCOUNT_LOCKED)
        assert [e.metadata["reason"] for e in locked] == ["max_attempts_reached", "account_locked"]
        assert len(_actions(memory_store, AuditAction.USER_LOGIN)) == 0

    async def test_lockout_lifts_after_duration(self, auth_service, memory_store, clock):
        user = await _register(auth_service)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await _login(auth_service, password="Wr0ng!Pass")

        clock.advance(minutes=31)
        result = await _login(auth_service)

        assert result.user.id == user.id
        stored = memory_store.get_user(user.id)
        assert stored.failed_login_attempts == 0
        assert stored.locked_until is None

    async def test_recent_failures_block_unknown_email(self, auth_service, memory_store):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await _login(auth_service, email="ghost@example.com")

        with pytest.raises(AccountLockedError):
            await _login(auth_service, email="ghost@example.com")

        locked = _actions(memory_store, AuditAction.ACCOUNT_LOCKED)
        assert locked[-1].metadata["reason"] == "recent_failures"
        assert locked[-1].metadata["blocked_attempt"] is True

    async def test_ip_with_many_failures_is_blocked(self, auth_service, memory_store):
        await _register(auth_service)
        for n in range(10):
            with pytest.raises(InvalidCredentialsError):
                await _login(auth_service, email=f"probe{n}@example.com")

        with pytest.raises(AccountLockedError):
            await _login(auth_service)

        locked = _actions(memory_store, AuditAction.ACCOUNT_LOCKED)
        assert locked[-1].metadata["reason"] == "ip_blocked"

    async def test_login_is_rate_limited_per_ip(self, memory_store, clock):
        service = AuthService(memory_store, make_settings(login_ip_rate_limit=2), clock=clock)
        await _register(service)
        await _login(service)
        await _login(service)

        with pytest.raises(RateLimitedError) as exc_info:
            await _login(service)

        assert exc_info.value.detail["retry_after"] == 15 * 60
        limited = _actions(memory_store, AuditAction.RATE_LIMIT_EXCEEDED)
        assert limited[-1].metadata["scope"] == "login_ip"

    async def test_email_rate_limit_covers_variant_spellings(self, memory_store, clock):
        settings = make_settings(
            login_identity_rate_limit=2, login_ip_rate_limit=100, max_login_attempts=100
        )
        service = AuthService(memory_store, settings, clock=clock)
        await _register(service, email="alice@example.com", username="alice")

        for email in ("alice@example.com", "alice\u200b@example.com"):
            with pytest.raises(InvalidCredentialsError):
                await _login(service, email=email, password="Wr0ng!Pass")

        for email in ("\uff41lice@example.com", " ALICE@example.com", "\uff21LICE@example.com"):
            with pytest.raises(RateLimitedError):
                await _login(service, email=email, password="Wr0ng!Pass")

        limited = _actions(memory_store, AuditAction.RATE_LIMIT_EXCEEDED)
        assert {e.metadata["scope"] for e in limited} == {"login_email"}

    async def test_banned_account_cannot_log_in(self, auth_service, memory_store):
        user = await _register(auth_service)
        memory_store.update_user(user.id, is_banned=True)

        with pytest.raises(AccountDisabledError) as exc_info:
            await _login(auth_service)

        assert exc_info.value.status_code == 403
        denied = _actions(memory_store, AuditAction.LOGIN_DENIED)
        assert denied[-1].metadata["reason"] == "account_banned"
        assert _actions(memory_store, AuditAction.LOGIN_FAILED) == []
        assert memory_store.list_active_sessions_by_user(user.id) == []

    async def test_banned_account_keeps_getting_disabled_not_locked(
        self, auth_service, memory_store
    ):
        user = await _register(auth_service)
        memory_store.update_user(user.id, is_banned=True)

        for _ in range(7):
            with pytest.raises(AccountDisabledError):
                await _login(auth_service)

        assert _actions(memory_store, AuditAction.ACCOUNT_LOCKED) == []
        assert len(_actions(memory_store, AuditAction.LOGIN_DENIED)) == 7

    async def test_disabled_account_still_needs_the_password(self, auth_service, memory_store):
        user = await _register(auth_service)
        memory_store.update_user(user.id, is_active=False)

        with pytest.raises(InvalidCredentialsError):
            await _login(auth_service, password="Wr0ng!Pass")


class TestConcurrentSessions:
    async def test_fourth_login_evicts_least_recently_active(
        self, auth_service, memory_store, clock
    ):
        user = await _register(auth_service)
        results = []
        for _ in range(4):
            results.append(await _login(auth_service))
            clock.advance(minutes=1)
        tokens = [r.session.session_token for r in results]

        with pytest.raises(InvalidSessionError):
            await auth_service.validate_session(tokens[0])
        for token in tokens[1:]:
            assert (await auth_service.validate_session(token)).id == user.id

        active = memory_store.list_active_sessions_by_user(user.id)
        assert len(active) == 3
        evicted = _actions(memory_store, AuditAction.SESSION_EVICTED)
        assert len(evicted) == 1
        assert evicted[0].metadata["reason"] == "concurrent_session_cap"

    async def test_recently_used_session_survives(self, auth_service, clock):
        await _register(auth_service)
        first = await _login(auth_service)
        clock.advance(minutes=1)
        second = await _login(auth_service)
        clock.advance(minutes=1)
        third = await _login(auth_service)
        clock.advance(minutes=1)
        await auth_service.validate_session(first.session.session_token)
        clock.advance(minutes=1)

        await _login(auth_service)

        await auth_service.validate_session(first.session.session_token)
        await auth_service.validate_session(third.session.session_token)
        with pytest.raises(InvalidSessionError):
            await auth_service.validate_session(second.session.session_token)

    async def test_cap_is_configurable(self, memory_store, clock):
        service = AuthService(memory_store, make_settings(max_concurrent_sessions=1), clock=clock)
        user = await _register(service)
        first = await _login(service)
        clock.advance(minutes=1)
        second = await _login(service)

        active = memory_store.list_active_sessions_by_user(user.id)
        assert [s.token for s in active] == [second.session.session_token]
        with pytest.raises(InvalidSessionError):
            await service.validate_session(first.session.session_token)


class TestSessionValidation:
    async def test_expired_session(self, auth_service, memory_store, clock):
        await _register(auth_service)
        result = await _login(auth_service)
        clock.advance(hours=24)

        with pytest.raises(SessionExpiredError):
            await auth_service.validate_session(result.session.session_token)
        with pytest.raises(InvalidSessionError):
            await auth_service.validate_session(result.session.session_token)

        assert len(_actions(memory_store, AuditAction.SESSION_EXPIRED)) == 1

    async def test_session_of_banned_user_is_rejected(self, auth_service, memory_store):
        user = await _register(auth_service)
        result = await _login(auth_service)
        memory_store.update_user(user.id, is_banned=True)

        with pytest.raises(InvalidSessionError):
            await auth_service.validate_session(result.session.session_token)
        assert memory_store.find_session_by_token(result.session.session_token).is_active is False

    async def test_authenticate_access_token(self, auth_service):
        user = await _register(auth_service)
        result = await _login(auth_service)

        claims = await auth_service.authenticate(result.tokens.access_token)

        assert claims.subject == user.id
        assert claims.tier == "grassroot"

    async def test_access_token_dies_with_its_session(self, auth_service):
        await _register(auth_service)
        result = await _login(auth_service)
        await auth_service.logout(result.session.session_token)

        with pytest.raises(InvalidSessionError):
            await auth_service.authenticate(result.tokens.access_token)

    async def test_access_token_expires_before_session(self, auth_service, clock):
        await _register(auth_service)
        result = await _login(auth_service)
        clock.advance(minutes=15)

        with pytest.raises(ExpiredTokenError):
            await auth_service.authenticate(result.tokens.access_token)
        assert (await auth_service.validate_session(result.session.session_token)).email

    async def test_refresh_token_is_not_an_access_token(self, auth_service):
        await _register(auth_service)
        result = await _login(auth_service)

        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(result.tokens.refresh_token)


class TestRefresh:
    async def test_refresh_without_rotation(self, auth_service, memory_store, clock):
        await _register(auth_service)
        result = await _login(auth_service)
        clock.advance(minutes=20)

        refreshed = await auth_service.refresh_token(result.tokens.refresh_token)

        assert refreshed.tokens.refresh_token == result.tokens.refresh_token
        assert refreshed.tokens.refresh_expires_at == result.tokens.refresh_expires_at
        assert refreshed.tokens.access_token != result.tokens.access_token
        assert refreshed.tokens.access_expires_at == clock() + timedelta(minutes=15)
        await auth_service.authenticate(refreshed.tokens.access_token)

        # Same refresh token keeps working until the session ends
        await auth_service.refresh_token(result.tokens.refresh_token)
        assert len(_actions(memory_store, AuditAction.TOKEN_REFRESHED)) == 2

    async def test_access_token_cannot_refresh(self, auth_service):
        await _register(auth_service)
        result = await _login(auth_service)

        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_token(result.tokens.access_token)

    async def test_refresh_after_logout_fails(self, auth_service):
        await _register(auth_service)
        result = await _login(auth_service)
        await auth_service.logout(result.session.session_token)

        with pytest.raises(InvalidSessionError):
            await auth_service.refresh_token(result.tokens.refresh_token)

    async def test_rotation_issues_new_refresh_and_detects_reuse(self, memory_store, clock):
        service = AuthService(
            memory_store, make_settings(rotate_refresh_tokens=True), clock=clock
        )
        await _register(service)
        result = await _login(service)

        rotated = await service.refresh_token(result.tokens.refresh_token)
        assert rotated.tokens.refresh_token != result.tokens.refresh_token

        with pytest.raises(InvalidTokenError):
            await service.refresh_token(result.tokens.refresh_token)

        assert len(_actions(memory_store, AuditAction.REFRESH_TOKEN_REUSED)) == 1
        with pytest.raises(InvalidSessionError):
            await service.refresh_token(rotated.tokens.refresh_token)
        with pytest.raises(InvalidSessionError):
            await service.validate_session(result.session.session_token)


class TestLogout:
    async def test_logout_is_idempotent(self, auth_service, memory_store):
        await _register(auth_service)
        result = await _login(auth_service)
        token = result.session.session_token

        await auth_service.logout(token, ip_address=IP)
        await auth_service.logout(token, ip_address=IP)
        await auth_service.logout("sess_unknown")
        await auth_service.logout("")

        with pytest.raises(InvalidSessionError):
            await auth_service.validate_session(token)
        logouts = _actions(memory_store, AuditAction.USER_LOGOUT)
        assert [e.metadata["already_inactive"] for e in logouts] == [False, True]

    async def test_logout_leaves_other_sessions_alone(self, auth_service, clock):
        await _register(auth_service)
        first = await _login(auth_service)
        clock.advance(minutes=1)
        second = await _login(auth_service)

        await auth_service.logout(first.session.session_token)

        await auth_service.validate_session(second.session.session_token)

    async def test_revoke_all_sessions_keeps_current(self, auth_service, memory_store, clock):
        user = await _register(auth_service)
        sessions = []
        for _ in range(3):
            sessions.append((await _login(auth_service)).session.session_token)
            clock.advance(minutes=1)

        revoked = await auth_service.revoke_all_sessions(user.id, except_token=sessions[-1])

        assert revoked == 2
        assert [s.token for s in auth_service.list_sessions(user.id)] == [sessions[-1]]
        assert _actions(memory_store, AuditAction.SESSIONS_REVOKED)[0].metadata["count"] == 2
