from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    """Membership tiers, lowest to highest."""

    GRASSROOT = "grassroot"
    PIONEER = "pioneer"
    ELDER = "elder"
    BLOOD_BROTHERHOOD = "blood_brotherhood"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _TIER_RANKS[self]

    def allows(self, required: "Tier | str") -> bool:
        """True when this tier grants access to content gated at ``required``."""
        return self.rank >= Tier(required).rank


_TIER_RANKS: Dict[Tier, int] = {
    Tier.GRASSROOT: 1,
    Tier.PIONEER: 2,
    Tier.ELDER: 3,
    Tier.BLOOD_BROTHERHOOD: 4,
    Tier.ADMIN: 5,
}


class Role(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    def allows(self, required: "Role | str") -> bool:
        return self.rank >= Role(required).rank


_ROLE_RANKS: Dict[Role, int] = {Role.USER: 1, Role.MODERATOR: 2, Role.ADMIN: 3}


class AuditAction(str, Enum):
    USER_REGISTERED = "USER_REGISTERED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    USER_LOGIN = "USER_LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_DENIED = "LOGIN_DENIED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    USER_LOGOUT = "USER_LOGOUT"
    SESSION_EVICTED = "SESSION_EVICTED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    REFRESH_TOKEN_REUSED = "REFRESH_TOKEN_REUSED"
    SESSIONS_REVOKED = "SESSIONS_REVOKED"

    @property
    def severity(self) -> str:
        return _ACTION_SEVERITY.get(self, "low")


_ACTION_SEVERITY: Dict[AuditAction, str] = {
    AuditAction.REFRESH_TOKEN_REUSED: "critical",
    AuditAction.LOGIN_FAILED: "high",
    AuditAction.LOGIN_DENIED: "high",
    AuditAction.ACCOUNT_LOCKED: "high",
    AuditAction.RATE_LIMIT_EXCEEDED: "high",
    AuditAction.USER_LOGIN: "medium",
    AuditAction.USER_LOGOUT: "medium",
    AuditAction.USER_REGISTERED: "medium",
    AuditAction.REGISTRATION_FAILED: "medium",
    AuditAction.SESSIONS_REVOKED: "medium",
}


@dataclass
class UserView:
    """Public-safe projection of a user; never carries the password hash."""

    id: str
    email: str
    username: str
    full_name: str
    tier: Tier
    role: Role
    coins: int
    level: int
    points: int
    is_verified: bool
    avatar_url: Optional[str]
    last_login: Optional[datetime]
    login_count: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "full_name": self.full_name,
            "tier": self.tier.value,
            "role": self.role.value,
            "coins": self.coins,
            "level": self.level,
            "points": self.points,
            "is_verified": self.is_verified,
            "avatar_url": self.avatar_url,
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "login_count": self.login_count,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class User:
    id: str
    email: str
    username: str
    full_name: str
    password_hash: str = field(repr=False)
    tier: Tier = Tier.GRASSROOT
    role: Role = Role.USER
    coins: int = 0
    level: int = 1
    points: int = 0
    is_active: bool = True
    is_banned: bool = False
    is_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    login_count: int = 0
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def can_authenticate(self) -> bool:
        return self.is_active and not self.is_banned

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def to_view(self) -> UserView:
        return UserView(
            id=self.id,
            email=self.email,
            username=self.username,
            full_name=self.full_name,
            tier=self.tier,
            role=self.role,
            coins=self.coins,
            level=self.level,
            points=self.points,
            is_verified=self.is_verified,
            avatar_url=self.avatar_url,
            last_login=self.last_login,
            login_count=self.login_count,
            created_at=self.created_at,
        )


def new_session_token() -> str:
    return f"sess_{secrets.token_hex(32)}"


@dataclass
class Session:
    token: str
    user_id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Dict | None = None
    is_active: bool = True
    remember_me: bool = False
    deactivated_at: Optional[datetime] = None
    meta: Dict | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def new(
        cls,
        user_id: str,
        duration: timedelta,
        *,
        now: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: Dict | None = None,
        remember_me: bool = False,
        meta: Dict | None = None,
    ) -> "Session":
        return cls(
            token=new_session_token(),
            user_id=user_id,
            created_at=now,
            last_activity=now,
            expires_at=now + duration,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
            remember_me=remember_me,
            meta=meta,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired(now)


@dataclass(frozen=True)
class AuditEntry:
    id: str
    action: AuditAction
    ip_address: Optional[str]
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    severity: str = "low"
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        action: AuditAction,
        *,
        ip_address: Optional[str],
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> "AuditEntry":
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            ip_address=ip_address,
            user_id=user_id,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
            severity=action.severity,
            created_at=created_at or utcnow(),
        )


# Columns the service may change through ``update_user``
UPDATABLE_USER_FIELDS = frozenset(
    {
        "full_name",
        "tier",
        "role",
        "coins",
        "level",
        "points",
        "is_active",
        "is_banned",
        "is_verified",
        "failed_login_attempts",
        "locked_until",
        "last_login",
        "login_count",
        "avatar_url",
        "password_hash",
    }
)
