from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Protocol

from fanauth.storage.models import AuditAction, AuditEntry, Session, Tier, User


class IdentityStore(Protocol):
    def find_user_by_email_or_username(
        self, email: str, username: str
    ) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        username: str,
        full_name: str,
        password_hash: str,
        *,
        tier: Tier = Tier.GRASSROOT,
        coins: int = 0,
        level: int = 1,
        points: int = 0,
        now: Optional[datetime] = None,
    ) -> User: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def register_failed_login(
        self, user_id: str, max_attempts: int, lock_until: datetime
    ) -> Optional[User]: ...

    def record_login(self, user_id: str, at: datetime) -> Optional[User]: ...


class SessionStore(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def find_session_by_token(self, token: str) -> Optional[Session]: ...

    def find_session_by_id(self, session_id: str) -> Optional[Session]: ...

    def update_session_activity(self, token: str, at: datetime) -> None: ...

    def set_session_meta(self, token: str, meta: dict) -> None: ...

    def deactivate_session(self, token: str, at: datetime) -> bool: ...

    def list_active_sessions_by_user(self, user_id: str) -> List[Session]: ...


class AuditStore(Protocol):
    def insert_audit_entry(self, entry: AuditEntry) -> None: ...

    def count_recent_entries(
        self,
        action: AuditAction,
        since: datetime,
        *,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int: ...


class AuthStore(IdentityStore, SessionStore, AuditStore, Protocol):
    """Everything the auth service needs from one backend."""


__all__ = ["IdentityStore", "SessionStore", "AuditStore", "AuthStore"]
