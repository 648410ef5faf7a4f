from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from fanauth.logging import get_logger
from fanauth.storage.errors import ConstraintViolation
from fanauth.storage.models import (
    UPDATABLE_USER_FIELDS,
    AuditAction,
    AuditEntry,
    Session,
    Tier,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory identity, session and audit store for tests and local development.

    Records are copied in and out so callers never hold a live reference to
    stored state, the same way rows come back from a database.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_log: List[AuditEntry] = []
        # RLock so compound operations can call the simple accessors
        self._data_lock = threading.RLock()

    # identity
    def _find_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        return next(
            (u for u in self.users.values() if u.email.lower() == needle), None
        )

    def _find_by_username(self, username: str) -> Optional[User]:
        needle = username.strip().lower()
        return next(
            (u for u in self.users.values() if u.username.lower() == needle), None
        )

    def find_user_by_email_or_username(
        self, email: str, username: str
    ) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email) or self._find_by_username(username)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return replace(user) if user else None

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
    ) -> User:
        with self._data_lock:
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self._find_by_username(username):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                full_name=full_name,
                password_hash=password_hash,
                tier=tier,
                coins=coins,
                level=level,
                points=points,
                created_at=now or utcnow(),
            )
            self.users[user.id] = user
            return replace(user)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            return replace(user)

    def register_failed_login(
        self, user_id: str, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.locked_until = lock_until
            return replace(user)

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_login = at
            user.login_count += 1
            user.failed_login_attempts = 0
            user.locked_until = None
            return replace(user)

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.token in self.sessions:
                raise ConstraintViolation(
                    "session token already exists", {"field": "token"}
                )
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session owner missing", {"user_id": session.user_id}
                )
            self.sessions[session.token] = replace(session)
            return replace(session)

    def find_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token)
            return replace(sess) if sess else None

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.id == session_id:
                    return replace(sess)
        return None

    def update_session_activity(self, token: str, at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(token)
            if sess and sess.is_active:
                sess.last_activity = at

    def set_session_meta(self, token: str, meta: dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess:
                return
            sess.meta = dict(meta)

    def deactivate_session(self, token: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            sess.deactivated_at = at
            return True

    def list_active_sessions_by_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active
            ]
        return sorted(active, key=lambda s: s.last_activity, reverse=True)

    # audit
    def insert_audit_entry(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_log.append(entry)

    def count_recent_entries(
        self,
        action: AuditAction,
        since: datetime,
        *,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        needle = email.strip().lower() if email else None
        with self._data_lock:
            count = 0
            for entry in self.audit_log:
                if entry.action != action or entry.created_at < since:
                    continue
                if needle is not None and str(entry.metadata.get("email", "")).lower() != needle:
                    continue
                if ip_address is not None and entry.ip_address != ip_address:
                    continue
                count += 1
            return count


__all__ = ["MemoryStore"]
