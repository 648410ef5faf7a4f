from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fanauth.logging import get_logger
from fanauth.storage.errors import ConstraintViolation
from fanauth.storage.models import (
    UPDATABLE_USER_FIELDS,
    AuditAction,
    AuditEntry,
    Role,
    Session,
    Tier,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS fan_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        full_name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        tier TEXT NOT NULL DEFAULT 'grassroot',
        role TEXT NOT NULL DEFAULT 'user',
        coins INTEGER NOT NULL DEFAULT 0,
        level INTEGER NOT NULL DEFAULT 1,
        points INTEGER NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        login_count INTEGER NOT NULL DEFAULT 0,
        avatar_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS fan_user_email_key ON fan_user (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS fan_user_username_key ON fan_user (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS user_session (
        token TEXT PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES fan_user (id) ON DELETE CASCADE,
        ip_address TEXT,
        user_agent TEXT,
        device_info JSONB,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        deactivated_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS user_session_active_idx
        ON user_session (user_id, last_activity DESC) WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        user_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        severity TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_action_time_idx ON audit_log (action, created_at)",
)


def _load_json(value: Any) -> Optional[dict]:
    if value is None or isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            loaded = json.loads(value)
        except json.JSONDecodeError:
            return None
        return loaded if isinstance(loaded, dict) else None
    return None


def _dump_json(value: Optional[dict]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


class PostgresStore:
    """Postgres-backed identity, session and audit store.

    Every read goes to the database; nothing is cached between calls so a
    revoked session is rejected on its very next use.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # row mapping
    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            full_name=row["full_name"],
            password_hash=row["password_hash"],
            tier=Tier(row.get("tier") or Tier.GRASSROOT.value),
            role=Role(row.get("role") or Role.USER.value),
            coins=int(row.get("coins") or 0),
            level=int(row.get("level") or 1),
            points=int(row.get("points") or 0),
            is_active=bool(row.get("is_active", True)),
            is_banned=bool(row.get("is_banned", False)),
            is_verified=bool(row.get("is_verified", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login=row.get("last_login"),
            login_count=int(row.get("login_count") or 0),
            avatar_url=row.get("avatar_url"),
            created_at=row.get("created_at") or utcnow(),
        )

    def _session_from_row(self, row: Dict[str, Any]) -> Session:
        return Session(
            token=row["token"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            last_activity=row["last_activity"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_info=_load_json(row.get("device_info")),
            is_active=bool(row.get("is_active")),
            remember_me=bool(row.get("remember_me")),
            deactivated_at=row.get("deactivated_at"),
            meta=_load_json(row.get("meta")),
            id=str(row["id"]),
        )

    # identity
    def find_user_by_email_or_username(
        self, email: str, username: str
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM fan_user
                WHERE lower(email) = lower(%s) OR lower(username) = lower(%s)
                ORDER BY (lower(email) = lower(%s)) DESC
                LIMIT 1
                """,
                (email, username, email),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM fan_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM fan_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

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
        user_id = str(uuid.uuid4())
        created_at = now or utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO fan_user
                        (id, email, username, full_name, password_hash, tier, coins, level, points, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        username,
                        full_name,
                        password_hash,
                        Tier(tier).value,
                        coins,
                        level,
                        points,
                        created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        values = [
            value.value if isinstance(value, (Tier, Role)) else value
            for value in fields.values()
        ]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE fan_user SET {assignments} WHERE id = %s RETURNING *",
                (*values, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def register_failed_login(
        self, user_id: str, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE fan_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, lock_until, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE fan_user
                SET last_login = %s,
                    login_count = login_count + 1,
                    failed_login_attempts = 0,
                    locked_until = NULL
                WHERE id = %s
                RETURNING *
                """,
                (at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # sessions
    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_session
                        (token, id, user_id, ip_address, user_agent, device_info, is_active,
                         remember_me, created_at, last_activity, expires_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.token,
                        session.id,
                        session.user_id,
                        session.ip_address,
                        session.user_agent,
                        _dump_json(session.device_info),
                        session.is_active,
                        session.remember_me,
                        session.created_at,
                        session.last_activity,
                        session.expires_at,
                        _dump_json(session.meta),
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "session token already exists", {"field": "token"}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session owner missing", {"user_id": session.user_id}
            ) from exc
        return session

    def find_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE token = %s", (token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session_activity(self, token: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_session SET last_activity = %s WHERE token = %s AND is_active",
                (at, token),
            )

    def set_session_meta(self, token: str, meta: dict) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_session SET meta = %s WHERE token = %s",
                (_dump_json(meta), token),
            )

    def deactivate_session(self, token: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_session
                SET is_active = FALSE, deactivated_at = %s
                WHERE token = %s AND is_active
                """,
                (at, token),
            )
            return cur.rowcount > 0

    def list_active_sessions_by_user(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_session
                WHERE user_id = %s AND is_active
                ORDER BY last_activity DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # audit
    def insert_audit_entry(self, entry: AuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log
                    (id, action, user_id, ip_address, user_agent, metadata, severity, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action.value,
                    entry.user_id,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.metadata, default=str),
                    entry.severity,
                    entry.created_at,
                ),
            )

    def count_recent_entries(
        self,
        action: AuditAction,
        since: datetime,
        *,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        clauses = ["action = %s", "created_at >= %s"]
        params: List[Any] = [AuditAction(action).value, since]
        if email is not None:
            clauses.append("lower(metadata->>'email') = lower(%s)")
            params.append(email)
        if ip_address is not None:
            clauses.append("ip_address = %s")
            params.append(ip_address)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS n FROM audit_log WHERE {' AND '.join(clauses)}",
                tuple(params),
            ).fetchone()
        return int(row["n"]) if row else 0


__all__ = ["PostgresStore"]
