"""Unit tests for PostgresStore SQL plumbing with the connection pool stubbed out."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from fanauth.storage.errors import ConstraintViolation
from fanauth.storage.models import AuditAction, Role, Session, Tier
from fanauth.storage.postgres import PostgresStore

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


class UsernameTaken(errors.UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="fan_user_username_key")


def _store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(results)
    store.pool = FakePool(conn)
    return store, conn


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "email": "fan@example.com",
        "username": "warri_fan",
        "full_name": "Erigga Fan",
        "password_hash": "$argon2id$hash",
        "tier": "elder",
        "role": "moderator",
        "coins": 500,
        "level": 2,
        "points": 40,
        "is_active": True,
        "is_banned": False,
        "is_verified": True,
        "failed_login_attempts": 1,
        "locked_until": None,
        "last_login": NOW,
        "login_count": 3,
        "avatar_url": None,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_user_rows_map_to_models():
    store, conn = _store(FakeCursor([_user_row()]))

    user = store.get_user_by_email("FAN@example.com")

    assert user.tier == Tier.ELDER
    assert user.role == Role.MODERATOR
    assert user.login_count == 3
    assert user.is_verified is True
    sql, params = conn.executed[0]
    assert "lower(email) = lower(%s)" in sql
    assert params == ("FAN@example.com",)


def test_missing_user_returns_none():
    store, _ = _store(FakeCursor([]))
    assert store.get_user("missing") is None


def test_create_user_maps_unique_violation_to_field():
    store, _ = _store(UsernameTaken("duplicate key"))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("fan@example.com", "warri_fan", "Erigga Fan", "hash")

    assert exc_info.value.detail == {"field": "username"}


def test_create_user_sends_tier_value():
    store, conn = _store(FakeCursor([_user_row(tier="pioneer")]))

    user = store.create_user(
        "fan@example.com", "warri_fan", "Erigga Fan", "hash", tier=Tier.PIONEER, coins=500, now=NOW
    )

    _, params = conn.executed[0]
    assert params[5] == "pioneer"
    assert params[6] == 500
    assert params[-1] == NOW
    assert user.tier == Tier.PIONEER


def test_update_user_converts_enums_and_rejects_unknown_fields():
    store, conn = _store(FakeCursor([_user_row(role="admin")]))

    store.update_user("user-1", role=Role.ADMIN, coins=10)

    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE fan_user SET role = %s, coins = %s WHERE id = %s")
    assert params == ("admin", 10, "user-1")
    with pytest.raises(ValueError):
        store.update_user("user-1", email="x@example.com")


def test_register_failed_login_passes_threshold():
    lock_until = NOW + timedelta(minutes=30)
    store, conn = _store(
        FakeCursor([_user_row(failed_login_attempts=5, locked_until=lock_until)])
    )

    user = store.register_failed_login("user-1", 5, lock_until)

    assert user.locked_until == lock_until
    assert conn.executed[0][1] == (5, lock_until, "user-1")


def test_session_rows_decode_json_columns():
    row = {
        "token": "sess_abc",
        "id": "7f3c9a52-0d4e-4a8e-9c1b-2f6d8e4a1b70",
        "user_id": "user-1",
        "created_at": NOW,
        "last_activity": NOW,
        "expires_at": NOW + timedelta(hours=24),
        "ip_address": "10.0.0.1",
        "user_agent": "pytest",
        "device_info": '{"platform": "Linux"}',
        "is_active": True,
        "remember_me": False,
        "deactivated_at": None,
        "meta": {"refresh_jti": "abc"},
    }
    store, _ = _store(FakeCursor([row]))

    session = store.find_session_by_token("sess_abc")

    assert session.device_info == {"platform": "Linux"}
    assert session.meta == {"refresh_jti": "abc"}
    assert session.id == "7f3c9a52-0d4e-4a8e-9c1b-2f6d8e4a1b70"


def test_insert_session_for_missing_user():
    store, _ = _store(errors.ForeignKeyViolation("no such user"))
    session = Session.new("ghost", timedelta(hours=1), now=NOW)

    with pytest.raises(ConstraintViolation) as exc_info:
        store.insert_session(session)

    assert exc_info.value.detail == {"user_id": "ghost"}


def test_deactivate_session_reports_rowcount():
    store, conn = _store(FakeCursor(rowcount=1), FakeCursor(rowcount=0))

    assert store.deactivate_session("sess_abc", NOW) is True
    assert store.deactivate_session("sess_abc", NOW) is False
    assert "AND is_active" in conn.executed[0][0]


def test_count_recent_entries_builds_filters():
    since = NOW - timedelta(minutes=15)
    store, conn = _store(FakeCursor([{"n": 4}]))

    count = store.count_recent_entries(
        AuditAction.LOGIN_FAILED, since, email="fan@example.com", ip_address="10.0.0.1"
    )

    assert count == 4
    sql, params = conn.executed[0]
    assert "lower(metadata->>'email') = lower(%s)" in sql
    assert "ip_address = %s" in sql
    assert params == ("LOGIN_FAILED", since, "fan@example.com", "10.0.0.1")


def test_insert_session_stores_public_id():
    store, conn = _store(FakeCursor())
    session = Session.new("user-1", timedelta(hours=1), now=NOW)

    store.insert_session(session)

    sql, params = conn.executed[0]
    assert "(token, id, user_id" in sql
    assert params[:3] == (session.token, session.id, "user-1")


def test_find_session_by_id_queries_public_id():
    store, conn = _store(FakeCursor([]))

    assert store.find_session_by_id("7f3c9a52") is None
    assert conn.executed[0] == ("SELECT * FROM user_session WHERE id = %s", ("7f3c9a52",))
