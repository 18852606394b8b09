"""Unit tests for PostgresStore that stub out the connection pool."""

import contextlib
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from iamcore.logging import get_logger
from iamcore.storage.errors import ConstraintViolation, StoreError
from iamcore.storage.models import RefreshToken, UserStatus
from iamcore.storage.postgres import PostgresStore, _row_to_audit_log, _row_to_user

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and replays scripted results in order."""

    def __init__(self, results=None, fail_with=None):
        self.results = list(results or [])
        self.fail_with = fail_with
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.fail_with is not None:
            raise self.fail_with
        return self.results.pop(0) if self.results else FakeCursor()

    def transaction(self):
        return contextlib.nullcontext()


class FakePool:
    def __init__(self, conn=None, fail_with=None):
        self.conn = conn
        self.fail_with = fail_with
        self.closed = False

    def connection(self, timeout=None):
        if self.fail_with is not None:
            raise self.fail_with
        return contextlib.nullcontext(self.conn)

    def close(self):
        self.closed = True


def _store(conn=None, pool_error=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.timeout_seconds = 1.0
    store.pool = FakePool(conn, fail_with=pool_error)
    store.logger = get_logger("test")
    return store


def _token(value="next"):
    return RefreshToken(
        token=value, user_id="u1", tenant_id="t1", expires_at=NOW + timedelta(days=7)
    )


class TestErrorMapping:
    def test_unique_violation_is_constraint_violation(self):
        store = _store(FakeConnection(fail_with=errors.UniqueViolation("duplicate key")))

        with pytest.raises(ConstraintViolation):
            store.create_tenant("Acme")

    def test_foreign_key_violation_is_constraint_violation(self):
        store = _store(FakeConnection(fail_with=errors.ForeignKeyViolation("missing tenant")))

        with pytest.raises(ConstraintViolation):
            store.create_user("a@x.com", "h", tenant_id="missing")

    def test_driver_error_is_store_error(self):
        store = _store(FakeConnection(fail_with=psycopg.OperationalError("server closed")))

        with pytest.raises(StoreError) as exc_info:
            store.get_user("u1")
        assert not isinstance(exc_info.value, ConstraintViolation)

    def test_pool_timeout_is_store_error(self):
        store = _store(pool_error=PoolTimeout("couldn't get a connection"))

        with pytest.raises(StoreError):
            store.get_tenant("t1")

    def test_ping_reports_failure(self):
        assert _store(pool_error=PoolTimeout("timeout")).ping() is False
        assert _store(FakeConnection([FakeCursor([{"?column?": 1}])])).ping() is True

    def test_close_closes_pool(self):
        store = _store(FakeConnection())
        store.close()
        assert store.pool.closed is True


class TestRefreshRotation:
    def test_rotation_inserts_successor_when_update_wins(self):
        conn = FakeConnection([FakeCursor([{"token": "old"}]), FakeCursor()])
        store = _store(conn)

        assert store.rotate_refresh_token("old", _token(), NOW) is True

        update_sql, update_params = conn.statements[0]
        assert "revoked_at IS NULL AND expires_at >" in update_sql
        assert update_params == (NOW, "old", NOW)
        assert conn.statements[1][0].startswith("INSERT INTO refresh_tokens")
        assert conn.statements[1][1][0] == "next"

    def test_rotation_stops_when_update_loses(self):
        conn = FakeConnection([FakeCursor([])])
        store = _store(conn)

        assert store.rotate_refresh_token("old", _token(), NOW) is False
        assert len(conn.statements) == 1


class TestUsers:
    def test_deactivate_revokes_in_same_transaction(self):
        conn = FakeConnection([FakeCursor([{"id": "u1"}]), FakeCursor(rowcount=3)])
        store = _store(conn)

        assert store.deactivate_user("u1", NOW) == 3
        assert conn.statements[0][1] == (UserStatus.INACTIVE.value, NOW, "u1")
        assert conn.statements[1][0].startswith("UPDATE refresh_tokens SET revoked_at")

    def test_deactivate_unknown_user(self):
        store = _store(FakeConnection([FakeCursor([])]))

        assert store.deactivate_user("ghost", NOW) is None

    def test_email_lookup_matches_null_tenant(self):
        conn = FakeConnection([FakeCursor([])])
        store = _store(conn)

        assert store.get_user_by_email("Root@X.com", None) is None
        sql, params = conn.statements[0]
        assert "IS NOT DISTINCT FROM" in sql
        assert params == ("Root@X.com", None)

    def test_create_user_assigns_roles_once(self):
        row = {
            "id": "u1",
            "email": "a@x.com",
            "password_hash": "h",
            "tenant_id": "t1",
            "status": "ACTIVE",
            "created_at": NOW,
            "updated_at": NOW,
        }
        conn = FakeConnection([FakeCursor([row])])
        store = _store(conn)

        user = store.create_user("a@x.com", "h", tenant_id="t1", role_ids=["r1", "r1", "r2"])

        assert user.id == "u1"
        role_inserts = [p for sql, p in conn.statements if sql.startswith("INSERT INTO user_roles")]
        assert role_inserts == [("u1", "r1"), ("u1", "r2")]


class TestRowMapping:
    def test_user_row(self):
        user = _row_to_user(
            {
                "id": "u1",
                "email": "a@x.com",
                "password_hash": "h",
                "tenant_id": None,
                "status": "INACTIVE",
            }
        )
        assert user.tenant_id is None
        assert user.status == UserStatus.INACTIVE

    def test_audit_row_with_json_string_metadata(self):
        entry = _row_to_audit_log(
            {
                "id": "a1",
                "actor_id": "u1",
                "action": "USER_LOGIN",
                "target": "u1",
                "tenant_id": "t1",
                "metadata": '{"revoked": true}',
                "created_at": NOW,
            }
        )
        assert entry.metadata == {"revoked": True}
