from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta, timezone

import pytest

from careauth.logging import get_logger
from careauth.storage.errors import ConcurrencyConflict
from careauth.storage.models import User
from careauth.storage.postgres import REQUIRED_TABLES, PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    """Answers each execute() from a queue of canned rows and records the SQL."""

    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        row = self.rows.pop(0) if self.rows else None
        return FakeCursor(row, rowcount=1 if row else 0)

    @contextmanager
    def transaction(self):
        yield self


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.pool = FakePool(conn)
    store._active_conn = ContextVar("careauth_pg_conn_test", default=None)
    store.logger = get_logger("tests.postgres")
    return store


def test_constructor_refuses_missing_tables():
    present = [{"oid": 1}] * (len(REQUIRED_TABLES) - 1) + [{"oid": None}]
    conn = FakeConnection(present)
    with pytest.raises(RuntimeError) as excinfo:
        PostgresStore("postgresql://unused", pool=FakePool(conn))
    assert REQUIRED_TABLES[-1] in str(excinfo.value)
    assert len(conn.statements) == len(REQUIRED_TABLES)


def test_constructor_accepts_complete_schema():
    conn = FakeConnection([{"oid": 1}] * len(REQUIRED_TABLES))
    store = PostgresStore("postgresql://unused", pool=FakePool(conn))
    assert all("to_regclass" in sql for sql, _ in conn.statements)
    store.close()
    assert store.pool.closed


def test_ping():
    assert _store(FakeConnection([{"ok": 1}])).ping()
    assert not _store(FakeConnection([None])).ping()


def test_versioned_update_conflict_when_no_row_returned():
    conn = FakeConnection([None])
    store = _store(conn)
    user = User(id="u-1", email="user@example.com", version=3)
    with pytest.raises(ConcurrencyConflict):
        store.update_user(user, expected_version=3)
    sql, params = conn.statements[0]
    assert "AND version = %s" in sql
    assert params[-2:] == ("u-1", 3)


def test_rotate_returns_none_when_hash_already_moved():
    conn = FakeConnection([None])
    store = _store(conn)
    now = datetime.now(timezone.utc)
    rotated = store.rotate_refresh_token(
        "s-1",
        expected_hash="old",
        new_hash="new",
        expires_at=now + timedelta(days=30),
        accessed_at=now,
        ip_address=None,
        user_agent=None,
    )
    assert rotated is None
    sql, params = conn.statements[0]
    assert "refresh_token_hash = %s AND is_active" in sql
    assert params[-2:] == ("s-1", "old")


def test_transaction_shares_one_connection():
    conn = FakeConnection([None, None])
    store = _store(conn)
    with store.transaction():
        assert store._active_conn.get() is conn
        store.get_user("a")
        store.get_user("b")
    assert store._active_conn.get() is None
    assert len(conn.statements) == 2
