"""
Tests for the session stores and per-session locks.

The PostgreSQL store is exercised against a mocked cursor; no database is needed.
"""
import asyncio
from contextlib import contextmanager
from unittest.mock import MagicMock

import psycopg2
from psycopg2 import extras
import pytest

import database
import session_store
from session_store import InMemorySessionStore, SessionLocks, get_session_store, session_key


def test_session_key():
    assert session_key("trip", "abc") == "trip:abc"
    assert session_key("prefs", "") == "prefs:default"
    assert session_key("prefs", None) == "prefs:default"


def test_in_memory_store_does_not_share_values():
    store = InMemorySessionStore()
    value = {"waypoints": [1, 2]}
    store.set("trip:s1", value)
    value["waypoints"].append(3)

    stored = store.get("trip:s1")
    assert stored == {"waypoints": [1, 2]}
    stored["waypoints"].append(4)
    assert store.get("trip:s1") == {"waypoints": [1, 2]}
    assert store.get("trip:missing") is None
    assert store.keys() == ["trip:s1"]


def test_locks_are_per_session():
    locks = SessionLocks()

    async def run():
        first = locks("alice")
        assert locks("alice") is first
        assert locks("bob") is not first
        async with first:
            # another session is never blocked
            async with locks("bob"):
                pass

    asyncio.run(run())


def test_default_store_selection(monkeypatch):
    monkeypatch.setattr(session_store, "_session_store", None)
    monkeypatch.setattr(session_store, "SESSION_STORE", "memory")
    store = get_session_store()
    assert isinstance(store, InMemorySessionStore)
    assert get_session_store() is store

    monkeypatch.setattr(session_store, "_session_store", None)
    monkeypatch.setattr(session_store, "SESSION_STORE", "redis")
    with pytest.raises(RuntimeError):
        get_session_store()


# ============================================================================
# POSTGRES STORE
# ============================================================================

@pytest.fixture
def cursor(monkeypatch):
    cur = MagicMock()
    commits = []

    @contextmanager
    def fake_get_cursor(commit=False):
        yield cur
        commits.append(commit)

    monkeypatch.setattr(database, "get_cursor", fake_get_cursor)
    cur.commits = commits
    return cur


def test_postgres_get_returns_stored_value(cursor):
    cursor.fetchone.return_value = {"value": {"status": "ready"}}
    assert database.PostgresSessionStore().get("trip:s1") == {"status": "ready"}

    sql, params = cursor.execute.call_args[0]
    assert "SELECT value FROM trip_engine_session_state" in sql
    assert params == ("trip:s1",)


def test_postgres_get_missing_row(cursor):
    cursor.fetchone.return_value = None
    assert database.PostgresSessionStore().get("trip:nobody") is None


def test_postgres_set_upserts_json(cursor):
    database.PostgresSessionStore().set("prefs:s1", {"avoidTolls": True})

    sql, params = cursor.execute.call_args[0]
    assert "ON CONFLICT (session_key) DO UPDATE" in sql
    assert params[0] == "prefs:s1"
    assert isinstance(params[1], extras.Json)
    assert params[1].adapted == {"avoidTolls": True}
    assert cursor.commits == [True]


def test_postgres_set_reraises_database_errors(cursor):
    cursor.execute.side_effect = psycopg2.OperationalError("connection lost")
    with pytest.raises(psycopg2.OperationalError):
        database.PostgresSessionStore().set("prefs:s1", {})


def test_init_database_requires_configuration(monkeypatch):
    monkeypatch.setattr(database, "_pool", None)
    for name in database.REQUIRED_SETTINGS:
        monkeypatch.setenv(name, "x")
    monkeypatch.delenv("DB_HOST")
    with pytest.raises(RuntimeError) as info:
        database.init_database()
    assert "DB_HOST" in str(info.value)
    assert database._pool is None


def test_connection_dsn_quotes_values():
    dsn = database.connection_dsn({
        "DB_HOST": "db.internal",
        "DB_PORT": "5432",
        "DB_USERNAME": "trips",
        "DB_PASSWORD": "p w'd",
        "DB_NAME": "trip_engine",
    })
    assert "host=db.internal" in dsn
    assert "dbname=trip_engine" in dsn
    assert "password='p w\\'d'" in dsn


def test_read_cursor_rolls_back_and_returns_connection(monkeypatch):
    conn = MagicMock()
    fake_pool = MagicMock()
    fake_pool.getconn.return_value = conn
    monkeypatch.setattr(database, "_pool", fake_pool)

    with database.get_cursor() as cur:
        assert cur is conn.cursor.return_value.__enter__.return_value

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    fake_pool.putconn.assert_called_once_with(conn)


def test_failed_write_rolls_back(monkeypatch):
    conn = MagicMock()
    fake_pool = MagicMock()
    fake_pool.getconn.return_value = conn
    monkeypatch.setattr(database, "_pool", fake_pool)

    with pytest.raises(psycopg2.DatabaseError):
        with database.get_cursor(commit=True):
            raise psycopg2.DatabaseError("disk full")

    conn.commit.assert_not_called()
    conn.rollback.assert_called_once()
    fake_pool.putconn.assert_called_once_with(conn)
