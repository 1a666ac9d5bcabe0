"""
PostgreSQL-backed session store.

Each session key ("trip:<session>", "prefs:<session>", ...) is one row holding
a JSONB document. Selected with SESSION_STORE=postgres.
"""
import os
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

import psycopg2
from psycopg2 import extensions, extras, pool
from dotenv import load_dotenv

from session_store import SessionStore

load_dotenv()

logger = logging.getLogger(__name__)

REQUIRED_SETTINGS = ("DB_HOST", "DB_PORT", "DB_USERNAME", "DB_PASSWORD", "DB_NAME")
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "10"))
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))

SESSION_TABLE = "trip_engine_session_state"

_pool: Optional[pool.SimpleConnectionPool] = None


def database_settings() -> Dict[str, str]:
    """
    Read the DB_* connection settings from the environment.

    Raises:
        RuntimeError: any required setting is empty
    """
    settings = {name: os.getenv(name) for name in REQUIRED_SETTINGS}
    missing = [name for name, value in settings.items() if not value]
    if missing:
        raise RuntimeError(f"Database configuration missing: {', '.join(missing)}")
    return settings


def connection_dsn(settings: Dict[str, str]) -> str:
    # make_dsn quotes passwords containing spaces or quotes
    return extensions.make_dsn(
        host=settings["DB_HOST"],
        port=settings["DB_PORT"],
        user=settings["DB_USERNAME"],
        password=settings["DB_PASSWORD"],
        dbname=settings["DB_NAME"],
        connect_timeout=DB_CONNECT_TIMEOUT,
    )


def init_database() -> pool.SimpleConnectionPool:
    """Open the connection pool (once) and create the session table."""
    global _pool
    if _pool is not None:
        return _pool

    _pool = pool.SimpleConnectionPool(
        1,
        DB_POOL_MAX,
        dsn=connection_dsn(database_settings()),
        cursor_factory=extras.RealDictCursor,
    )
    logger.info(f"PostgreSQL pool ready (max {DB_POOL_MAX} connections).")
    _ensure_schema()
    return _pool


def close_pool():
    global _pool
    if _pool is None:
        return
    _pool.closeall()
    _pool = None
    logger.info("Database connection pool closed.")


def _ensure_schema():
    with get_cursor(commit=True) as cur:
        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS {SESSION_TABLE} (
                session_key TEXT PRIMARY KEY,
                value JSONB NOT NULL,
                created_at TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP NOT NULL,
                updated_at TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_{SESSION_TABLE}_updated_at
                ON {SESSION_TABLE}(updated_at DESC);
        """)
    logger.info(f"Table {SESSION_TABLE} ensured.")


@contextmanager
def get_cursor(commit: bool = False):
    """
    Borrow a pooled connection for one unit of work.

    The transaction is committed only when commit=True and the block succeeds;
    otherwise it is rolled back so the connection goes back to the pool clean.
    """
    connections = _pool or init_database()
    conn = connections.getconn()
    try:
        with conn.cursor() as cur:
            yield cur
        if commit:
            conn.commit()
        else:
            conn.rollback()
    except Exception:
        conn.rollback()
        raise
    finally:
        connections.putconn(conn)


class PostgresSessionStore(SessionStore):
    """
    Durable session store: one JSONB row per session key.
    Rows are never deleted here; retention is the database's concern.
    """

    def get(self, key: str) -> Optional[Any]:
        with get_cursor() as cur:
            cur.execute(f"SELECT value FROM {SESSION_TABLE} WHERE session_key = %s", (key,))
            row = cur.fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: Any) -> None:
        try:
            with get_cursor(commit=True) as cur:
                cur.execute(
                    f"""
                    INSERT INTO {SESSION_TABLE} (session_key, value)
                    VALUES (%s, %s)
                    ON CONFLICT (session_key) DO UPDATE
                    SET value = EXCLUDED.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, extras.Json(value)),
                )
        except psycopg2.Error as e:
            logger.error(f"Failed to save session state {key}: {e}")
            raise
