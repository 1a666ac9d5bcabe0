"""
Session-scoped key/value storage for trip state, preferences and quotes.

Values are plain JSON-compatible dicts. Keys are namespaced per session
("trip:<session>", "prefs:<session>", ...). Stores are injected into the
services; the process-wide default is picked from SESSION_STORE.
"""
import asyncio
import copy
import logging
import os
import weakref
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SESSION_STORE = os.getenv("SESSION_STORE", "memory").lower()


def session_key(namespace: str, session_id: str) -> str:
    return f"{namespace}:{session_id or 'default'}"


class SessionStore:
    """get(key) -> value | None, set(key, value). Implementations must not share mutable values with callers."""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError


class InMemorySessionStore(SessionStore):
    def __init__(self):
        self._values: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        value = self._values.get(key)
        return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = copy.deepcopy(value)

    def keys(self):
        return list(self._values)


class SessionLocks:
    """
    One asyncio.Lock per session id. Writers for the same session are
    serialised; different sessions never contend.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __call__(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock


# Global instance
_session_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    """Get or create the process-wide session store selected by SESSION_STORE."""
    global _session_store
    if _session_store is None:
        if SESSION_STORE == "postgres":
            from database import PostgresSessionStore
            _session_store = PostgresSessionStore()
            logger.info("Using PostgreSQL session store.")
        elif SESSION_STORE == "memory":
            _session_store = InMemorySessionStore()
            logger.info("Using in-memory session store.")
        else:
            raise RuntimeError(f"Unsupported SESSION_STORE: {SESSION_STORE}. Use 'memory' or 'postgres'.")
    return _session_store
