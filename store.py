"""
Session snapshot storage with expiry.

Three interchangeable backends are provided:

- ``MemorySessionStore`` keeps snapshots in a process-local dict.
- ``SqliteSessionStore`` keeps JSON snapshots in a SQLite table.
- ``RedisSessionStore`` keeps JSON snapshots in Redis keys with a native TTL.

All of them hand out fresh ``Session`` objects on every ``load`` so no
caller ever holds a live reference into the store.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

import redis

from config import DATABASE_PATH, REDIS_KEY_PREFIX, REDIS_URL, SESSION_STORE
from errors import StoreUnavailable
from models import Session

logger = logging.getLogger(__name__)


class SessionStore:
    """Interface shared by the store backends."""

    def load(self, session_id: str) -> Optional[Session]:
        """Return a fresh copy of the session, or None if missing or expired."""
        raise NotImplementedError

    def save(self, session: Session, ttl: float) -> None:
        """Store a snapshot that expires ``ttl`` seconds from now."""
        raise NotImplementedError

    def delete(self, session_id: str) -> None:
        raise NotImplementedError

    def session_ids(self) -> List[str]:
        """Ids of every unexpired session."""
        raise NotImplementedError

    def ping(self) -> None:
        """Raise StoreUnavailable when the backend cannot be reached."""


# =============================================================================
# In-process Backend
# =============================================================================


class MemorySessionStore(SessionStore):
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[dict, float]] = {}
        self._lock = threading.Lock()

    def _live_entry(self, session_id: str) -> Optional[dict]:
        """Return the stored snapshot, dropping it if it has expired."""
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        data, expires_at = entry
        if expires_at <= self._clock():
            logger.debug(f"Session {session_id} expired")
            del self._entries[session_id]
            return None
        return data

    def _prune(self) -> None:
        now = self._clock()
        expired = [sid for sid, (_, expires_at) in self._entries.items() if expires_at <= now]
        for session_id in expired:
            del self._entries[session_id]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired sessions")

    def load(self, session_id: str) -> Optional[Session]:
        """Return a fresh copy of the session, or None if missing or expired."""
        with self._lock:
            data = self._live_entry(session_id)
            if data is None:
                return None
            return Session.from_dict(data)

    def save(self, session: Session, ttl: float) -> None:
        """Store a snapshot for ``ttl`` seconds and drop expired ones."""
        with self._lock:
            self._prune()
            self._entries[session.id] = (session.to_dict(), self._clock() + ttl)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def session_ids(self) -> List[str]:
        """Ids of every unexpired session."""
        with self._lock:
            return [sid for sid in list(self._entries) if self._live_entry(sid) is not None]


# =============================================================================
# SQLite Backend
# =============================================================================


class SqliteSessionStore(SessionStore):
    def __init__(self, path: str = DATABASE_PATH, clock: Callable[[], float] = time.time) -> None:
        self.path = path
        self._clock = clock
        self.init_db()

    @contextmanager
    def get_db_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections."""
        conn = None
        try:
            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            raise StoreUnavailable() from e
        finally:
            if conn:
                conn.close()

    def init_db(self) -> None:
        """Initialize the database schema."""
        logger.info(f"Initializing session database at {self.path}...")
        with self.get_db_connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    expires_at REAL NOT NULL,
                    updated_at TEXT
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_sessions_expiry ON sessions(expires_at)')
            conn.commit()

    def load(self, session_id: str) -> Optional[Session]:
        """Return the stored session, deleting the row if it has expired."""
        with self.get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute('SELECT payload, expires_at FROM sessions WHERE session_id=?', (session_id,))
            row = cur.fetchone()
            if not row:
                return None
            if row['expires_at'] <= self._clock():
                logger.debug(f"Session {session_id} expired")
                cur.execute('DELETE FROM sessions WHERE session_id=?', (session_id,))
                conn.commit()
                return None
        return Session.from_dict(json.loads(row['payload']))

    def save(self, session: Session, ttl: float) -> None:
        """Insert or replace the snapshot with a fresh expiry."""
        with self.get_db_connection() as conn:
            conn.execute(
                'INSERT OR REPLACE INTO sessions(session_id, payload, expires_at, updated_at) VALUES(?,?,?,?)',
                (session.id, json.dumps(session.to_dict()), self._clock() + ttl,
                 datetime.utcnow().isoformat())
            )
            conn.commit()

    def delete(self, session_id: str) -> None:
        with self.get_db_connection() as conn:
            conn.execute('DELETE FROM sessions WHERE session_id=?', (session_id,))
            conn.commit()

    def session_ids(self) -> List[str]:
        """Purge expired rows, then list the remaining ids."""
        with self.get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute('DELETE FROM sessions WHERE expires_at <= ?', (self._clock(),))
            conn.commit()
            cur.execute('SELECT session_id FROM sessions ORDER BY session_id')
            return [row['session_id'] for row in cur.fetchall()]

    def ping(self) -> None:
        with self.get_db_connection() as conn:
            conn.execute('SELECT 1')


# =============================================================================
# Redis Backend
# =============================================================================


class RedisSessionStore(SessionStore):
    """JSON snapshots under prefixed keys. Redis enforces the TTL itself."""

    def __init__(self, url: str = REDIS_URL, prefix: str = REDIS_KEY_PREFIX,
                 client: Optional[Any] = None) -> None:
        self.prefix = prefix
        self.client = client if client is not None else redis.Redis.from_url(url, decode_responses=True)

    def _key(self, session_id: str) -> str:
        return f'{self.prefix}{session_id}'

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Yield the client, mapping Redis failures to StoreUnavailable."""
        try:
            yield self.client
        except redis.RedisError as e:
            logger.error(f"Redis error: {e}")
            raise StoreUnavailable() from e

    def load(self, session_id: str) -> Optional[Session]:
        with self.connection() as client:
            payload = client.get(self._key(session_id))
        if payload is None:
            return None
        return Session.from_dict(json.loads(payload))

    def save(self, session: Session, ttl: float) -> None:
        """Write the snapshot with a millisecond expiry of at least 1 ms."""
        with self.connection() as client:
            client.set(self._key(session.id), json.dumps(session.to_dict()),
                       px=max(1, int(ttl * 1000)))

    def delete(self, session_id: str) -> None:
        with self.connection() as client:
            client.delete(self._key(session_id))

    def session_ids(self) -> List[str]:
        with self.connection() as client:
            keys = list(client.scan_iter(match=f'{self.prefix}*'))
        return sorted(key[len(self.prefix):] for key in keys)

    def ping(self) -> None:
        with self.connection() as client:
            client.ping()


def build_store(kind: str = SESSION_STORE, path: str = DATABASE_PATH,
                url: str = REDIS_URL) -> SessionStore:
    """Create the store backend selected by configuration."""
    if kind == 'memory':
        return MemorySessionStore()
    if kind == 'sqlite':
        return SqliteSessionStore(path)
    if kind == 'redis':
        return RedisSessionStore(url)
    raise ValueError(f"Unknown session store backend: {kind!r}")
