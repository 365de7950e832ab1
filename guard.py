"""
Per-session mutual exclusion.

Every mutation of a session runs inside ``SessionGuard.hold(session_id)``.
Holders of the same id queue on one lock; different ids never contend.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Generator


class SessionGuard:
    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def hold(self, session_id: str) -> Generator[None, None, None]:
        """Block until ``session_id`` is free, then hold it for the block."""
        with self._registry_lock:
            lock = self._locks.setdefault(session_id, threading.Lock())
            self._users[session_id] = self._users.get(session_id, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._registry_lock:
                self._users[session_id] -= 1
                if not self._users[session_id]:
                    # nobody holds or waits on it any more
                    del self._users[session_id]
                    del self._locks[session_id]

    def tracked(self) -> int:
        """Number of session ids with a holder or waiter."""
        with self._registry_lock:
            return len(self._locks)
