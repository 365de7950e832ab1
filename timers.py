"""
One-shot deadlines keyed by session id.

A ``DeadlineTimers`` registry holds at most one pending timer per session.
Arming replaces the previous timer, disarming cancels it. Callbacks must
re-check the session before acting: a cancel can lose the race against a
timer that is already firing.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

TimerFactory = Callable[..., Any]


class DeadlineTimers:
    def __init__(self, name: str, timer_factory: Optional[TimerFactory] = None) -> None:
        self.name = name
        self._timer_factory = timer_factory or threading.Timer
        self._timers: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def arm(self, session_id: str, delay: float, callback: Callable[..., None], *args: Any) -> None:
        """Schedule ``callback(*args)`` after ``delay`` seconds, replacing any pending timer."""
        holder: Dict[str, Any] = {}

        def fire() -> None:
            with self._lock:
                # a replaced timer must not unregister its successor
                if self._timers.get(session_id) is holder.get('timer'):
                    self._timers.pop(session_id, None)
            logger.debug(f"{self.name} timer fired for session {session_id}")
            try:
                callback(*args)
            except Exception:
                logger.exception(f"{self.name} timer callback failed for session {session_id}")

        with self._lock:
            previous = self._timers.pop(session_id, None)
            if previous is not None:
                previous.cancel()
            timer = self._timer_factory(delay, fire)
            timer.daemon = True
            holder['timer'] = timer
            self._timers[session_id] = timer
            timer.start()
        logger.debug(f"{self.name} timer armed for session {session_id} ({delay}s)")

    def disarm(self, session_id: str) -> bool:
        """Cancel the pending timer for a session. Returns True if one was armed."""
        with self._lock:
            timer = self._timers.pop(session_id, None)
        if timer is None:
            return False
        timer.cancel()
        logger.debug(f"{self.name} timer disarmed for session {session_id}")
        return True

    def is_armed(self, session_id: str) -> bool:
        """True while a timer is pending for the session."""
        with self._lock:
            return session_id in self._timers

    def cancel_all(self) -> None:
        """Cancel every pending timer, e.g. on shutdown."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
