"""
Pytest configuration and fixtures for the Live Trivia tests.
"""

import os
from typing import Any, Dict, List, Tuple

import pytest

# Set test environment before importing app
os.environ['DEBUG'] = 'false'
os.environ['ADMIN_KEY'] = 'test-admin-key'
os.environ['SESSION_STORE'] = 'memory'

from app import app, socketio, reset_runtime
from manager import GameManager
from store import MemorySessionStore


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    """Stand-in for threading.Timer that only fires when told to."""

    def __init__(self, interval: float, function: Any) -> None:
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function()


class FakeScheduler:
    """Collects FakeTimers created through ``factory``."""

    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def factory(self, interval: float, function: Any) -> FakeTimer:
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if t.started and not t.cancelled]

    def fire_pending(self) -> None:
        for timer in self.pending():
            timer.fire()


class EventLog:
    """Records broadcasts handed to the notify callback."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any], str]] = []

    def record(self, event: str, payload: Dict[str, Any], session_id: str) -> None:
        self.events.append((event, payload, session_id))

    def named(self, name: str) -> List[Dict[str, Any]]:
        return [payload for event, payload, _ in self.events if event == name]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def store(clock):
    return MemorySessionStore(clock=clock)


@pytest.fixture
def manager(store, events, clock, scheduler):
    """A GameManager over an in-memory store with fake time and timers."""
    mgr = GameManager(
        store,
        notify=events.record,
        clock=clock,
        timer_factory=scheduler.factory,
        round_duration=60,
        result_delay=3,
        grace_period=300,
        session_ttl=3600,
    )
    yield mgr
    mgr.shutdown()


@pytest.fixture
def lobby(manager):
    """A waiting session 'GAME01' with Alice (game master), Bob and Carol."""
    manager.create_session_with_id('GAME01', 'alice', 'Alice')
    manager.join('GAME01', 'bob', 'Bob')
    manager.join('GAME01', 'carol', 'Carol')
    return 'GAME01'


@pytest.fixture
def active_round(manager, lobby):
    """The lobby with a question set and the round running."""
    manager.set_question(lobby, 'alice', 'Capital of France?', 'Paris')
    manager.start_round(lobby, 'alice')
    return lobby


@pytest.fixture(scope='function')
def test_app():
    """Create a test Flask application."""
    app.config['TESTING'] = True
    app.config['SECRET_KEY'] = 'test-secret-key'
    yield app


@pytest.fixture(scope='function')
def client(test_app, clean_runtime):
    """Create a test client for HTTP requests."""
    return test_app.test_client()


@pytest.fixture(scope='function')
def socketio_client(test_app, clean_runtime):
    """Create a Socket.IO test client."""
    return socketio.test_client(test_app)


@pytest.fixture(scope='function')
def make_client(test_app, clean_runtime):
    """Factory for additional Socket.IO test clients."""
    clients = []

    def _make():
        c = socketio.test_client(test_app)
        clients.append(c)
        return c

    yield _make
    for c in clients:
        if c.is_connected():
            c.disconnect()


@pytest.fixture(scope='function')
def clean_runtime():
    """Start every test with an empty session store and no timers."""
    mgr = reset_runtime(MemorySessionStore())
    yield mgr
    reset_runtime(MemorySessionStore())


@pytest.fixture
def admin_headers():
    return {'X-Admin-Key': 'test-admin-key'}
