"""
Game manager: the guarded load-mutate-save cycle around the state machine.

Every public method that changes a session:

1. enters the per-session guard,
2. loads a private snapshot from the session store,
3. applies one state machine transition,
4. saves the snapshot (short TTL once the game is over),
5. arms or disarms the session's deadlines,
6. hands a description of the new state to ``notify`` for fan-out.

Deadlines only change after the save succeeded, so a store failure leaves
the stored state and the armed timers in agreement. ``notify(event,
payload, session_id)`` is supplied by the transport layer. Errors raised by
the state machine propagate to the caller untouched.
"""

import logging
import random
import string
import time
from typing import Any, Callable, Dict, List, Optional

import machine
from config import (
    CREATE_SESSION_CODE_ATTEMPTS,
    GAME_OVER_GRACE_SECONDS,
    ROUND_DURATION_SECONDS,
    ROUND_RESULT_DELAY_SECONDS,
    SESSION_ID_LENGTH,
    SESSION_TTL_SECONDS,
    STORE_RETRY_SECONDS,
)
from errors import AlreadyExists, RoundInProgress, SessionNotFound, StoreUnavailable
from guard import SessionGuard
from machine import AdvanceResult, GuessResult, RemoveResult
from models import Session, player_list, public_state
from store import SessionStore
from timers import DeadlineTimers, TimerFactory

logger = logging.getLogger(__name__)

Notifier = Callable[[str, Dict[str, Any], str], None]


def gen_session_code(length: int = SESSION_ID_LENGTH) -> str:
    """Generate a random session code."""
    chars = string.ascii_uppercase + string.digits
    return ''.join(random.choice(chars) for _ in range(length))


def _discard(event: str, payload: Dict[str, Any], session_id: str) -> None:
    pass


class GameManager:
    def __init__(
        self,
        store: SessionStore,
        notify: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
        timer_factory: Optional[TimerFactory] = None,
        code_factory: Callable[[], str] = gen_session_code,
        round_duration: float = ROUND_DURATION_SECONDS,
        result_delay: float = ROUND_RESULT_DELAY_SECONDS,
        grace_period: float = GAME_OVER_GRACE_SECONDS,
        session_ttl: float = SESSION_TTL_SECONDS,
        retry_delay: float = STORE_RETRY_SECONDS,
    ) -> None:
        self.store = store
        self.notify = notify or _discard
        self.clock = clock
        self.code_factory = code_factory
        self.round_duration = round_duration
        self.result_delay = result_delay
        self.grace_period = grace_period
        self.session_ttl = session_ttl
        self.retry_delay = retry_delay
        self.guard = SessionGuard()
        self.round_timers = DeadlineTimers('round', timer_factory)
        self.advance_timers = DeadlineTimers('advance', timer_factory)
        self.expiry_timers = DeadlineTimers('expiry', timer_factory)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, session_id: str) -> Session:
        """Load a session or raise SessionNotFound."""
        return machine.require(self.store.load(session_id), session_id)

    def _save(self, session: Session) -> None:
        """Save with the grace TTL once the game is over."""
        ttl = self.grace_period if session.game_over else self.session_ttl
        self.store.save(session, ttl)

    def _players_updated(self, session: Session) -> None:
        self.notify('players_updated', {
            'players': player_list(session),
            'game_master': session.game_master,
        }, session.id)

    def _system(self, session_id: str, message: str) -> None:
        self.notify('system', {'message': message}, session_id)

    def _delete_locked(self, session_id: str, reason: str) -> None:
        """Delete a session whose guard the caller already holds."""
        self.store.delete(session_id)
        self.round_timers.disarm(session_id)
        self.advance_timers.disarm(session_id)
        self.expiry_timers.disarm(session_id)
        logger.info(f"Session {session_id} deleted ({reason})")
        self.notify('session_closed', {'session_id': session_id, 'reason': reason}, session_id)

    def _retry_later(self, timers: DeadlineTimers, session_id: str,
                     callback: Callable[..., None], *args: Any) -> None:
        """Re-arm a deadline that fired while the store was unreachable."""
        with self.guard.hold(session_id):
            # a newer deadline armed meanwhile wins
            if timers.is_armed(session_id):
                return
            logger.warning(f"Store unavailable for session {session_id}, "
                           f"retrying {timers.name} deadline in {self.retry_delay}s")
            timers.arm(session_id, self.retry_delay, callback, session_id, *args)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_session(self, session_id: str) -> Optional[Session]:
        """Return a snapshot of the session, or None."""
        return self.store.load(session_id)

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Summarize every live session for the admin listing."""
        summaries = []
        for session_id in self.store.session_ids():
            session = self.store.load(session_id)
            if session is None:
                continue
            summaries.append({
                'session_id': session.id,
                'status': session.status.value,
                'players': len(session.players),
                'round': session.current_round,
                'max_rounds': session.max_rounds,
                'game_over': session.game_over,
            })
        return summaries

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_session_with_id(self, session_id: str, creator_id: str, creator_name: str,
                               max_rounds: Optional[int] = None) -> Session:
        """Create a session under a given code. Raises AlreadyExists if taken."""
        with self.guard.hold(session_id):
            if self.store.load(session_id) is not None:
                raise AlreadyExists(f'Session {session_id} already exists.')
            session = machine.create_session(session_id, creator_id, creator_name,
                                             max_rounds=max_rounds, now=self.clock())
            self._save(session)
            logger.info(f"Session {session_id} created by {creator_id}")
            self._players_updated(session)
            return session

    def create_session(self, creator_id: str, creator_name: str,
                       max_rounds: Optional[int] = None) -> Session:
        """Create a session under a fresh code, retrying on collisions."""
        for _ in range(CREATE_SESSION_CODE_ATTEMPTS):
            session_id = self.code_factory()
            try:
                return self.create_session_with_id(session_id, creator_id, creator_name, max_rounds)
            except AlreadyExists:
                logger.debug(f"Session code collision on {session_id}, retrying")
        raise AlreadyExists('Unable to create a session code right now.')

    def join(self, session_id: str, player_id: str, name: str) -> Session:
        """Add a player to a waiting session. Joining twice changes nothing."""
        with self.guard.hold(session_id):
            session = self._load(session_id)
            added = machine.add_player(session, player_id, name)
            if not added:
                return session
            self._save(session)
            logger.info(f"Player {player_id} joined session {session_id}")
            self._players_updated(session)
            self._system(session_id, f'{session.find_player(player_id).name} joined.')
            return session

    def set_question(self, session_id: str, requester_id: str, question: str, answer: str) -> Session:
        """Store the game master's question and answer for the coming round."""
        with self.guard.hold(session_id):
            session = self._load(session_id)
            machine.set_question(session, requester_id, question, answer)
            self._save(session)
            logger.info(f"Question set for session {session_id} round {session.current_round}")
            self.notify('question_ready', {'round': session.current_round}, session_id)
            return session

    def start_round(self, session_id: str, requester_id: str) -> Session:
        """Open the round and arm its deadline."""
        with self.guard.hold(session_id):
            session = self._load(session_id)
            machine.start_round(session, requester_id, self.clock())
            self._save(session)
            self.round_timers.arm(session_id, self.round_duration,
                                  self._timeout_after_deadline, session_id, session.start_time)
            logger.info(f"Round {session.current_round} started in session {session_id}")
            self.notify('game_started', {
                'question': session.question,
                'round': session.current_round,
                'start_time': session.start_time,
                'duration': self.round_duration,
                'deadline': session.start_time + self.round_duration,
            }, session_id)
            return session

    def submit_guess(self, session_id: str, player_id: str, guess: str) -> GuessResult:
        """Check a guess. Only a correct one is saved and broadcast."""
        with self.guard.hold(session_id):
            session = self._load(session_id)
            result = machine.submit_guess(session, player_id, guess, self.clock(), self.round_duration)
            if not result.correct:
                return result
            self._save(session)
            self.round_timers.disarm(session_id)
            winner = session.find_player(player_id)
            logger.info(f"Player {player_id} won round {session.current_round} in session {session_id}")
            self.notify('round_ended', {
                'reason': machine.REASON_CORRECT,
                'winner': {'id': winner.id, 'name': winner.name, 'score': winner.score},
                'answer': session.answer,
                'round': session.current_round,
                'players': player_list(session),
            }, session_id)
            self._schedule_advance(session_id)
            return result

    def handle_timeout(self, session_id: str, round_start: Optional[float] = None) -> bool:
        """End the round with no winner. Returns False when the round already ended."""
        with self.guard.hold(session_id):
            session = self.store.load(session_id)
            if session is None or not machine.handle_timeout(session, round_start):
                logger.debug(f"Stale round deadline ignored for session {session_id}")
                return False
            self._save(session)
            self.round_timers.disarm(session_id)
            logger.info(f"Round {session.current_round} timed out in session {session_id}")
            self.notify('round_ended', {
                'reason': machine.REASON_TIMEOUT,
                'winner': None,
                'answer': session.answer,
                'round': session.current_round,
                'players': player_list(session),
            }, session_id)
            self._schedule_advance(session_id)
            return True

    def _timeout_after_deadline(self, session_id: str, round_start: Optional[float]) -> None:
        try:
            self.handle_timeout(session_id, round_start)
        except StoreUnavailable:
            self._retry_later(self.round_timers, session_id, self._timeout_after_deadline, round_start)

    def _schedule_advance(self, session_id: str) -> None:
        if self.result_delay > 0:
            self.advance_timers.arm(session_id, self.result_delay, self._advance_after_pause, session_id)

    def _advance_after_pause(self, session_id: str) -> None:
        try:
            self.advance_round(session_id)
        except StoreUnavailable:
            self._retry_later(self.advance_timers, session_id, self._advance_after_pause)
        except (SessionNotFound, RoundInProgress) as e:
            logger.info(f"Skipped automatic advance for session {session_id}: {e.message}")

    def advance_round(self, session_id: str) -> AdvanceResult:
        """Move an ended round on to the next one, or finish the game."""
        with self.guard.hold(session_id):
            session = self._load(session_id)
            already_over = session.game_over
            result = machine.advance_round(session)
            if already_over:
                return result
            self._save(session)
            self.advance_timers.disarm(session_id)

            if result.outcome == machine.CONTINUE:
                logger.info(f"Session {session_id} moved to round {result.round}")
                self.notify('next_round', {
                    'round': result.round,
                    'game_master': result.game_master,
                    'players': player_list(session),
                }, session_id)
            else:
                logger.info(f"Game over in session {session_id}")
                self.notify('game_over', {
                    'winners': result.winners,
                    'standings': result.standings,
                    'players': player_list(session),
                }, session_id)
                self.expiry_timers.arm(session_id, self.grace_period,
                                       self._expire_after_grace, session_id)
            return result

    def _expire_after_grace(self, session_id: str) -> None:
        try:
            self.delete_session(session_id, 'expired')
        except StoreUnavailable:
            self._retry_later(self.expiry_timers, session_id, self._expire_after_grace)

    def remove_player(self, session_id: str, player_id: str) -> RemoveResult:
        """Drop a player, promoting a new game master or deleting an empty session."""
        with self.guard.hold(session_id):
            session = self.store.load(session_id)
            if session is None:
                return RemoveResult(removed=False)
            result = machine.remove_player(session, player_id)
            if not result.removed:
                return result
            logger.info(f"Player {player_id} left session {session_id}")
            if session.is_empty:
                self._delete_locked(session_id, 'empty')
                return result
            self._save(session)
            self._players_updated(session)
            self._system(session_id, f'{result.player_name} left.')
            if result.master_changed:
                promoted = session.find_player(result.promoted)
                self._system(session_id, f'{promoted.name} is now the game master.')
            return result

    def delete_session(self, session_id: str, reason: str = 'deleted') -> None:
        """Delete a session, cancel its deadlines and tell its members."""
        with self.guard.hold(session_id):
            self._delete_locked(session_id, reason)

    def sweep_empty_sessions(self) -> List[str]:
        """Delete every stored session that has no players left."""
        removed = []
        for session_id in self.store.session_ids():
            with self.guard.hold(session_id):
                session = self.store.load(session_id)
                if session is not None and session.is_empty:
                    self._delete_locked(session_id, 'empty')
                    removed.append(session_id)
        return removed

    def state(self, session_id: str) -> Dict[str, Any]:
        """Return the public view of a session."""
        return public_state(self._load(session_id))

    def shutdown(self) -> None:
        """Cancel every pending deadline."""
        self.round_timers.cancel_all()
        self.advance_timers.cancel_all()
        self.expiry_timers.cancel_all()
