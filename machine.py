"""
Session state machine.

Pure transitions over a single ``Session`` snapshot:

    waiting -> active -> ended -> waiting (next round) | game over

Nothing here touches the store, timers or sockets. Callers (the game
manager) run every transition under the per-session guard and persist the
snapshot afterwards. Preconditions raise ``GameError`` subclasses and leave
the session unchanged.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import (
    CORRECT_GUESS_POINTS,
    DEFAULT_MAX_ROUNDS,
    MAX_ANSWER_LENGTH,
    MAX_NAME_LENGTH,
    MAX_QUESTION_LENGTH,
    MIN_PLAYERS,
    ROUND_DURATION_SECONDS,
)
from errors import (
    InsufficientPlayers,
    NoQuestionSet,
    NotGameMaster,
    NotJoinable,
    RoundInProgress,
    SessionNotFound,
    TimeExpired,
    ValidationFailed,
)
from models import Player, Session, Status, normalize

# Guess outcomes
CORRECT = 'correct'
INCORRECT = 'incorrect'
IGNORED = 'ignored'

# Advance outcomes
CONTINUE = 'continue'
GAME_OVER = 'game_over'

# Round end reasons
REASON_CORRECT = 'correct'
REASON_TIMEOUT = 'timeout'


@dataclass
class GuessResult:
    outcome: str
    player_id: str
    score: int = 0

    @property
    def correct(self) -> bool:
        return self.outcome == CORRECT


@dataclass
class AdvanceResult:
    outcome: str
    round: int
    game_master: Optional[str] = None
    standings: List[Dict[str, Any]] = field(default_factory=list)
    winners: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class RemoveResult:
    removed: bool
    promoted: Optional[str] = None
    player_name: Optional[str] = None

    @property
    def master_changed(self) -> bool:
        return self.promoted is not None


def require(session: Optional[Session], session_id: str) -> Session:
    """Return the loaded session or raise SessionNotFound."""
    if session is None:
        raise SessionNotFound(f'Session {session_id} not found.')
    return session


def _clean_name(name: Optional[str]) -> str:
    cleaned = (name or '').strip()
    if not cleaned:
        raise ValidationFailed('Player name must not be empty.')
    return cleaned[:MAX_NAME_LENGTH]


def create_session(session_id: str, creator_id: str, creator_name: str,
                   max_rounds: Optional[int] = None, now: Optional[float] = None) -> Session:
    """Build a new waiting session with the creator as sole player and game master."""
    name = _clean_name(creator_name)
    return Session(
        id=session_id,
        game_master=creator_id,
        players=[Player(id=creator_id, name=name)],
        status=Status.WAITING,
        current_round=1,
        max_rounds=max_rounds or DEFAULT_MAX_ROUNDS,
        created_at=now,
    )


def add_player(session: Session, player_id: str, name: str) -> bool:
    """Append a player to a waiting session.

    Returns False when the player was already present (a repeated join is
    not an error).
    """
    if session.status != Status.WAITING:
        raise NotJoinable('Session not found or already started.')
    cleaned = _clean_name(name)
    if session.has_player(player_id):
        return False
    session.players.append(Player(id=player_id, name=cleaned))
    return True


def set_question(session: Session, requester_id: str, question: str, answer: str) -> None:
    """Record the question and the normalized answer for the coming round."""
    if requester_id != session.game_master:
        raise NotGameMaster('Only the game master can submit the question.')
    if session.status != Status.WAITING:
        raise NotJoinable('The question can only be changed between rounds.')
    question = (question or '').strip()
    answer = (answer or '').strip()
    if not 1 <= len(question) <= MAX_QUESTION_LENGTH:
        raise ValidationFailed(f'Question must be 1-{MAX_QUESTION_LENGTH} characters.')
    if not 1 <= len(answer) <= MAX_ANSWER_LENGTH:
        raise ValidationFailed(f'Answer must be 1-{MAX_ANSWER_LENGTH} characters.')
    session.question = question
    session.answer = normalize(answer)


def start_round(session: Session, requester_id: str, now: float) -> None:
    """Open the round at ``now``. Only the game master may, with a question set."""
    if requester_id != session.game_master:
        raise NotGameMaster('Only the game master can start the round.')
    if session.status != Status.WAITING:
        raise NotJoinable('The round has already started.')
    if len(session.players) < MIN_PLAYERS:
        raise InsufficientPlayers(f'Need at least {MIN_PLAYERS} players to start.')
    if not session.question or not session.answer:
        raise NoQuestionSet()
    session.status = Status.ACTIVE
    session.start_time = now
    session.winner = None
    session.end_reason = None


def submit_guess(session: Session, player_id: str, guess: str, now: float,
                 duration: float = ROUND_DURATION_SECONDS) -> GuessResult:
    """Check a guess against the current answer.

    Guesses outside an active round or from non-members are ignored so a
    late message can never reopen a finished round. A guess past the
    deadline raises TimeExpired; ending the round is left to the timeout.
    """
    player = session.find_player(player_id)
    if session.status != Status.ACTIVE or player is None:
        return GuessResult(outcome=IGNORED, player_id=player_id)

    if session.start_time is not None and now - session.start_time > duration:
        raise TimeExpired()

    if normalize(guess) != session.answer:
        return GuessResult(outcome=INCORRECT, player_id=player_id, score=player.score)

    # score and status change land in the same snapshot
    player.score += CORRECT_GUESS_POINTS
    session.status = Status.ENDED
    session.winner = player_id
    session.end_reason = REASON_CORRECT
    return GuessResult(outcome=CORRECT, player_id=player_id, score=player.score)


def handle_timeout(session: Session, round_start: Optional[float] = None) -> bool:
    """End an active round with no winner.

    Returns False (and changes nothing) when the round already ended or when
    the deadline belongs to an earlier round.
    """
    if session.status != Status.ACTIVE:
        return False
    if round_start is not None and session.start_time != round_start:
        return False
    session.status = Status.ENDED
    session.winner = None
    session.end_reason = REASON_TIMEOUT
    return True


def standings(session: Session) -> List[Dict[str, Any]]:
    """Players ordered by score, highest first (join order breaks ties)."""
    ranked = sorted(
        enumerate(session.players),
        key=lambda item: (-item[1].score, item[0]),
    )
    return [{'id': p.id, 'name': p.name, 'score': p.score} for _, p in ranked]


def winners(session: Session) -> List[Dict[str, Any]]:
    """Every player sharing the highest score."""
    if not session.players:
        return []
    top = max(p.score for p in session.players)
    return [{'id': p.id, 'name': p.name, 'score': p.score}
            for p in session.players if p.score == top]


def _next_game_master(session: Session) -> str:
    count = len(session.players)
    idx = session.player_index(session.game_master)
    if idx >= 0:
        return session.players[(idx + 1) % count].id
    if session.vacated_master_index is not None:
        # the departed master's successor slid into their slot
        return session.players[session.vacated_master_index % count].id
    return session.players[0].id


def advance_round(session: Session) -> AdvanceResult:
    if session.game_over:
        return AdvanceResult(outcome=GAME_OVER, round=session.current_round,
                             standings=standings(session), winners=winners(session))
    if session.status != Status.ENDED:
        raise RoundInProgress()

    session.current_round += 1
    if session.current_round > session.max_rounds:
        session.game_over = True
        return AdvanceResult(outcome=GAME_OVER, round=session.current_round,
                             standings=standings(session), winners=winners(session))

    if session.players:
        session.game_master = _next_game_master(session)
    session.vacated_master_index = None
    session.question = None
    session.answer = None
    session.winner = None
    session.start_time = None
    session.end_reason = None
    session.status = Status.WAITING
    return AdvanceResult(outcome=CONTINUE, round=session.current_round,
                         game_master=session.game_master)


def remove_player(session: Session, player_id: str) -> RemoveResult:
    """Drop a player from the roster.

    A game master leaving a waiting session hands the role to the first
    remaining player. Outside the waiting phase the round carries on and the
    rotation picks up from the departed master's seat at the next advance.
    """
    idx = session.player_index(player_id)
    if idx < 0:
        return RemoveResult(removed=False)
    player = session.players.pop(idx)
    result = RemoveResult(removed=True, player_name=player.name)

    if player_id == session.game_master and session.players:
        if session.status == Status.WAITING:
            session.game_master = session.players[0].id
            result.promoted = session.game_master
        else:
            session.vacated_master_index = idx
    elif session.vacated_master_index is not None and idx < session.vacated_master_index:
        session.vacated_master_index -= 1
    return result
