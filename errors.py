"""
Recoverable game errors.

Every error carries a stable ``code`` for clients and a human readable
message. None of them is fatal: the socket layer reports them to the
requesting connection only and the session is left untouched.
"""

from typing import Dict


class GameError(Exception):
    """Base class for errors reported back to a single connection."""

    code: str = 'game_error'
    default_message: str = 'Request could not be completed.'

    def __init__(self, message: str = '') -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, str]:
        return {'code': self.code, 'message': self.message}


class SessionNotFound(GameError):
    code = 'not_found'
    default_message = 'Session not found.'


class StoreUnavailable(SessionNotFound):
    """The session store could not be reached; surfaced as a transient not-found."""

    default_message = 'Session is temporarily unavailable. Please try again.'


class AlreadyExists(GameError):
    code = 'already_exists'
    default_message = 'Session already exists.'


class NotJoinable(GameError):
    code = 'not_joinable'
    default_message = 'Session already started.'


class NotGameMaster(GameError):
    code = 'not_game_master'
    default_message = 'Only the game master can do that.'


class InsufficientPlayers(GameError):
    code = 'insufficient_players'
    default_message = 'Need at least 3 players to start.'


class NoQuestionSet(GameError):
    code = 'no_question'
    default_message = 'Submit a question before starting the round.'


class TimeExpired(GameError):
    code = 'time_expired'
    default_message = 'Time is up!'


class ValidationFailed(GameError):
    code = 'validation_failed'
    default_message = 'Invalid request.'


class RoundInProgress(GameError):
    code = 'round_in_progress'
    default_message = 'The current round has not ended yet.'
