"""
Session and player data model.

Sessions travel between the store and the state machine as plain dict
snapshots, so a ``Session`` instance is always a private copy owned by the
operation that loaded it.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Status(str, Enum):
    WAITING = 'waiting'
    ACTIVE = 'active'
    ENDED = 'ended'


def normalize(text: Optional[str]) -> str:
    """Trim and lower-case text before comparing answers and guesses."""
    return (text or '').strip().lower()


@dataclass
class Player:
    id: str
    name: str
    score: int = 0


@dataclass
class Session:
    id: str
    game_master: str
    players: List[Player] = field(default_factory=list)
    status: Status = Status.WAITING
    question: Optional[str] = None
    answer: Optional[str] = None
    current_round: int = 1
    max_rounds: int = 5
    start_time: Optional[float] = None
    winner: Optional[str] = None
    end_reason: Optional[str] = None
    game_over: bool = False
    created_at: Optional[float] = None
    # index the game master held when they left outside the waiting phase
    vacated_master_index: Optional[int] = None

    def find_player(self, player_id: str) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def has_player(self, player_id: str) -> bool:
        return self.find_player(player_id) is not None

    def player_index(self, player_id: str) -> int:
        """Return the join-order index of a player, or -1 if absent."""
        for idx, player in enumerate(self.players):
            if player.id == player_id:
                return idx
        return -1

    @property
    def is_empty(self) -> bool:
        return not self.players

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        values = dict(data)
        values['players'] = [Player(**p) for p in data.get('players', [])]
        values['status'] = Status(data.get('status', Status.WAITING.value))
        return cls(**values)


def player_list(session: Session) -> List[Dict[str, Any]]:
    """Serialize the roster for broadcasts."""
    return [
        {
            'id': p.id,
            'name': p.name,
            'score': p.score,
            'is_game_master': p.id == session.game_master,
        }
        for p in session.players
    ]


def public_state(session: Session) -> Dict[str, Any]:
    """Describe what every member of the session may see.

    The answer is only revealed once the round has ended.
    """
    return {
        'session_id': session.id,
        'status': session.status.value,
        'players': player_list(session),
        'game_master': session.game_master,
        'round': session.current_round,
        'max_rounds': session.max_rounds,
        'question': session.question if session.status != Status.WAITING else None,
        'question_ready': session.question is not None,
        'answer': session.answer if session.status == Status.ENDED else None,
        'start_time': session.start_time,
        'winner': session.winner,
        'game_over': session.game_over,
    }
