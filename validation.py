"""
Structural checks for inbound socket payloads.

These only look at shape (presence, type, trimmed length). Authorization and
status preconditions are enforced by the state machine.
"""

from typing import Any, Dict, Optional

from config import (
    MAX_ANSWER_LENGTH,
    MAX_NAME_LENGTH,
    MAX_QUESTION_LENGTH,
    MAX_ROUNDS_LIMIT,
    SESSION_ID_LENGTH,
)
from errors import ValidationFailed


def require_text(data: Any, field: str, max_length: int, min_length: int = 1) -> str:
    """Return the trimmed string ``data[field]`` or raise ValidationFailed."""
    if not isinstance(data, dict):
        raise ValidationFailed('Payload must be an object.')
    value = data.get(field)
    if value is None:
        raise ValidationFailed(f'"{field}" is required')
    if not isinstance(value, str):
        raise ValidationFailed(f'"{field}" must be a string')
    value = value.strip()
    if len(value) < min_length:
        raise ValidationFailed(f'"{field}" is not allowed to be empty')
    if len(value) > max_length:
        raise ValidationFailed(
            f'"{field}" length must be less than or equal to {max_length} characters long'
        )
    return value


def validate_session_id(data: Any) -> str:
    session_id = require_text(data, 'session_id', SESSION_ID_LENGTH).upper()
    if len(session_id) != SESSION_ID_LENGTH or not session_id.isalnum():
        raise ValidationFailed(f'"session_id" length must be {SESSION_ID_LENGTH} characters long')
    return session_id


def validate_create_game(data: Any) -> Dict[str, Any]:
    value: Dict[str, Any] = {
        'player_name': require_text(data, 'player_name', MAX_NAME_LENGTH),
        'max_rounds': None,
    }
    raw_rounds: Optional[Any] = data.get('max_rounds')
    if raw_rounds is not None:
        if isinstance(raw_rounds, bool) or not isinstance(raw_rounds, int):
            raise ValidationFailed('"max_rounds" must be an integer')
        if not 1 <= raw_rounds <= MAX_ROUNDS_LIMIT:
            raise ValidationFailed(f'"max_rounds" must be between 1 and {MAX_ROUNDS_LIMIT}')
        value['max_rounds'] = raw_rounds
    return value


def validate_join_game(data: Any) -> Dict[str, str]:
    return {
        'session_id': validate_session_id(data),
        'player_name': require_text(data, 'player_name', MAX_NAME_LENGTH),
    }


def validate_submit_question(data: Any) -> Dict[str, str]:
    return {
        'session_id': validate_session_id(data),
        'question': require_text(data, 'question', MAX_QUESTION_LENGTH),
        'answer': require_text(data, 'answer', MAX_ANSWER_LENGTH),
    }


def validate_submit_guess(data: Any) -> Dict[str, str]:
    return {
        'session_id': validate_session_id(data),
        'guess': require_text(data, 'guess', MAX_ANSWER_LENGTH),
    }
