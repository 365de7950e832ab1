"""
Configuration settings for the Live Trivia game server.

This module centralizes all configuration constants and environment variables
to make the application easier to configure and maintain.
"""

import os
from typing import List

# =============================================================================
# Game Settings
# =============================================================================

SESSION_ID_LENGTH: int = 6
"""Length of generated session codes."""

CREATE_SESSION_CODE_ATTEMPTS: int = 12
"""How many fresh codes to try before giving up on session creation."""

MIN_PLAYERS: int = 3
"""Minimum number of players needed to start a round."""

MAX_NAME_LENGTH: int = 20
"""Maximum length of a player display name (after trimming)."""

MAX_QUESTION_LENGTH: int = 200
"""Maximum length of a question (after trimming)."""

MAX_ANSWER_LENGTH: int = 50
"""Maximum length of an answer or a guess (after trimming)."""

CORRECT_GUESS_POINTS: int = 10
"""Points awarded to the first player who guesses the answer."""

DEFAULT_MAX_ROUNDS: int = int(os.environ.get('MAX_ROUNDS', '5'))
"""Number of rounds in a game unless the creator asks for another value."""

MAX_ROUNDS_LIMIT: int = 20
"""Upper bound on the per-game round count a creator can request."""

# =============================================================================
# Timing Settings
# =============================================================================

ROUND_DURATION_SECONDS: int = int(os.environ.get('ROUND_DURATION_SECONDS', '60'))
"""Time limit for guessing in each round, in seconds."""

ROUND_RESULT_DELAY_SECONDS: int = int(os.environ.get('ROUND_RESULT_DELAY_SECONDS', '3'))
"""Pause between a round ending and the next round (0 = no automatic advance)."""

GAME_OVER_GRACE_SECONDS: int = int(os.environ.get('GAME_OVER_GRACE_SECONDS', '300'))
"""How long a finished game stays readable before it is deleted."""

SESSION_TTL_SECONDS: int = int(os.environ.get('SESSION_TTL_SECONDS', '3600'))
"""Store expiry for waiting and active sessions, refreshed on every save."""

STORE_RETRY_SECONDS: float = float(os.environ.get('STORE_RETRY_SECONDS', '1'))
"""Delay before a deadline retries after the session store was unreachable."""

# =============================================================================
# Server Settings
# =============================================================================

DEBUG: bool = os.environ.get('DEBUG', 'false').lower() == 'true'
"""Enable debug mode. Set DEBUG=true in environment for development."""

HOST: str = os.environ.get('HOST', '0.0.0.0')
"""Host address to bind the server."""

PORT: int = int(os.environ.get('PORT', '3000'))
"""Port number for the server."""

SECRET_KEY: str = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
"""Flask secret key for session management."""

VERSION: str = '1.0.0'
"""Version reported by the health endpoint."""

# =============================================================================
# Session Store Settings
# =============================================================================

SESSION_STORE: str = os.environ.get('SESSION_STORE', 'memory').lower()
"""Session store backend: 'memory' (in-process), 'sqlite' or 'redis'."""

DATABASE_PATH: str = os.environ.get('DB_PATH', 'sessions.db')
"""Path to the SQLite database file used by the 'sqlite' store."""

REDIS_URL: str = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
"""Connection URL for the 'redis' store."""

REDIS_KEY_PREFIX: str = os.environ.get('REDIS_KEY_PREFIX', 'trivia:session:')
"""Prefix of the keys holding session snapshots in Redis."""

# =============================================================================
# Admin Settings
# =============================================================================

ADMIN_KEY: str = os.environ.get('ADMIN_KEY', 'changeme')
"""Admin endpoint access key. Change this in production!"""

ADMIN_RATE_LIMIT: int = int(os.environ.get('ADMIN_RATE_LIMIT', '5'))
"""Maximum failed admin authentication attempts per minute."""

# =============================================================================
# CORS Settings
# =============================================================================

def get_cors_origins() -> List[str]:
    """
    Get allowed CORS origins from environment.

    Returns:
        List of allowed origin URLs, or ['*'] if not configured.
    """
    origins = os.environ.get('CORS_ORIGINS', '')
    if not origins:
        # Default to restrictive in production, permissive in debug
        if DEBUG:
            return ['*']
        return ['http://localhost:3000', 'http://127.0.0.1:3000']
    return [o.strip() for o in origins.split(',') if o.strip()]

CORS_ORIGINS: List[str] = get_cors_origins()
"""List of allowed CORS origins for Socket.IO connections."""

# =============================================================================
# Logging Settings
# =============================================================================

LOG_LEVEL: str = os.environ.get('LOG_LEVEL', 'DEBUG' if DEBUG else 'INFO')
"""Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."""

LOG_FORMAT: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
"""Format string for log messages."""
