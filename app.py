"""
Live Trivia Game Server

A real-time multiplayer trivia game: each round one player acts as game
master and submits a question, and everyone else races to guess the answer
before the clock runs out. Built with Flask and Socket.IO for WebSocket
support.
"""

import logging
import threading
import time
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import Flask, jsonify, request
from flask_socketio import SocketIO, emit, join_room, leave_room

import machine
from config import (
    ADMIN_KEY,
    ADMIN_RATE_LIMIT,
    CORS_ORIGINS,
    DEBUG,
    HOST,
    LOG_FORMAT,
    LOG_LEVEL,
    PORT,
    ROUND_DURATION_SECONDS,
    SECRET_KEY,
    SESSION_STORE,
    VERSION,
)
from errors import GameError, SessionNotFound, StoreUnavailable
from manager import GameManager
from models import player_list, public_state
from store import SessionStore, build_store
from validation import (
    validate_create_game,
    validate_join_game,
    validate_session_id,
    validate_submit_guess,
    validate_submit_question,
)

# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(level=getattr(logging, LOG_LEVEL), format=LOG_FORMAT)
logger = logging.getLogger(__name__)

# =============================================================================
# Flask Application Setup
# =============================================================================

app = Flask(__name__)
app.config['SECRET_KEY'] = SECRET_KEY

socketio = SocketIO(
    app,
    cors_allowed_origins=CORS_ORIGINS,
    logger=DEBUG,
    engineio_logger=DEBUG,
    async_mode='threading'
)

# =============================================================================
# Game Runtime
# =============================================================================


def broadcast(event: str, payload: Dict[str, Any], session_id: str) -> None:
    """Fan a state change out to every connection in the session room."""
    socketio.emit(event, payload, room=session_id)


manager = GameManager(build_store(SESSION_STORE), notify=broadcast)

# connection sid -> session id it belongs to
connections: Dict[str, str] = {}
connections_lock = threading.Lock()

admin_failures: Dict[str, List[float]] = {}
admin_lock = threading.Lock()


def reset_runtime(store: Optional[SessionStore] = None) -> GameManager:
    """Drop all sessions, timers and connection bookkeeping."""
    global manager
    manager.shutdown()
    manager = GameManager(store or build_store(SESSION_STORE), notify=broadcast)
    with connections_lock:
        connections.clear()
    with admin_lock:
        admin_failures.clear()
    return manager


def session_of(sid: str) -> Optional[str]:
    """Session the connection currently belongs to."""
    with connections_lock:
        return connections.get(sid)


def bind_connection(sid: str, session_id: str) -> Optional[str]:
    """Record the session a connection belongs to, returning the previous one."""
    with connections_lock:
        previous = connections.get(sid)
        connections[sid] = session_id
    return previous if previous != session_id else None


def release_connection(sid: str) -> Optional[str]:
    """Forget a connection, returning the session it was in."""
    with connections_lock:
        return connections.pop(sid, None)


def report_error(e: GameError) -> None:
    """Tell the requesting connection why its request was refused."""
    logger.warning(f"Request from {request.sid} refused: {e.code} - {e.message}")
    emit('error', e.to_payload())


def leave_previous_session(sid: str, session_id: Optional[str]) -> None:
    """Take the connection out of the session it is leaving behind."""
    if session_id:
        leave_room(session_id)
        manager.remove_player(session_id, sid)

# =============================================================================
# HTTP Routes
# =============================================================================


@app.route('/health')
def health() -> Tuple[Dict[str, Any], int]:
    """Health check endpoint for monitoring."""
    try:
        manager.store.ping()
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'store': SESSION_STORE,
            'version': VERSION
        }), 200
    except StoreUnavailable as e:
        logger.error(f"Health check failed: {e}")
        return jsonify({
            'status': 'unhealthy',
            'timestamp': datetime.utcnow().isoformat(),
            'error': str(e)
        }), 503


def admin_required(view: Callable[..., Any]) -> Callable[..., Any]:
    """Check the admin key, rate limiting repeated failures per address."""
    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        addr = request.remote_addr or 'unknown'
        now = time.time()
        with admin_lock:
            recent = [t for t in admin_failures.get(addr, []) if now - t < 60]
            admin_failures[addr] = recent
            if len(recent) >= ADMIN_RATE_LIMIT:
                logger.warning(f"Admin rate limit hit for {addr}")
                return jsonify({'error': 'Too many attempts. Try again later.'}), 429

            key = request.headers.get('X-Admin-Key') or request.args.get('key')
            if not key:
                return jsonify({'error': 'Admin key required.'}), 401
            if key != ADMIN_KEY:
                recent.append(now)
                logger.warning(f"Invalid admin key from {addr}")
                return jsonify({'error': 'Invalid admin key.'}), 403
        return view(*args, **kwargs)
    return wrapper


@app.route('/admin/sessions')
@admin_required
def admin_sessions() -> Tuple[Dict[str, Any], int]:
    """List live sessions."""
    try:
        return jsonify({'sessions': manager.list_sessions()}), 200
    except StoreUnavailable as e:
        return jsonify({'error': e.message}), 503


@app.route('/admin/sweep', methods=['POST'])
@admin_required
def admin_sweep() -> Tuple[Dict[str, Any], int]:
    """Delete sessions that no longer have any players."""
    try:
        removed = manager.sweep_empty_sessions()
    except StoreUnavailable as e:
        return jsonify({'error': e.message}), 503
    logger.info(f"Admin sweep removed {len(removed)} empty session(s)")
    return jsonify({'removed': removed}), 200


@app.route('/admin/kill/<session_id>', methods=['POST'])
@admin_required
def admin_kill(session_id: str) -> Tuple[Dict[str, Any], int]:
    """Close a session immediately."""
    session_id = session_id.upper()
    try:
        if manager.get_session(session_id) is None:
            return jsonify({'error': 'Session not found.'}), 404
        manager.delete_session(session_id, 'closed by admin')
    except StoreUnavailable as e:
        return jsonify({'error': e.message}), 503
    return jsonify({'deleted': session_id}), 200

# =============================================================================
# Socket.IO Event Handlers
# =============================================================================


@socketio.on('connect')
def on_connect() -> None:
    """Handle client connection."""
    logger.info(f"Client connected: {request.sid}")


@socketio.on('disconnect')
def on_disconnect(reason: Any = None) -> None:
    """Remove the departing connection from its session."""
    sid = request.sid
    logger.info(f"Client disconnected: {sid}")
    session_id = release_connection(sid)
    if not session_id:
        return
    try:
        manager.remove_player(session_id, sid)
    except GameError as e:
        logger.warning(f"Could not remove {sid} from {session_id}: {e.message}")
    except Exception as e:
        logger.error(f"Error handling disconnect: {e}")


@socketio.on('create_game')
def on_create_game(data: Dict[str, Any]) -> None:
    """Create a new session with the requester as game master."""
    sid = request.sid
    try:
        value = validate_create_game(data)
        session = manager.create_session(sid, value['player_name'], value['max_rounds'])

        leave_previous_session(sid, bind_connection(sid, session.id))
        join_room(session.id)
        emit('game_created', {
            'session_id': session.id,
            'player_name': session.players[0].name,
            'max_rounds': session.max_rounds,
        })
        emit('players_updated', {'players': player_list(session), 'game_master': session.game_master})
    except GameError as e:
        report_error(e)
    except Exception as e:
        logger.error(f"Error creating game: {e}")
        emit('error', {'code': 'internal', 'message': 'Failed to create game. Please try again.'})


@socketio.on('join_game')
def on_join_game(data: Dict[str, Any]) -> None:
    """Join an existing session that has not started yet."""
    sid = request.sid
    session_id = None
    try:
        value = validate_join_game(data)
        session_id = value['session_id']
        logger.info(f"Join request: session={session_id}, name={value['player_name']}")

        # join the room first so the roster broadcast reaches the newcomer
        join_room(session_id)
        session = manager.join(session_id, sid, value['player_name'])
        leave_previous_session(sid, bind_connection(sid, session_id))
        emit('joined_game', {'session_id': session_id, 'state': public_state(session)})
    except GameError as e:
        if session_id and session_of(sid) != session_id:
            leave_room(session_id)
        report_error(e)
    except Exception as e:
        logger.error(f"Error joining game: {e}")
        emit('error', {'code': 'internal', 'message': 'Failed to join game. Please try again.'})


@socketio.on('leave_game')
def on_leave_game(data: Dict[str, Any]) -> None:
    """Leave the current session without disconnecting."""
    sid = request.sid
    try:
        session_id = validate_session_id(data)
        if session_of(sid) != session_id:
            return
        release_connection(sid)
        leave_room(session_id)
        manager.remove_player(session_id, sid)
        emit('left_game', {'session_id': session_id})
    except GameError as e:
        report_error(e)
    except Exception as e:
        logger.error(f"Error leaving game: {e}")


@socketio.on('submit_question')
def on_submit_question(data: Dict[str, Any]) -> None:
    """Set this round's question and answer (game master only)."""
    try:
        value = validate_submit_question(data)
        manager.set_question(value['session_id'], request.sid, value['question'], value['answer'])
    except GameError as e:
        report_error(e)
    except Exception as e:
        logger.error(f"Error submitting question: {e}")
        emit('error', {'code': 'internal', 'message': 'Failed to submit question. Please try again.'})


@socketio.on('start_game')
def on_start_game(data: Dict[str, Any]) -> None:
    """Start the round once enough players have joined."""
    try:
        session_id = validate_session_id(data)
        manager.start_round(session_id, request.sid)
    except GameError as e:
        report_error(e)
    except Exception as e:
        logger.error(f"Error starting game: {e}")
        emit('error', {'code': 'internal', 'message': 'Failed to start game. Please try again.'})


@socketio.on('submit_guess')
def on_submit_guess(data: Dict[str, Any]) -> None:
    """Submit a guess for the current question."""
    try:
        value = validate_submit_guess(data)
        result = manager.submit_guess(value['session_id'], request.sid, value['guess'])
        if result.outcome == machine.INCORRECT:
            emit('guess_result', {'correct': False, 'guess': value['guess']})
    except GameError as e:
        report_error(e)
    except Exception as e:
        logger.error(f"Error submitting guess: {e}")
        emit('error', {'code': 'internal', 'message': 'Failed to submit guess. Please try again.'})


@socketio.on('typing_start')
def on_typing_start(data: Dict[str, Any]) -> None:
    """Let the other players know someone is typing."""
    try:
        session_id = validate_session_id(data)
    except GameError:
        return
    if session_of(request.sid) == session_id:
        emit('user_typing', {'player_id': request.sid}, room=session_id, include_self=False)


@socketio.on('get_state')
def on_get_state(data: Dict[str, Any]) -> None:
    """Send the current public state of a session to the requester."""
    try:
        session_id = validate_session_id(data)
        if session_of(request.sid) != session_id:
            raise SessionNotFound()
        emit('state', manager.state(session_id))
    except GameError as e:
        report_error(e)

# =============================================================================
# Application Entry Point
# =============================================================================

if __name__ == '__main__':
    logger.info("=" * 50)
    logger.info("Starting Live Trivia Game Server")
    logger.info(f"Debug mode: {DEBUG}")
    logger.info(f"Host: {HOST}, Port: {PORT}")
    logger.info(f"Session store: {SESSION_STORE}")
    logger.info(f"Round duration: {ROUND_DURATION_SECONDS} seconds")
    logger.info("=" * 50)
    socketio.run(app, host=HOST, port=PORT, debug=DEBUG, allow_unsafe_werkzeug=DEBUG)
