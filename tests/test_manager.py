"""
Tests for the game manager: guarded mutations, deadlines and broadcasts.
"""

import threading

import pytest

import machine
from errors import (
    AlreadyExists,
    InsufficientPlayers,
    NotGameMaster,
    NotJoinable,
    SessionNotFound,
    StoreUnavailable,
    TimeExpired,
)
from manager import GameManager, gen_session_code
from models import Status
from store import MemorySessionStore


class TestSessionCodes:
    """Tests for session code generation."""

    def test_default_length(self):
        assert len(gen_session_code()) == 6

    def test_uppercase_alphanumeric(self):
        code = gen_session_code()
        assert code.isalnum()
        assert code == code.upper()

    def test_retries_on_collision(self, store, events):
        codes = iter(['TAKEN1', 'TAKEN1', 'FRESH1'])
        mgr = GameManager(store, notify=events.record, code_factory=lambda: next(codes))
        mgr.create_session('alice', 'Alice')
        session = mgr.create_session('bob', 'Bob')
        assert session.id == 'FRESH1'

    def test_gives_up_after_repeated_collisions(self, store):
        mgr = GameManager(store, code_factory=lambda: 'SAME01')
        mgr.create_session('alice', 'Alice')
        with pytest.raises(AlreadyExists):
            mgr.create_session('bob', 'Bob')


class TestLobby:
    """Tests for creating and joining sessions."""

    def test_create_with_existing_id_fails(self, manager, lobby):
        with pytest.raises(AlreadyExists):
            manager.create_session_with_id(lobby, 'dave', 'Dave')
        assert manager.get_session(lobby).game_master == 'alice'

    def test_join_unknown_session(self, manager):
        with pytest.raises(SessionNotFound):
            manager.join('NOPE00', 'bob', 'Bob')

    def test_join_broadcasts_roster(self, manager, lobby, events):
        events.clear()
        manager.join(lobby, 'dave', 'Dave')
        updates = events.named('players_updated')
        assert len(updates) == 1
        assert [p['name'] for p in updates[0]['players']] == ['Alice', 'Bob', 'Carol', 'Dave']
        assert events.named('system')[0]['message'] == 'Dave joined.'

    def test_repeated_join_does_not_broadcast(self, manager, lobby, events):
        events.clear()
        manager.join(lobby, 'bob', 'Bob')
        assert events.events == []
        assert len(manager.get_session(lobby).players) == 3

    def test_many_distinct_joins(self, manager):
        manager.create_session_with_id('BIG001', 'host', 'Host')
        for i in range(15):
            manager.join('BIG001', f'p{i}', f'Player {i}')
        session = manager.get_session('BIG001')
        assert len(session.players) == 16
        assert all(p.score == 0 for p in session.players)

    def test_errors_leave_session_unchanged(self, manager, lobby):
        before = manager.get_session(lobby).to_dict()
        with pytest.raises(NotGameMaster):
            manager.set_question(lobby, 'bob', 'Q?', 'A')
        assert manager.get_session(lobby).to_dict() == before


class TestRoundFlow:
    """Tests for starting, guessing and timing out."""

    def test_start_requires_three_players(self, manager, scheduler):
        manager.create_session_with_id('SMALL1', 'alice', 'Alice')
        manager.join('SMALL1', 'bob', 'Bob')
        manager.set_question('SMALL1', 'alice', 'Q?', 'A')
        with pytest.raises(InsufficientPlayers):
            manager.start_round('SMALL1', 'alice')
        assert manager.get_session('SMALL1').status == Status.WAITING
        assert not manager.round_timers.is_armed('SMALL1')
        assert scheduler.pending() == []

    def test_start_arms_round_timer(self, manager, active_round, scheduler, events):
        assert manager.get_session(active_round).status == Status.ACTIVE
        assert manager.round_timers.is_armed(active_round)
        [timer] = scheduler.pending()
        assert timer.interval == 60
        started = events.named('game_started')[0]
        assert started['question'] == 'Capital of France?'
        assert started['deadline'] == started['start_time'] + 60

    def test_winning_guess_ends_round_and_disarms_timer(self, manager, active_round, clock, events):
        clock.advance(10)
        result = manager.submit_guess(active_round, 'bob', 'paris')
        assert result.correct
        session = manager.get_session(active_round)
        assert session.status == Status.ENDED
        assert session.winner == 'bob'
        assert session.find_player('bob').score == 10
        assert not manager.round_timers.is_armed(active_round)
        ended = events.named('round_ended')[0]
        assert ended['reason'] == 'correct'
        assert ended['winner']['name'] == 'Bob'
        assert ended['answer'] == 'paris'

    def test_wrong_guess_is_not_broadcast(self, manager, active_round, events):
        events.clear()
        result = manager.submit_guess(active_round, 'bob', 'London')
        assert result.outcome == machine.INCORRECT
        assert events.events == []

    def test_late_guess_raises_time_expired(self, manager, active_round, clock):
        clock.advance(61)
        with pytest.raises(TimeExpired):
            manager.submit_guess(active_round, 'bob', 'paris')
        session = manager.get_session(active_round)
        assert session.status == Status.ACTIVE
        assert manager.round_timers.is_armed(active_round)

    def test_deadline_ends_round_with_no_winner(self, manager, active_round, scheduler, events):
        scheduler.fire_pending()
        session = manager.get_session(active_round)
        assert session.status == Status.ENDED
        assert session.winner is None
        assert events.named('round_ended')[0]['reason'] == 'timeout'
        assert not manager.round_timers.is_armed(active_round)
        assert manager.advance_timers.is_armed(active_round)

    def test_timeout_after_win_is_noop(self, manager, active_round, scheduler, events):
        [round_timer] = scheduler.pending()
        manager.submit_guess(active_round, 'bob', 'paris')
        after_win = manager.get_session(active_round).to_dict()
        events.clear()

        # the timer lost the cancel race and fires anyway
        round_timer.function()

        assert manager.get_session(active_round).to_dict() == after_win
        assert events.named('round_ended') == []

    def test_guess_after_timeout_is_ignored(self, manager, active_round, scheduler):
        scheduler.fire_pending()
        result = manager.submit_guess(active_round, 'bob', 'paris')
        assert result.outcome == machine.IGNORED
        assert manager.get_session(active_round).winner is None


class TestAdvance:
    """Tests for the automatic and explicit round advance."""

    def test_example_game(self, manager, clock, scheduler, events):
        manager.create_session_with_id('PARIS1', 'alice', 'Alice')
        assert manager.get_session('PARIS1').status == Status.WAITING
        manager.join('PARIS1', 'bob', 'Bob')
        manager.join('PARIS1', 'carol', 'Carol')
        manager.set_question('PARIS1', 'alice', 'Capital of France?', 'Paris')
        manager.start_round('PARIS1', 'alice')
        assert manager.round_timers.is_armed('PARIS1')

        clock.advance(10)
        manager.submit_guess('PARIS1', 'bob', 'paris')
        session = manager.get_session('PARIS1')
        assert session.status == Status.ENDED
        assert session.find_player('bob').score == 10
        assert session.winner == 'bob'

        # the result pause elapses
        [advance_timer] = scheduler.pending()
        assert advance_timer.interval == 3
        advance_timer.fire()

        session = manager.get_session('PARIS1')
        assert session.current_round == 2
        assert session.status == Status.WAITING
        assert session.game_master == 'bob'
        assert events.named('next_round')[0]['game_master'] == 'bob'

    def test_manual_advance_cancels_pending_pause(self, manager, active_round):
        manager.submit_guess(active_round, 'bob', 'paris')
        assert manager.advance_timers.is_armed(active_round)
        result = manager.advance_round(active_round)
        assert result.outcome == machine.CONTINUE
        assert not manager.advance_timers.is_armed(active_round)

    def test_no_automatic_advance_when_disabled(self, store, clock, scheduler):
        mgr = GameManager(store, clock=clock, timer_factory=scheduler.factory, result_delay=0)
        mgr.create_session_with_id('MANUAL', 'alice', 'Alice')
        mgr.join('MANUAL', 'bob', 'Bob')
        mgr.join('MANUAL', 'carol', 'Carol')
        mgr.set_question('MANUAL', 'alice', 'Q?', 'A')
        mgr.start_round('MANUAL', 'alice')
        mgr.submit_guess('MANUAL', 'bob', 'a')
        assert not mgr.advance_timers.is_armed('MANUAL')

    def test_game_over_schedules_expiry(self, manager, events, scheduler):
        manager.create_session_with_id('SHORT1', 'alice', 'Alice', max_rounds=1)
        manager.join('SHORT1', 'bob', 'Bob')
        manager.join('SHORT1', 'carol', 'Carol')
        manager.set_question('SHORT1', 'alice', 'Q?', 'A')
        manager.start_round('SHORT1', 'alice')
        manager.submit_guess('SHORT1', 'carol', 'a')
        result = manager.advance_round('SHORT1')

        assert result.outcome == machine.GAME_OVER
        assert [w['name'] for w in result.winners] == ['Carol']
        over = events.named('game_over')[0]
        assert [s['name'] for s in over['standings']][0] == 'Carol'
        assert manager.expiry_timers.is_armed('SHORT1')

        [expiry] = scheduler.pending()
        assert expiry.interval == 300
        expiry.fire()
        assert manager.get_session('SHORT1') is None
        assert events.named('session_closed')[0]['reason'] == 'expired'

    def test_finished_session_expires_from_store(self, manager, store, clock):
        manager.create_session_with_id('SHORT2', 'alice', 'Alice', max_rounds=1)
        manager.join('SHORT2', 'bob', 'Bob')
        manager.join('SHORT2', 'carol', 'Carol')
        manager.set_question('SHORT2', 'alice', 'Q?', 'A')
        manager.start_round('SHORT2', 'alice')
        manager.handle_timeout('SHORT2')
        manager.advance_round('SHORT2')
        clock.advance(301)
        assert store.load('SHORT2') is None


class TestRemovePlayer:
    """Tests for disconnect handling."""

    def test_game_master_leaving_lobby_promotes_next(self, manager, lobby, events):
        events.clear()
        result = manager.remove_player(lobby, 'alice')
        assert result.promoted == 'bob'
        assert manager.get_session(lobby).game_master == 'bob'
        assert events.named('players_updated')[0]['game_master'] == 'bob'
        messages = [e['message'] for e in events.named('system')]
        assert 'Bob is now the game master.' in messages

    def test_last_player_leaving_deletes_session(self, manager):
        manager.create_session_with_id('LONE01', 'alice', 'Alice')
        manager.remove_player('LONE01', 'alice')
        assert manager.get_session('LONE01') is None

    def test_everyone_leaving_mid_round_disarms_timer(self, manager, active_round):
        for pid in ('alice', 'bob', 'carol'):
            manager.remove_player(active_round, pid)
        assert manager.get_session(active_round) is None
        assert not manager.round_timers.is_armed(active_round)

    def test_remove_from_missing_session(self, manager):
        assert manager.remove_player('NOPE00', 'bob').removed is False

    def test_join_closed_after_start(self, manager, active_round):
        with pytest.raises(NotJoinable):
            manager.join(active_round, 'dave', 'Dave')


class TestDeleteAndSweep:
    """Tests for explicit deletion and the empty-session sweep."""

    def test_delete_disarms_timers(self, manager, active_round, events):
        manager.delete_session(active_round)
        assert manager.get_session(active_round) is None
        assert not manager.round_timers.is_armed(active_round)
        assert events.named('session_closed')[0]['session_id'] == active_round

    def test_sweep_removes_only_empty_sessions(self, manager, store, lobby):
        ghost = manager.create_session_with_id('GHOST1', 'x', 'X')
        ghost.players.clear()
        store.save(ghost, 60)
        assert manager.sweep_empty_sessions() == ['GHOST1']
        assert manager.get_session(lobby) is not None

    def test_list_sessions(self, manager, lobby):
        [summary] = manager.list_sessions()
        assert summary['session_id'] == lobby
        assert summary['players'] == 3
        assert summary['status'] == 'waiting'


class TestConcurrency:
    """Races against the same session must serialize."""

    def _racing_guesses(self, manager, session_id, player_ids, guess):
        barrier = threading.Barrier(len(player_ids))
        results = {}

        def worker(pid):
            barrier.wait()
            results[pid] = manager.submit_guess(session_id, pid, guess)

        threads = [threading.Thread(target=worker, args=(pid,)) for pid in player_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        return results

    def test_two_correct_guesses_one_winner(self, manager, active_round):
        results = self._racing_guesses(manager, active_round, ['bob', 'carol'], 'paris')
        winners = [pid for pid, r in results.items() if r.correct]
        assert len(winners) == 1
        session = manager.get_session(active_round)
        assert session.winner == winners[0]
        assert sum(p.score for p in session.players) == 10

    def test_many_racing_guessers(self, manager):
        manager.create_session_with_id('RACE01', 'host', 'Host')
        players = [f'p{i}' for i in range(12)]
        for pid in players:
            manager.join('RACE01', pid, pid)
        manager.set_question('RACE01', 'host', 'Q?', 'Answer')
        manager.start_round('RACE01', 'host')

        results = self._racing_guesses(manager, 'RACE01', players, ' ANSWER ')
        assert sum(1 for r in results.values() if r.correct) == 1
        assert sum(p.score for p in manager.get_session('RACE01').players) == 10

    def test_concurrent_joins_are_not_lost(self, manager):
        manager.create_session_with_id('JOIN01', 'host', 'Host')
        players = [f'p{i}' for i in range(20)]
        barrier = threading.Barrier(len(players))

        def worker(pid):
            barrier.wait()
            manager.join('JOIN01', pid, pid)

        threads = [threading.Thread(target=worker, args=(pid,)) for pid in players]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert len(manager.get_session('JOIN01').players) == 21


class TestFactoryDefaults:
    """The manager works with its real collaborators."""

    def test_real_timer_fires_timeout(self):
        store = MemorySessionStore()
        done = threading.Event()

        def notify(event, payload, session_id):
            if event == 'round_ended':
                done.set()

        mgr = GameManager(store, notify=notify, round_duration=0.05, result_delay=0)
        try:
            mgr.create_session_with_id('REAL01', 'alice', 'Alice')
            mgr.join('REAL01', 'bob', 'Bob')
            mgr.join('REAL01', 'carol', 'Carol')
            mgr.set_question('REAL01', 'alice', 'Q?', 'A')
            mgr.start_round('REAL01', 'alice')
            assert done.wait(timeout=5)
            assert mgr.get_session('REAL01').end_reason == 'timeout'
        finally:
            mgr.shutdown()


def fail_saves(monkeypatch, store):
    def unavailable(session, ttl):
        raise StoreUnavailable()

    monkeypatch.setattr(store, 'save', unavailable)


def assert_timers_match_store(manager, session_id):
    """A running round always has a deadline, an ended one a pending advance."""
    session = manager.get_session(session_id)
    assert session.status != Status.ACTIVE or manager.round_timers.is_armed(session_id)
    awaiting_advance = session.status == Status.ENDED and not session.game_over
    assert manager.advance_timers.is_armed(session_id) == awaiting_advance


class TestStoreFailures:
    """A failed save leaves the stored session and its deadlines in agreement."""

    def test_failed_start_arms_nothing(self, manager, lobby, store, monkeypatch):
        manager.set_question(lobby, 'alice', 'Q?', 'A')
        fail_saves(monkeypatch, store)
        with pytest.raises(StoreUnavailable):
            manager.start_round(lobby, 'alice')
        monkeypatch.undo()

        assert manager.get_session(lobby).status == Status.WAITING
        assert not manager.round_timers.is_armed(lobby)
        assert_timers_match_store(manager, lobby)

    def test_failed_winning_guess_keeps_deadline(self, manager, active_round, store, monkeypatch, events):
        events.clear()
        fail_saves(monkeypatch, store)
        with pytest.raises(SessionNotFound):
            manager.submit_guess(active_round, 'bob', 'paris')
        monkeypatch.undo()

        assert manager.get_session(active_round).status == Status.ACTIVE
        assert manager.round_timers.is_armed(active_round)
        assert events.named('round_ended') == []
        assert_timers_match_store(manager, active_round)

        # the round is still winnable once the store is back
        assert manager.submit_guess(active_round, 'carol', 'paris').correct
        assert_timers_match_store(manager, active_round)

    def test_failed_timeout_keeps_deadline(self, manager, active_round, store, monkeypatch):
        fail_saves(monkeypatch, store)
        with pytest.raises(StoreUnavailable):
            manager.handle_timeout(active_round)
        monkeypatch.undo()

        assert manager.get_session(active_round).status == Status.ACTIVE
        assert_timers_match_store(manager, active_round)

    def test_failed_advance_keeps_pending_advance(self, manager, active_round, store, monkeypatch):
        manager.submit_guess(active_round, 'bob', 'paris')
        fail_saves(monkeypatch, store)
        with pytest.raises(StoreUnavailable):
            manager.advance_round(active_round)
        monkeypatch.undo()

        session = manager.get_session(active_round)
        assert session.status == Status.ENDED
        assert session.current_round == 1
        assert manager.advance_timers.is_armed(active_round)
        assert_timers_match_store(manager, active_round)

    def test_deadline_retries_while_store_is_down(self, manager, active_round, store,
                                                  scheduler, monkeypatch):
        [deadline] = scheduler.pending()
        fail_saves(monkeypatch, store)
        deadline.fire()
        monkeypatch.undo()

        assert manager.get_session(active_round).status == Status.ACTIVE
        assert manager.round_timers.is_armed(active_round)
        retry = scheduler.timers[-1]
        assert retry is not deadline
        assert retry.interval == manager.retry_delay

        retry.fire()
        assert manager.get_session(active_round).end_reason == 'timeout'
        assert_timers_match_store(manager, active_round)

    def test_automatic_advance_retries_while_store_is_down(self, manager, active_round, store,
                                                           scheduler, monkeypatch):
        manager.submit_guess(active_round, 'bob', 'paris')
        [pause] = scheduler.pending()
        fail_saves(monkeypatch, store)
        pause.fire()
        monkeypatch.undo()

        assert manager.advance_timers.is_armed(active_round)
        assert_timers_match_store(manager, active_round)

        scheduler.timers[-1].fire()
        session = manager.get_session(active_round)
        assert session.current_round == 2
        assert session.status == Status.WAITING
        assert_timers_match_store(manager, active_round)

    def test_failed_delete_keeps_deadlines(self, manager, active_round, store, monkeypatch):
        def unavailable(session_id):
            raise StoreUnavailable()

        monkeypatch.setattr(store, 'delete', unavailable)
        with pytest.raises(StoreUnavailable):
            manager.delete_session(active_round)
        monkeypatch.undo()

        assert manager.get_session(active_round) is not None
        assert manager.round_timers.is_armed(active_round)
