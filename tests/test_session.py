import hashlib

import pytest

from conftest import Engine, ScriptedSupplier, make_questions
from quizduel import db
from quizduel.errors import GENERATION_FAILED, INVALID_ANSWER, InvalidState, NotAuthorized, NotFound
from quizduel.models import Duel, DuelAnswer, MatchResult


@pytest.fixture()
def pair(make_user):
    alice = make_user('Alice', username='alice')
    bob = make_user('Bob', username='bob')
    return alice, bob


def _ranked_duel(engine, alice, bob, questions_count=10):
    return engine.store.create_duel(
        alice.id, 'General Knowledge', 'en', questions_count,
        status='pending', is_ranked=True, opponent_id=bob.id,
    )


def _start_ranked(engine, alice, bob, questions_count=10):
    """Both players join a matchmaking duel; returns the duel id at question 1."""
    duel_id = _ranked_duel(engine, alice, bob, questions_count)
    engine.registry.join(duel_id, alice.id, 'Alice', 'sid-a')
    engine.registry.join(duel_id, bob.id, 'Bob', 'sid-b')
    engine.advance(3)
    return duel_id


def test_both_joins_supply_questions_and_start(flask_app, engine, pair):
    alice, bob = pair
    duel_id = _ranked_duel(engine, alice, bob)
    engine.registry.join(duel_id, alice.id, 'Alice', 'sid-a')
    assert engine.supplier.calls == []
    assert engine.emitter.payloads('duel:joined', to='sid-a')[0]['isRanked'] is True

    engine.registry.join(duel_id, bob.id, 'Bob', 'sid-b')
    assert len(engine.supplier.calls) == 1
    assert engine.supplier.calls[0]['ranked'] is True

    room = f'duel:{duel_id}'
    assert engine.emitter.payloads('duel:starting', to=room) == [{'startsIn': 3}]
    assert db.session.get(Duel, duel_id).status == 'in_progress'
    # Stored pack matches what the session plays
    assert db.session.get(Duel, duel_id).pack.commit_hash == engine.registry.get(duel_id).commit_hash

    engine.advance(3)
    question = engine.emitter.payloads('duel:question', to=room)[0]
    assert question['question']['index'] == 0
    assert 'correctIndex' not in question['question']
    assert question['deadlineAt'] - question['startedAt'] == 60000
    assert question['totalQuestions'] == 10


def test_scenario_both_correct_second_answer_ends_question(flask_app, engine, pair):
    alice, bob = pair
    duel_id = _start_ranked(engine, alice, bob)
    room = f'duel:{duel_id}'
    started = engine.scheduler.now_ms()

    engine.advance(4)
    assert engine.registry.submit_answer(duel_id, alice.id, 0, 1) is True
    answered = engine.emitter.payloads('duel:playerAnswered', to=room)[0]
    assert answered['isFirst'] is True and answered['answeredAt'] == started + 4000
    second_timer = engine.emitter.payloads('duel:secondTimerStarted', to=room)[0]
    assert second_timer['secondDeadlineAt'] == started + 14000
    assert engine.emitter.payloads('duel:opponentAnswered', to='sid-b') == [{'playerId': alice.id}]

    engine.advance(5)
    assert engine.registry.submit_answer(duel_id, bob.id, 0, 1) is True
    # No need to wait out the lock
    results = engine.emitter.payloads('duel:questionResult', to=room)
    assert len(results) == 1
    result = results[0]
    assert result['creatorCorrect'] is True and result['opponentCorrect'] is True
    assert result['firstPlayerId'] == alice.id
    assert [p['timeMs'] for p in result['perPlayer']] == [4000, 9000]
    assert (result['creatorScore'], result['opponentScore']) == (1, 1)
    assert DuelAnswer.query.filter_by(duel_id=duel_id).count() == 2

    # The cancelled lock timer never produces a second result
    engine.advance(10)
    assert len(engine.emitter.payloads('duel:questionResult', to=room)) == 1


def test_scenario_lock_expiry_ends_question(flask_app, engine, pair):
    alice, bob = pair
    duel_id = _start_ranked(engine, alice, bob)
    room = f'duel:{duel_id}'

    engine.advance(4)
    engine.registry.submit_answer(duel_id, alice.id, 0, 1)
    engine.advance(9.9)
    assert engine.emitter.payloads('duel:questionResult', to=room) == []

    engine.advance(0.1)
    result = engine.emitter.payloads('duel:questionResult', to=room)[0]
    assert result['creatorCorrect'] is True
    assert result['opponentAnswer'] is None
    assert result['opponentCorrect'] is False
    assert result['perPlayer'][1]['timeMs'] is None


def test_answer_after_lock_deadline_is_refused_before_timer_fires(flask_app, engine, pair, monkeypatch):
    alice, bob = pair
    duel_id = _start_ranked(engine, alice, bob)
    room = f'duel:{duel_id}'

    engine.advance(4)
    engine.registry.submit_answer(duel_id, alice.id, 0, 1)
    lock_started = engine.scheduler.now_ms()
    # Clock moves on while the expiry timer is still waiting to run
    monkeypatch.setattr(engine.scheduler, 'now_ms', lambda: lock_started + 12000)
    assert engine.registry.submit_answer(duel_id, bob.id, 0, 1) is False
    assert 0 not in engine.registry.get(duel_id).opponent.answers
    assert len(engine.emitter.payloads('duel:playerAnswered', to=room)) == 1

    monkeypatch.undo()
    engine.advance(10)
    result = engine.emitter.payloads('duel:questionResult', to=room)[0]
    assert result['opponentAnswer'] is None and result['opponentCorrect'] is False


def test_answer_after_time_limit_is_refused_before_tick(flask_app, engine, pair, monkeypatch):
    alice, bob = pair
    duel_id = _start_ranked(engine, alice, bob)
    started = engine.scheduler.now_ms()

    monkeypatch.setattr(engine.scheduler, 'now_ms', lambda: started + 60000)
    assert engine.registry.submit_answer(duel_id, alice.id, 0, 1) is False
    assert engine.registry.get(duel_id).locked is False


def test_unanswered_question_ends_at_time_limit(flask_app, engine, pair):
    alice, bob = pair
    duel_id = _start_ranked(engine, alice, bob)
    room = f'duel:{duel_id}'

    engine.advance(59)
    assert engine.emitter.payloads('duel:questionResult', to=room) == []
    assert engine.emitter.payloads('duel:tick', to=room)[-1]['timeRemaining'] == 1

    engine.advance(1)
    result = engine.emitter.payloads('duel:questionResult', to=room)[0]
    assert result['creatorAnswer'] is None and result['opponentAnswer'] is None
    assert (result['creatorScore'], result['opponentScore']) == (0, 0)


def test_answers_are_idempotent(flask_app, engine, pair):
    alice, bob = pair
    duel_id = _start_ranked(engine, alice, bob)
    room = f'duel:{duel_id}'

    engine.advance(2)
    assert engine.registry.submit_answer(duel_id, alice.id, 0, 1) is True
    assert engine.registry.submit_answer(duel_id, alice.id, 0, 2) is False
    # Wrong question index is ignored
    assert engine.registry.submit_answer(duel_id, bob.id, 3, 1) is False
    assert len(engine.emitter.payloads('duel:playerAnswered', to=room)) == 1
    assert len(engine.emitter.payloads('duel:secondTimerStarted', to=room)) == 1

    engine.advance(10)
    session_result = engine.emitter.payloads('duel:questionResult', to=room)[0]
    assert session_result['creatorAnswer'] == 1
    assert session_result['creatorScore'] == 1


def test_invalid_answers(flask_app, engine, pair, make_user):
    alice, bob = pair
    carol = make_user('Carol', username='carol')
    duel_id = _start_ranked(engine, alice, bob)

    with pytest.raises(InvalidState) as exc:
        engine.registry.submit_answer(duel_id, alice.id, 0, 4)
    assert exc.value.code == INVALID_ANSWER
    with pytest.raises(InvalidState):
        engine.registry.submit_answer(duel_id, alice.id, 0, True)
    with pytest.raises(NotAuthorized):
        engine.registry.submit_answer(duel_id, carol.id, 0, 1)
    assert engine.registry.get(duel_id).seat(alice.id).answers == {}


def test_end_question_runs_once(flask_app, engine, pair):
    alice, bob = pair
    duel_id = _start_ranked(engine, alice, bob)
    room = f'duel:{duel_id}'
    session = engine.registry.get(duel_id)

    engine.advance(1)
    engine.registry.submit_answer(duel_id, alice.id, 0, 1)
    engine.registry.submit_answer(duel_id, bob.id, 0, 1)
    session.end_question()
    session.end_question()
    assert len(engine.emitter.payloads('duel:questionResult', to=room)) == 1
    assert (session.creator.score, session.opponent.score) == (1, 1)


def test_question_index_only_increases(flask_app, pair):
    alice, bob = pair
    engine = Engine(questions=make_questions(3))
    duel_id = _start_ranked(engine, alice, bob)
    room = f'duel:{duel_id}'

    for _ in range(3):
        engine.advance(1)
        index = engine.registry.get(duel_id).current_question_index
        engine.registry.submit_answer(duel_id, alice.id, index, 1)
        engine.registry.submit_answer(duel_id, bob.id, index, 0)
        engine.advance(3)

    indexes = [r['questionIndex'] for r in engine.emitter.payloads('duel:questionResult', to=room)]
    assert indexes == [0, 1, 2]
    finished = engine.emitter.payloads('duel:finished', to=room)[0]
    assert finished['winnerId'] == alice.id
    assert (finished['creatorScore'], finished['opponentScore']) == (3, 0)


def test_scenario_draw_has_no_winner(flask_app, pair):
    alice, bob = pair
    engine = Engine(questions=make_questions(2))
    duel_id = _start_ranked(engine, alice, bob)
    room = f'duel:{duel_id}'
    session = engine.registry.get(duel_id)
    seed, commit_hash = session.seed, session.commit_hash

    for index in range(2):
        engine.advance(1)
        engine.registry.submit_answer(duel_id, alice.id, index, 1)
        engine.advance(1)
        engine.registry.submit_answer(duel_id, bob.id, index, 1)
        engine.advance(3)

    finished = engine.emitter.payloads('duel:finished', to=room)[0]
    assert finished['winnerId'] is None
    assert (finished['creatorScore'], finished['opponentScore']) == (2, 2)
    assert len(finished['results']) == 2
    # Commit reveal: the published hash covers the seed and the answer key
    assert finished['seed'] == seed
    assert hashlib.sha256((seed + '1,1').encode()).hexdigest() == commit_hash

    duel = db.session.get(Duel, duel_id)
    assert duel.status == 'finished' and duel.winner_id is None

    rating = engine.emitter.payloads('duel:ratingUpdated', to=room)[0]
    assert rating['creator']['delta'] == 0 and rating['opponent']['delta'] == 0
    row = MatchResult.query.filter_by(duel_id=duel_id).one()
    assert row.is_ranked is True
    assert (row.creator_correct_count, row.opponent_correct_count) == (2, 2)
    # Alice answered first both times
    assert (row.creator_faster_count, row.opponent_faster_count) == (2, 0)


def test_finish_releases_session_and_timers(flask_app, pair):
    alice, bob = pair
    engine = Engine(questions=make_questions(1))
    duel_id = _start_ranked(engine, alice, bob)

    engine.advance(1)
    engine.registry.submit_answer(duel_id, alice.id, 0, 1)
    engine.registry.submit_answer(duel_id, bob.id, 0, 2)
    engine.advance(3)

    assert engine.emitter.payloads('duel:finished', to=f'duel:{duel_id}')[0]['winnerId'] == alice.id
    assert engine.registry.get(duel_id) is None
    assert engine.registry.active_duel_for(alice.id) is None
    assert engine.registry.active_duel_for(bob.id) is None
    assert engine.scheduler.pending() == 0


def test_short_pack_finishes_early(flask_app, pair):
    alice, bob = pair
    engine = Engine(questions=make_questions(2))
    duel_id = _start_ranked(engine, alice, bob, questions_count=10)
    room = f'duel:{duel_id}'
    assert engine.emitter.payloads('duel:question', to=room)[0]['totalQuestions'] == 2

    engine.advance(60)
    engine.advance(3)
    engine.advance(60)
    engine.advance(3)
    finished = engine.emitter.payloads('duel:finished', to=room)
    assert len(finished) == 1
    assert len(finished[0]['results']) == 2


def test_rating_failure_does_not_revise_result(flask_app, engine, pair, monkeypatch):
    alice, bob = pair

    def broken(summary):
        raise RuntimeError('rating store down')
    monkeypatch.setattr(engine.rating, 'process_match', broken)

    engine.supplier.questions = make_questions(1)
    duel_id = _start_ranked(engine, alice, bob)
    engine.advance(1)
    engine.registry.submit_answer(duel_id, alice.id, 0, 1)
    engine.registry.submit_answer(duel_id, bob.id, 0, 1)
    engine.advance(3)

    room = f'duel:{duel_id}'
    assert len(engine.emitter.payloads('duel:finished', to=room)) == 1
    assert engine.emitter.payloads('duel:ratingUpdated', to=room) == []


def test_disconnect_keeps_timers_and_reconnect_notifies(flask_app, engine, pair):
    alice, bob = pair
    duel_id = _start_ranked(engine, alice, bob)
    room = f'duel:{duel_id}'

    engine.advance(4)
    engine.registry.submit_answer(duel_id, alice.id, 0, 1)
    # A stale socket cannot disconnect the live one
    assert engine.registry.disconnect(bob.id, 'old-sid') is False
    assert engine.registry.disconnect(bob.id, 'sid-b') is True
    assert engine.emitter.payloads('duel:playerDisconnected', to=room) == [
        {'playerId': bob.id, 'playerName': 'Bob'},
    ]

    # The lock still expires while bob is away
    engine.advance(10)
    assert len(engine.emitter.payloads('duel:questionResult', to=room)) == 1

    engine.registry.join(duel_id, bob.id, 'Bob', 'sid-b2')
    joined = engine.emitter.payloads('duel:joined', to='sid-b2')[0]
    assert joined['state']['status'] == 'in_progress'
    assert joined['state']['currentQuestionIndex'] == 1
    reconnected = engine.emitter.named('duel:playerReconnected', to=room)[0]
    assert reconnected['skip_sid'] == 'sid-b2'
    assert engine.registry.get(duel_id).seat(bob.id).sid == 'sid-b2'


def test_sync_reports_live_snapshot(flask_app, engine, pair):
    alice, bob = pair
    duel_id = _start_ranked(engine, alice, bob)

    engine.advance(4)
    engine.registry.submit_answer(duel_id, alice.id, 0, 1)
    engine.advance(2)
    state = engine.registry.sync(duel_id, bob.id, 'sid-b')
    assert engine.emitter.payloads('duel:state', to='sid-b')[-1] == state
    assert state['timeRemaining'] == 54
    assert state['isLocked'] is True and state['lockTimeRemaining'] == 8
    assert state['players']['creator']['hasAnswered'] is True
    assert state['players']['opponent']['hasAnswered'] is False


def test_join_errors(flask_app, engine, pair, make_user):
    alice, bob = pair
    carol = make_user('Carol', username='carol')
    duel_id = _ranked_duel(engine, alice, bob)

    with pytest.raises(NotFound):
        engine.registry.join('missing', alice.id, 'Alice', 'sid-a')
    with pytest.raises(NotAuthorized):
        engine.registry.join(duel_id, carol.id, 'Carol', 'sid-c')


def test_player_in_running_duel_cannot_join_another(flask_app, engine, pair, make_user):
    alice, bob = pair
    carol = make_user('Carol', username='carol')
    running = _start_ranked(engine, alice, bob)
    other = engine.store.create_duel(carol.id, 'Space', 'en', 10, opponent_id=alice.id, status='ready')

    with pytest.raises(InvalidState):
        engine.registry.join(other, alice.id, 'Alice', 'sid-a2')
    assert engine.registry.get(other).seat(alice.id).sid is None
    assert engine.registry.player_to_duel[alice.id] == running

    assert engine.registry.disconnect(alice.id, 'sid-a') is True
    assert engine.registry.get(running).seat(alice.id).sid is None


def test_joining_another_duel_leaves_the_idle_one(flask_app, engine, pair, make_user):
    alice, _ = pair
    carol = make_user('Carol', username='carol')
    idle = engine.store.create_duel(alice.id, 'Space', 'en', 10, difficulty='easy')
    other = engine.store.create_duel(carol.id, 'Space', 'en', 10, opponent_id=alice.id, status='ready')

    engine.registry.join(idle, alice.id, 'Alice', 'sid-a')
    engine.registry.join(other, alice.id, 'Alice', 'sid-a2')

    assert engine.registry.get(idle).seat(alice.id).sid is None
    assert 'sid-a' not in engine.emitter.rooms[f'duel:{idle}']
    assert engine.registry.player_to_duel[alice.id] == other
    holding = [s.id for s in engine.registry.sessions.values() if s.seat(alice.id) and s.seat(alice.id).connected]
    assert holding == [other]

    assert engine.registry.disconnect(alice.id, 'sid-a2') is True
    assert engine.registry.get(other).seat(alice.id).sid is None


def test_invite_duel_requires_creator_start(flask_app, engine, pair):
    alice, bob = pair
    duel_id = engine.store.create_duel(alice.id, 'Space', 'en', 10, difficulty='easy')
    room = f'duel:{duel_id}'

    engine.registry.join(duel_id, alice.id, 'Alice', 'sid-a')
    with pytest.raises(InvalidState):
        engine.registry.start(duel_id, alice.id)

    # Opponent accepts the invite over HTTP while the creator's session is live
    engine.store.set_opponent(duel_id, bob.id)
    engine.registry.refresh_opponent(duel_id)
    assert engine.emitter.payloads('duel:state', to=room)[-1]['status'] == 'ready'

    engine.registry.join(duel_id, bob.id, 'Bob', 'sid-b')
    # Invite duels never auto-start
    assert engine.emitter.payloads('duel:starting', to=room) == []

    with pytest.raises(NotAuthorized):
        engine.registry.start(duel_id, bob.id)
    engine.registry.start(duel_id, alice.id)
    assert engine.supplier.calls[0]['ranked'] is False
    assert engine.supplier.calls[0]['topic'] == 'Space'
    assert engine.emitter.payloads('duel:starting', to=room) == [{'startsIn': 3}]

    with pytest.raises(InvalidState):
        engine.registry.start(duel_id, alice.id)


def test_question_supply_failure_reaches_both_players(flask_app, pair):
    alice, bob = pair
    engine = Engine(supplier=ScriptedSupplier(make_questions(10), fail=True))
    duel_id = _ranked_duel(engine, alice, bob)
    room = f'duel:{duel_id}'

    engine.registry.join(duel_id, alice.id, 'Alice', 'sid-a')
    engine.registry.join(duel_id, bob.id, 'Bob', 'sid-b')
    assert engine.emitter.payloads('error', to=room)[0]['code'] == GENERATION_FAILED
    session = engine.registry.get(duel_id)
    assert session.status == 'pending' and session.supplying is False

    # A later join retries the supply
    engine.supplier.fail = False
    engine.registry.join(duel_id, bob.id, 'Bob', 'sid-b')
    assert engine.emitter.payloads('duel:starting', to=room) == [{'startsIn': 3}]


def test_finished_duel_is_not_cached(flask_app, engine, pair):
    alice, bob = pair
    duel_id = engine.store.create_duel(alice.id, 'Space', 'en', 10, status='finished', opponent_id=bob.id)
    engine.registry.join(duel_id, alice.id, 'Alice', 'sid-a')
    assert engine.emitter.payloads('duel:joined', to='sid-a')[0]['state']['status'] == 'finished'
    assert engine.registry.get(duel_id) is None
    assert engine.registry.active_duel_for(alice.id) is None
