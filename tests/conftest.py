import os
import sys
import pytest

# Ensure the project root (containing the `quizduel` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from config import Config
from quizduel import create_app, db, socketio


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = 'DEBUG'


class RecordingEmitter:
    """Collects everything the engine would send over Socket.IO."""

    def __init__(self):
        self.sent = []
        self.rooms = {}

    def emit(self, event, payload, to, skip_sid=None):
        self.sent.append({'event': event, 'payload': payload, 'to': to, 'skip_sid': skip_sid})

    def enter_room(self, sid, room):
        self.rooms.setdefault(room, set()).add(sid)

    def leave_room(self, sid, room):
        self.rooms.get(room, set()).discard(sid)

    def named(self, event, to=None):
        return [m for m in self.sent if m['event'] == event and (to is None or m['to'] == to)]

    def payloads(self, event, to=None):
        return [m['payload'] for m in self.named(event, to)]

    def clear(self):
        self.sent.clear()


class ScriptedSupplier:
    """Question supplier returning a fixed list; can be told to fail."""

    def __init__(self, questions, fail=False):
        self.questions = list(questions)
        self.fail = fail
        self.calls = []

    def supply(self, topic, count, language, difficulty, ranked=False):
        from quizduel.services.duels.questions import build_pack
        self.calls.append({'topic': topic, 'count': count, 'language': language, 'ranked': ranked})
        if self.fail:
            raise RuntimeError('question generation unavailable')
        return build_pack(self.questions[:count])


def make_questions(count, correct_index=1):
    from quizduel.services.duels.questions import Question
    return [
        Question(text=f'Question {n + 1}?', options=('A', 'B', 'C', 'D'), correct_index=correct_index)
        for n in range(count)
    ]


class Engine:
    """A fully wired duel engine on a virtual clock, backed by the test database."""

    def __init__(self, questions=None, supplier=None, timings=None, settings=None):
        from quizduel.services.duels import (
            DuelTimings,
            MatchmakingQueue,
            MatchmakingSettings,
            RatingEngine,
            SessionRegistry,
        )
        from quizduel.services.duels.timers import ManualScheduler
        from quizduel.store import SqlStore

        self.scheduler = ManualScheduler()
        self.emitter = RecordingEmitter()
        self.store = SqlStore()
        self.supplier = supplier or ScriptedSupplier(questions if questions is not None else make_questions(10))
        self.timings = timings or DuelTimings()
        self.rating = RatingEngine(self.store)
        self.registry = SessionRegistry(
            store=self.store,
            scheduler=self.scheduler,
            emitter=self.emitter,
            supplier=self.supplier,
            timings=self.timings,
            rating_engine=self.rating,
        )
        self.queue = MatchmakingQueue(self.store, self.scheduler, self.emitter, settings or MatchmakingSettings())

    def advance(self, seconds):
        self.scheduler.advance(seconds)


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import quizduel.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def make_user(flask_app):
    from quizduel.models import User

    def _make(first_name='', username=None, language='en'):
        user = User(first_name=first_name, username=username, language=language)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture()
def token_for(flask_app):
    from quizduel.auth import issue_token
    return issue_token


@pytest.fixture()
def set_rating(flask_app):
    from quizduel.models import UserRating

    def _set(user_id, sr, rd=350, games_played=0):
        db.session.merge(UserRating(user_id=user_id, sr=sr, rd=rd, games_played=games_played))
        db.session.commit()
    return _set


@pytest.fixture()
def engine(flask_app):
    return Engine()
