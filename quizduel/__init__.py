from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import json
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
socketio = SocketIO(async_mode=None)


def _origins(config):
    return [o.strip() for o in str(config.get('CORS_ORIGINS', '')).split(',') if o.strip()]


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    flask_app.logger.setLevel(str(flask_app.config.get('LOG_LEVEL', 'INFO')).upper())
    allowed_origins = _origins(flask_app.config)

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from quizduel.main import main
    flask_app.register_blueprint(main)

    from quizduel.api.duels import duels
    flask_app.register_blueprint(duels, url_prefix='/api/duels')

    _init_duel_engine(flask_app)

    from quizduel.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from quizduel.models import User
        from quizduel.services.duels.questions import BankQuestionSupplier
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            for name in ['alice', 'bob', 'carol']:
                db.session.add(User(first_name=name.title(), username=name, language='en'))
            db.session.commit()
            BankQuestionSupplier.load(SAMPLE_QUESTIONS)
            print('Database has been reset and seeded!')

    @click.command('load-questions')
    @click.argument('path', type=click.Path(exists=True, dir_okay=False))
    def load_questions_command(path):
        """Loads bank questions from a JSON file (a list of question objects)."""
        from quizduel.services.duels.questions import BankQuestionSupplier
        with open(path, encoding='utf-8') as fh:
            entries = json.load(fh)
        with flask_app.app_context():
            added = BankQuestionSupplier.load(entries)
        print(f'Loaded {added} questions')

    @click.command('issue-token')
    @click.argument('user_id', type=int)
    def issue_token_command(user_id):
        """Prints a realtime auth token for an existing user."""
        from quizduel.auth import issue_token
        from quizduel.models import User
        with flask_app.app_context():
            user = db.session.get(User, user_id)
            if user is None:
                raise click.ClickException(f'No user with id {user_id}')
            print(issue_token(user))

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(load_questions_command)
    flask_app.cli.add_command(issue_token_command)

    return flask_app


def _init_duel_engine(flask_app):
    """Wire the realtime duel engine and expose it through app.extensions."""
    from quizduel.services.duels import (
        DuelTimings,
        MatchmakingQueue,
        MatchmakingSettings,
        RatingEngine,
        SessionRegistry,
    )
    from quizduel.services.duels.emitter import SocketIOEmitter
    from quizduel.services.duels.questions import BankQuestionSupplier
    from quizduel.services.duels.timers import ManualScheduler, SocketIOScheduler
    from quizduel.store import SqlStore

    # Tests drive time by hand; everywhere else timers are background tasks
    if flask_app.config.get('TESTING'):
        scheduler = ManualScheduler()
    else:
        scheduler = SocketIOScheduler(socketio, flask_app)
    store = SqlStore()
    emitter = SocketIOEmitter(socketio)
    registry = SessionRegistry(
        store=store,
        scheduler=scheduler,
        emitter=emitter,
        supplier=BankQuestionSupplier(),
        timings=DuelTimings.from_config(flask_app.config),
        rating_engine=RatingEngine(store),
    )
    queue = MatchmakingQueue(store, scheduler, emitter, MatchmakingSettings.from_config(flask_app.config))
    queue.start()

    flask_app.extensions['quizduel.scheduler'] = scheduler
    flask_app.extensions['quizduel.duels'] = registry
    flask_app.extensions['quizduel.matchmaking'] = queue


SAMPLE_QUESTIONS = [
    {'topic': 'General Knowledge', 'language': 'en', 'difficulty': 'medium',
     'text': 'Which planet is known as the Red Planet?',
     'options': ['Venus', 'Mars', 'Jupiter', 'Mercury'], 'correctIndex': 1},
    {'topic': 'General Knowledge', 'language': 'en', 'difficulty': 'medium',
     'text': 'What is the chemical symbol for gold?',
     'options': ['Ag', 'Gd', 'Au', 'Go'], 'correctIndex': 2},
    {'topic': 'General Knowledge', 'language': 'en', 'difficulty': 'hard',
     'text': 'In which year did the Berlin Wall fall?',
     'options': ['1987', '1989', '1991', '1993'], 'correctIndex': 1},
    {'topic': 'General Knowledge', 'language': 'en', 'difficulty': 'medium',
     'text': 'How many sides does a hexagon have?',
     'options': ['5', '6', '7', '8'], 'correctIndex': 1},
    {'topic': 'Общая эрудиция', 'language': 'ru', 'difficulty': 'medium',
     'text': 'Какая река самая длинная в Европе?',
     'options': ['Дунай', 'Днепр', 'Волга', 'Урал'], 'correctIndex': 2},
    {'topic': 'Общая эрудиция', 'language': 'ru', 'difficulty': 'medium',
     'text': 'Сколько минут в сутках?',
     'options': ['1440', '1200', '3600', '960'], 'correctIndex': 0},
]
