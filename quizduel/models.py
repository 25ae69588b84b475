from quizduel import db
from datetime import datetime
import json
import uuid


def _new_duel_id():
    return uuid.uuid4().hex


class User(db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(64), nullable=False, default='')
    username = db.Column(db.String(64), unique=True, nullable=True, index=True)
    language = db.Column(db.String(8), nullable=False, default='en')

    def display_name(self, index=1):
        return self.first_name or self.username or f"Player {index}"

    def to_dict(self):
        return {
            'id': self.id,
            'firstName': self.first_name,
            'username': self.username,
            'language': self.language,
        }


class Duel(db.Model):
    __tablename__ = 'duel'
    id = db.Column(db.String(32), primary_key=True, default=_new_duel_id)
    topic = db.Column(db.String(200), nullable=False)
    language = db.Column(db.String(8), nullable=False, default='en')
    difficulty = db.Column(db.String(16), nullable=False, default='medium')
    questions_count = db.Column(db.Integer, nullable=False, default=10)
    status = db.Column(db.String(32), nullable=False, default='waiting')  # pending, waiting, ready, in_progress, finished
    is_ranked = db.Column(db.Boolean, nullable=False, default=False)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    opponent_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True, index=True)
    winner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    creator_score = db.Column(db.Integer, nullable=False, default=0)
    opponent_score = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    started_at = db.Column(db.DateTime, nullable=True)
    finished_at = db.Column(db.DateTime, nullable=True)

    creator = db.relationship('User', foreign_keys=[creator_id])
    opponent = db.relationship('User', foreign_keys=[opponent_id])
    pack = db.relationship('DuelPack', backref='duel', uselist=False)
    answers = db.relationship('DuelAnswer', backref='duel', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'topic': self.topic,
            'language': self.language,
            'difficulty': self.difficulty,
            'questionsCount': self.questions_count,
            'status': self.status,
            'isRanked': self.is_ranked,
            'creatorId': self.creator_id,
            'opponentId': self.opponent_id,
            'winnerId': self.winner_id,
            'creatorScore': self.creator_score,
            'opponentScore': self.opponent_score,
            'packCommit': self.pack.commit_hash if self.pack else None,
        }


class DuelPack(db.Model):
    __tablename__ = 'duel_pack'
    id = db.Column(db.Integer, primary_key=True)
    duel_id = db.Column(db.String(32), db.ForeignKey('duel.id'), unique=True, nullable=False)
    questions = db.Column(db.Text, nullable=False)  # JSON-encoded list of questions with answer keys
    seed = db.Column(db.String(64), nullable=False)
    commit_hash = db.Column(db.String(64), nullable=False)

    def question_dicts(self):
        return json.loads(self.questions) if self.questions else []


class DuelAnswer(db.Model):
    __tablename__ = 'duel_answer'
    id = db.Column(db.Integer, primary_key=True)
    duel_id = db.Column(db.String(32), db.ForeignKey('duel.id'), nullable=False, index=True)
    player_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    question_index = db.Column(db.Integer, nullable=False)
    answer_index = db.Column(db.Integer, nullable=True)
    is_correct = db.Column(db.Boolean, nullable=False, default=False)
    response_time_ms = db.Column(db.Integer, nullable=False, default=0)
    answered_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class UserRating(db.Model):
    __tablename__ = 'user_rating'
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), primary_key=True)
    sr = db.Column(db.Integer, nullable=False)
    rd = db.Column(db.Integer, nullable=False)
    games_played = db.Column(db.Integer, nullable=False, default=0)


class MatchResult(db.Model):
    __tablename__ = 'match_result'
    id = db.Column(db.Integer, primary_key=True)
    duel_id = db.Column(db.String(32), db.ForeignKey('duel.id'), unique=True, nullable=False)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    opponent_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    is_ranked = db.Column(db.Boolean, nullable=False, default=False)
    topic_norm = db.Column(db.String(200), nullable=False, default='')
    total_questions = db.Column(db.Integer, nullable=False)
    creator_correct_count = db.Column(db.Integer, nullable=False)
    creator_faster_count = db.Column(db.Integer, nullable=False)
    creator_sr_before = db.Column(db.Integer, nullable=False)
    creator_sr_after = db.Column(db.Integer, nullable=False)
    creator_delta = db.Column(db.Integer, nullable=False)
    opponent_correct_count = db.Column(db.Integer, nullable=False)
    opponent_faster_count = db.Column(db.Integer, nullable=False)
    opponent_sr_before = db.Column(db.Integer, nullable=False)
    opponent_sr_after = db.Column(db.Integer, nullable=False)
    opponent_delta = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)


class BankQuestion(db.Model):
    __tablename__ = 'bank_question'
    id = db.Column(db.Integer, primary_key=True)
    topic_norm = db.Column(db.String(200), nullable=False, index=True)
    language = db.Column(db.String(8), nullable=False, index=True)
    difficulty = db.Column(db.String(16), nullable=False, default='medium')
    text = db.Column(db.Text, nullable=False)
    options = db.Column(db.Text, nullable=False)  # JSON-encoded list of 4 strings
    correct_index = db.Column(db.Integer, nullable=False)

    def option_list(self):
        return json.loads(self.options)
