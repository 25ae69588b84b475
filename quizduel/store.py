"""Persistent store used by the duel engine.

Sessions never hold ORM objects; every read returns a plain record so an
in-memory session outlives the SQLAlchemy session that produced it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_

from quizduel import db
from quizduel.models import Duel, DuelAnswer, DuelPack, MatchResult, User, UserRating
from quizduel.services.duels.questions import Question, QuestionPack, normalize_topic
from quizduel.services.duels.rating import DEFAULT_RD, DEFAULT_SR


@dataclass
class DuelRecord:
    id: str
    status: str
    topic: str
    language: str
    difficulty: str
    questions_count: int
    is_ranked: bool
    creator_id: int
    creator_name: str
    opponent_id: Optional[int] = None
    opponent_name: Optional[str] = None
    questions: List[Question] = field(default_factory=list)
    seed: str = ''
    commit_hash: str = ''


@dataclass
class RatingRecord:
    user_id: int
    sr: int = DEFAULT_SR
    rd: int = DEFAULT_RD
    games_played: int = 0


@dataclass(frozen=True)
class AnswerRow:
    duel_id: str
    player_id: int
    question_index: int
    answer_index: Optional[int]
    is_correct: bool
    response_time_ms: int


class SqlStore:
    def create_duel(self, creator_id, topic, language, questions_count, difficulty='medium',
                    status='waiting', is_ranked=False, opponent_id=None) -> str:
        duel = Duel(
            creator_id=creator_id,
            opponent_id=opponent_id,
            topic=topic,
            language=language,
            questions_count=questions_count,
            difficulty=difficulty,
            status=status,
            is_ranked=is_ranked,
        )
        self._commit(duel)
        return duel.id

    def load_duel(self, duel_id) -> Optional[DuelRecord]:
        duel = db.session.get(Duel, duel_id)
        if duel is None:
            return None
        record = DuelRecord(
            id=duel.id,
            status=duel.status,
            topic=duel.topic,
            language=duel.language,
            difficulty=duel.difficulty,
            questions_count=duel.questions_count,
            is_ranked=bool(duel.is_ranked),
            creator_id=duel.creator_id,
            creator_name=duel.creator.display_name(1) if duel.creator else 'Player 1',
        )
        if duel.opponent_id is not None:
            record.opponent_id = duel.opponent_id
            record.opponent_name = duel.opponent.display_name(2) if duel.opponent else 'Player 2'
        if duel.pack is not None:
            record.questions = [Question.from_dict(q) for q in duel.pack.question_dicts()]
            record.seed = duel.pack.seed
            record.commit_hash = duel.pack.commit_hash
        return record

    def update_duel(self, duel_id, **fields) -> None:
        duel = db.session.get(Duel, duel_id)
        if duel is None:
            raise LookupError(f"duel {duel_id} not found")
        for key, value in fields.items():
            setattr(duel, key, value)
        self._commit(duel)

    def set_opponent(self, duel_id, opponent_id) -> None:
        self.update_duel(duel_id, opponent_id=opponent_id, status='ready')

    def save_pack(self, duel_id, pack: QuestionPack) -> None:
        existing = DuelPack.query.filter_by(duel_id=duel_id).first()
        if existing is not None:
            return
        self._commit(DuelPack(
            duel_id=duel_id,
            questions=pack.questions_json(),
            seed=pack.seed,
            commit_hash=pack.commit_hash,
        ))

    def add_answers(self, rows) -> None:
        for row in rows:
            db.session.add(DuelAnswer(
                duel_id=row.duel_id,
                player_id=row.player_id,
                question_index=row.question_index,
                answer_index=row.answer_index,
                is_correct=row.is_correct,
                response_time_ms=row.response_time_ms,
            ))
        self._commit()

    def get_user(self, user_id) -> Optional[User]:
        return db.session.get(User, user_id)

    def get_rating(self, user_id) -> RatingRecord:
        row = db.session.get(UserRating, user_id)
        if row is None:
            return RatingRecord(user_id=user_id)
        return RatingRecord(user_id=user_id, sr=row.sr, rd=row.rd, games_played=row.games_played)

    def get_or_create_rating(self, user_id) -> RatingRecord:
        row = db.session.get(UserRating, user_id)
        if row is None:
            row = UserRating(user_id=user_id, sr=DEFAULT_SR, rd=DEFAULT_RD, games_played=0)
            self._commit(row)
        return RatingRecord(user_id=user_id, sr=row.sr, rd=row.rd, games_played=row.games_played)

    def count_recent_ranked(self, player_a, player_b, since: datetime) -> int:
        return MatchResult.query.filter(
            MatchResult.is_ranked.is_(True),
            MatchResult.created_at >= since,
            or_(
                and_(MatchResult.creator_id == player_a, MatchResult.opponent_id == player_b),
                and_(MatchResult.creator_id == player_b, MatchResult.opponent_id == player_a),
            ),
        ).count()

    def record_match(self, summary, creator_change, opponent_change, rated) -> None:
        """Write the match row and, for rated matches, both ratings in one commit."""
        if rated:
            for change in (creator_change, opponent_change):
                row = db.session.get(UserRating, change.player_id)
                row.sr = change.sr_after
                row.rd = change.rd_after
                row.games_played = (row.games_played or 0) + 1
                db.session.add(row)
        self._commit(MatchResult(
            duel_id=summary.duel_id,
            creator_id=summary.creator_id,
            opponent_id=summary.opponent_id,
            is_ranked=rated,
            topic_norm=normalize_topic(summary.topic),
            total_questions=summary.total_questions,
            creator_correct_count=summary.creator_correct,
            creator_faster_count=summary.creator_faster,
            creator_sr_before=creator_change.sr_before,
            creator_sr_after=creator_change.sr_after,
            creator_delta=creator_change.delta,
            opponent_correct_count=summary.opponent_correct,
            opponent_faster_count=summary.opponent_faster,
            opponent_sr_before=opponent_change.sr_before,
            opponent_sr_after=opponent_change.sr_after,
            opponent_delta=opponent_change.delta,
        ))

    @staticmethod
    def _commit(obj=None) -> None:
        if obj is not None:
            db.session.add(obj)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
