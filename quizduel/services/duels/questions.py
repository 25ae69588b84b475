"""Question packs and the supplier boundary.

The engine only needs an ordered list of questions with answer keys, a
random seed, and a commit hash over the seed and the correct-answer
sequence. How questions are authored is outside this package; the bank
supplier just draws from the ``bank_question`` table.
"""

from __future__ import annotations

import hashlib
import json
import logging
import random
import re
import secrets
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from quizduel import db
from quizduel.models import BankQuestion

log = logging.getLogger(__name__)

MAX_TOPIC_LENGTH = 200
OPTIONS_PER_QUESTION = 4


@dataclass(frozen=True)
class Question:
    text: str
    options: Sequence[str]
    correct_index: int
    id: str = field(default_factory=lambda: f"q-{uuid.uuid4()}")

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'text': self.text,
            'options': list(self.options),
            'correctIndex': self.correct_index,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Question':
        return cls(
            id=data.get('id') or f"q-{uuid.uuid4()}",
            text=data['text'],
            options=tuple(data['options']),
            correct_index=int(data['correctIndex']),
        )


@dataclass(frozen=True)
class QuestionPack:
    questions: List[Question]
    seed: str
    commit_hash: str

    def questions_json(self) -> str:
        return json.dumps([q.to_dict() for q in self.questions])


def new_seed() -> str:
    return secrets.token_hex(32)


def make_commit_hash(seed: str, questions: Sequence[Question]) -> str:
    answers = ','.join(str(q.correct_index) for q in questions)
    return hashlib.sha256((seed + answers).encode('utf-8')).hexdigest()


def build_pack(questions: Sequence[Question], seed: Optional[str] = None) -> QuestionPack:
    seed = seed or new_seed()
    questions = list(questions)
    return QuestionPack(questions=questions, seed=seed, commit_hash=make_commit_hash(seed, questions))


def sanitize(question: Question, index: int) -> dict:
    """Client view of a question: everything except the answer key."""
    return {
        'id': question.id,
        'index': index,
        'text': question.text,
        'options': list(question.options),
    }


def normalize_topic(topic: str) -> str:
    text = re.sub(r'\s+', ' ', (topic or '').lower().strip())
    text = ''.join(ch for ch in text if ch.isalnum() or ch.isspace())
    return text[:MAX_TOPIC_LENGTH]


class QuestionSupplier:
    """Contract consumed by duel sessions."""

    def supply(self, topic, count, language, difficulty, ranked=False) -> QuestionPack:
        raise NotImplementedError


class BankQuestionSupplier(QuestionSupplier):
    """Draw questions from the local question bank.

    Ranked duels get a diverse draw across topics without easy questions;
    invite duels prefer the requested topic and top up from the rest of
    the language bank.
    """

    def __init__(self, rng=None):
        self.rng = rng or random.SystemRandom()

    def supply(self, topic, count, language, difficulty, ranked=False) -> QuestionPack:
        base = BankQuestion.query.filter_by(language=language)
        if ranked:
            rows = base.filter(BankQuestion.difficulty != 'easy').all()
        else:
            topic_norm = normalize_topic(topic)
            rows = base.filter_by(topic_norm=topic_norm, difficulty=difficulty).all()
            if len(rows) < count:
                seen = {r.id for r in rows}
                rows += [r for r in base.all() if r.id not in seen]
        self.rng.shuffle(rows)
        picked = rows[:count]
        if not picked:
            raise LookupError(f"no questions for language={language} topic={topic!r}")
        log.info(f"[questions] language={language} ranked={ranked} requested={count} supplied={len(picked)}")
        return build_pack([
            Question(text=r.text, options=tuple(r.option_list()), correct_index=r.correct_index)
            for r in picked
        ])

    @staticmethod
    def load(entries) -> int:
        """Insert bank questions from dicts with topic/language/difficulty/text/options/correctIndex."""
        added = 0
        for entry in entries:
            options = list(entry['options'])
            if len(options) != OPTIONS_PER_QUESTION:
                raise ValueError(f"question needs {OPTIONS_PER_QUESTION} options: {entry.get('text')!r}")
            db.session.add(BankQuestion(
                topic_norm=normalize_topic(entry.get('topic', '')),
                language=entry.get('language', 'en'),
                difficulty=entry.get('difficulty', 'medium'),
                text=entry['text'],
                options=json.dumps(options),
                correct_index=int(entry['correctIndex']),
            ))
            added += 1
        db.session.commit()
        return added
