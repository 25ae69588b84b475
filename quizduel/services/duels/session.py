"""Per-duel state machine.

Status flow::

    pending  (matchmaking duel, waiting for both sockets and questions)
    waiting  (invite duel, waiting for an opponent)
      -> ready        (both players known, creator may start)
      -> in_progress  (questions being played)
      -> finished     (terminal)

Every method here assumes the caller holds the registry's event lock;
timer callbacks re-enter through ``SessionRegistry.dispatch``. Scores only
change inside ``end_question``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from quizduel.errors import INVALID_ANSWER, InvalidState, NotAuthorized
from quizduel.services.duels.emitter import duel_room
from quizduel.services.duels.questions import sanitize
from quizduel.services.duels.rating import MatchSummary, count_faster
from quizduel.services.duels.timers import cancel_timer
from quizduel.store import AnswerRow

log = logging.getLogger(__name__)

PENDING = 'pending'
WAITING = 'waiting'
READY = 'ready'
IN_PROGRESS = 'in_progress'
FINISHED = 'finished'


@dataclass(frozen=True)
class DuelTimings:
    question_time_limit: int = 60
    lock_time_limit: int = 10
    countdown: int = 3
    result_display: int = 3
    tick_interval: int = 1

    @classmethod
    def from_config(cls, config):
        return cls(
            question_time_limit=int(config.get('QUESTION_TIME_LIMIT_SEC', 60)),
            lock_time_limit=int(config.get('LOCK_TIME_LIMIT_SEC', 10)),
            countdown=int(config.get('COUNTDOWN_SEC', 3)),
            result_display=int(config.get('RESULT_DISPLAY_SEC', 3)),
            tick_interval=int(config.get('TICK_INTERVAL_SEC', 1)),
        )


class Unfilled:
    """Empty opponent seat."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return 'UNFILLED'


UNFILLED = Unfilled()


@dataclass(frozen=True)
class AnswerRecord:
    answer_index: int
    answered_at: int


@dataclass
class PlayerSessionState:
    player_id: int
    display_name: str
    sid: Optional[str] = None
    score: int = 0
    answers: Dict[int, AnswerRecord] = field(default_factory=dict)

    @property
    def connected(self):
        return self.sid is not None

    def view(self, question_index):
        return {
            'odId': self.player_id,
            'odName': self.display_name,
            'displayName': self.display_name,
            'score': self.score,
            'currentAnswer': None,
            'hasAnswered': question_index in self.answers,
        }


OpponentSeat = Union[Unfilled, PlayerSessionState]


@dataclass(frozen=True)
class PlayerPick:
    player_id: int
    player_name: str
    picked: Optional[int]
    is_correct: bool
    time_ms: Optional[int]

    def to_payload(self):
        return {
            'playerId': self.player_id,
            'playerName': self.player_name,
            'picked': self.picked,
            'isCorrect': self.is_correct,
            'timeMs': self.time_ms,
        }


@dataclass(frozen=True)
class QuestionResult:
    question_index: int
    correct_index: int
    creator: PlayerPick
    opponent: Optional[PlayerPick]
    creator_score: int
    opponent_score: int
    first_player_id: Optional[int]

    def to_payload(self):
        per_player = [self.creator.to_payload()]
        if self.opponent is not None:
            per_player.append(self.opponent.to_payload())
        return {
            'questionIndex': self.question_index,
            'correctIndex': self.correct_index,
            'creatorAnswer': self.creator.picked,
            'opponentAnswer': self.opponent.picked if self.opponent else None,
            'creatorCorrect': self.creator.is_correct,
            'opponentCorrect': self.opponent.is_correct if self.opponent else False,
            'creatorScore': self.creator_score,
            'opponentScore': self.opponent_score,
            'firstPlayerId': self.first_player_id,
            'perPlayer': per_player,
        }


@dataclass(frozen=True)
class DuelResult:
    duel_id: str
    creator_score: int
    opponent_score: int
    winner_id: Optional[int]
    seed: str
    is_ranked: bool
    results: Tuple[QuestionResult, ...]

    def to_payload(self):
        return {
            'duelId': self.duel_id,
            'creatorScore': self.creator_score,
            'opponentScore': self.opponent_score,
            'winnerId': self.winner_id,
            'seed': self.seed,
            'isRanked': self.is_ranked,
            'results': [r.to_payload() for r in self.results],
        }


def decide_winner(creator_id, creator_score, opponent_id, opponent_score):
    """Strict score comparison; equal scores are a draw (None)."""
    if creator_score > opponent_score:
        return creator_id
    if opponent_id is not None and opponent_score > creator_score:
        return opponent_id
    return None


class DuelSession:
    def __init__(self, record, registry):
        self.registry = registry
        self.id = record.id
        self.status = record.status
        self.topic = record.topic
        self.language = record.language
        self.difficulty = record.difficulty
        self.questions_count = record.questions_count
        self.is_ranked = record.is_ranked
        self.questions = list(record.questions)
        self.seed = record.seed
        self.commit_hash = record.commit_hash

        self.creator = PlayerSessionState(record.creator_id, record.creator_name)
        self.opponent: OpponentSeat = UNFILLED
        if record.opponent_id is not None:
            self.fill_opponent(record.opponent_id, record.opponent_name)

        self.current_question_index = 0
        self.question_start_ms = 0
        self.locked = False
        self.lock_started_ms: Optional[int] = None
        self.first_answer_player_id: Optional[int] = None
        self.results: List[QuestionResult] = []

        self.tick_timer = None
        self.lock_timer = None
        self.next_timer = None
        self.supplying = False
        self.released = False

    # ---- seats ----

    @property
    def room(self):
        return duel_room(self.id)

    @property
    def has_opponent(self):
        return isinstance(self.opponent, PlayerSessionState)

    @property
    def timings(self) -> DuelTimings:
        return self.registry.timings

    @property
    def total_questions(self):
        return min(self.questions_count, len(self.questions))

    def fill_opponent(self, player_id, display_name):
        self.opponent = PlayerSessionState(player_id, display_name or 'Player 2')

    def players(self) -> List[PlayerSessionState]:
        if isinstance(self.opponent, PlayerSessionState):
            return [self.creator, self.opponent]
        return [self.creator]

    def seat(self, player_id) -> Optional[PlayerSessionState]:
        for player in self.players():
            if player.player_id == player_id:
                return player
        return None

    def other_seat(self, player_id) -> Optional[PlayerSessionState]:
        for player in self.players():
            if player.player_id != player_id:
                return player
        return None

    @property
    def both_connected(self):
        return self.has_opponent and all(p.connected for p in self.players())

    def load_pack(self, questions, seed, commit_hash):
        self.questions = list(questions)
        self.seed = seed
        self.commit_hash = commit_hash

    # ---- snapshots ----

    def snapshot(self):
        now = self._now()
        elapsed = (now - self.question_start_ms) // 1000 if self.question_start_ms else 0
        lock_remaining = None
        if self.locked and self.lock_started_ms is not None:
            lock_remaining = max(0, self.timings.lock_time_limit - (now - self.lock_started_ms) // 1000)
        idx = self.current_question_index
        return {
            'duelId': self.id,
            'status': self.status,
            'topic': self.topic,
            'language': self.language,
            'questionsCount': self.questions_count,
            'currentQuestionIndex': idx,
            'players': {
                'creator': self.creator.view(idx),
                'opponent': self.opponent.view(idx) if self.has_opponent else None,
            },
            'timeRemaining': max(0, self.timings.question_time_limit - elapsed),
            'isLocked': self.locked,
            'lockTimeRemaining': lock_remaining,
        }

    # ---- transitions ----

    def begin(self):
        """Enter in_progress and deliver the first question after the countdown."""
        self.status = IN_PROGRESS
        self._persist('start', self.registry.store.update_duel, self.id,
                      status=IN_PROGRESS, started_at=datetime.utcnow())
        log.info(f"[duel-start] duel={self.id} questions={self.total_questions} countdown={self.timings.countdown}s")
        self._emit('duel:starting', {'startsIn': self.timings.countdown})
        self.next_timer = self._later(self.timings.countdown, self.deliver_question, 'countdown')

    def deliver_question(self):
        self.next_timer = None
        if self.status != IN_PROGRESS:
            return
        idx = self.current_question_index
        if idx >= self.total_questions:
            log.info(f"[duel-short] duel={self.id} no question at index={idx}, finishing early")
            self.finish()
            return

        self.locked = False
        self.lock_started_ms = None
        self.first_answer_player_id = None
        self.question_start_ms = self._now()
        limit = self.timings.question_time_limit
        self._emit('duel:question', {
            'question': sanitize(self.questions[idx], idx),
            'timeLimit': limit,
            'questionNumber': idx + 1,
            'totalQuestions': self.total_questions,
            'startedAt': self.question_start_ms,
            'deadlineAt': self.question_start_ms + limit * 1000,
        })
        self.tick_timer = self._every(self.timings.tick_interval, self._on_tick, 'tick')

    def _on_tick(self):
        if self.tick_timer is None:
            return
        snapshot = self.snapshot()
        self._emit('duel:tick', {
            'timeRemaining': snapshot['timeRemaining'],
            'isLocked': snapshot['isLocked'],
            'lockTimeRemaining': snapshot['lockTimeRemaining'],
        })
        if snapshot['timeRemaining'] <= 0 and not self.locked:
            self.end_question()

    def _on_lock_expired(self):
        self.lock_timer = None
        log.info(f"[duel-lock-expired] duel={self.id} question={self.current_question_index}")
        self.end_question()

    def submit_answer(self, player_id, question_index, answer_index):
        """Record a player's first answer for the live question.

        Returns False (and changes nothing) for late, repeated, or
        wrong-index submissions.
        """
        player = self.seat(player_id)
        if player is None:
            raise NotAuthorized('You are not part of this duel')
        if self.status != IN_PROGRESS or self.tick_timer is None:
            return False
        if question_index != self.current_question_index or question_index in player.answers:
            return False
        options = self.questions[question_index].options
        if isinstance(answer_index, bool) or not isinstance(answer_index, int) or not 0 <= answer_index < len(options):
            raise InvalidState('Answer index out of range', code=INVALID_ANSWER)

        answered_at = self._now()
        if self._past_deadline(answered_at):
            log.info(f"[duel-late] duel={self.id} player={player_id} question={question_index} at={answered_at}")
            return False
        is_first = not self.locked
        player.answers[question_index] = AnswerRecord(answer_index, answered_at)
        self._emit('duel:playerAnswered', {
            'playerId': player_id,
            'playerName': player.display_name,
            'answeredAt': answered_at,
            'isFirst': is_first,
        })
        other = self.other_seat(player_id)
        if other is not None and other.connected:
            self._emit('duel:opponentAnswered', {'playerId': player_id}, to=other.sid)

        if is_first:
            lock_limit = self.timings.lock_time_limit
            self.locked = True
            self.lock_started_ms = answered_at
            self.first_answer_player_id = player_id
            if other is not None:
                self._emit('duel:secondTimerStarted', {
                    'firstPlayerId': player_id,
                    'firstPlayerName': player.display_name,
                    'secondPlayerId': other.player_id,
                    'secondPlayerName': other.display_name,
                    'secondDeadlineAt': answered_at + lock_limit * 1000,
                })
            self._emit('duel:locked', {'firstPlayerId': player_id, 'lockTimeRemaining': lock_limit})
            self.lock_timer = self._later(lock_limit, self._on_lock_expired, 'lock')

        if all(question_index in p.answers for p in self.players()):
            self.end_question()
        return True

    def end_question(self):
        # Clearing the tick handle first makes a second call a no-op
        if self.tick_timer is None:
            return
        self.tick_timer = cancel_timer(self.tick_timer)
        self.lock_timer = cancel_timer(self.lock_timer)

        idx = self.current_question_index
        question = self.questions[idx]
        picks = []
        rows = []
        for player in self.players():
            answer = player.answers.get(idx)
            correct = answer is not None and answer.answer_index == question.correct_index
            if correct:
                player.score += 1
            time_ms = answer.answered_at - self.question_start_ms if answer else None
            picks.append(PlayerPick(
                player.player_id, player.display_name,
                answer.answer_index if answer else None, correct, time_ms,
            ))
            if answer is not None:
                rows.append(AnswerRow(self.id, player.player_id, idx, answer.answer_index, correct, time_ms))
        self._persist('answers', self.registry.store.add_answers, rows)

        result = QuestionResult(
            question_index=idx,
            correct_index=question.correct_index,
            creator=picks[0],
            opponent=picks[1] if len(picks) > 1 else None,
            creator_score=self.creator.score,
            opponent_score=self.opponent.score if self.has_opponent else 0,
            first_player_id=self.first_answer_player_id,
        )
        self.results.append(result)
        self._emit('duel:questionResult', result.to_payload())

        if idx >= self.total_questions - 1:
            log.info(f"[duel-last] duel={self.id} question={idx + 1}/{self.total_questions}")
            self.next_timer = self._later(self.timings.result_display, self.finish, 'finish')
        else:
            self.current_question_index += 1
            self.next_timer = self._later(self.timings.result_display, self.deliver_question, 'next-question')

    def finish(self):
        self.next_timer = None
        if self.status == FINISHED:
            return
        self.clear_timers()
        self.status = FINISHED

        opponent_id = self.opponent.player_id if self.has_opponent else None
        opponent_score = self.opponent.score if self.has_opponent else 0
        winner_id = decide_winner(self.creator.player_id, self.creator.score, opponent_id, opponent_score)
        self._persist('finish', self.registry.store.update_duel, self.id,
                      status=FINISHED, winner_id=winner_id, finished_at=datetime.utcnow(),
                      creator_score=self.creator.score, opponent_score=opponent_score)

        result = DuelResult(
            duel_id=self.id,
            creator_score=self.creator.score,
            opponent_score=opponent_score,
            winner_id=winner_id,
            seed=self.seed,
            is_ranked=self.is_ranked,
            results=tuple(self.results),
        )
        log.info(f"[duel-finish] duel={self.id} score={self.creator.score}-{opponent_score} winner={winner_id}")
        self._emit('duel:finished', result.to_payload())

        if opponent_id is not None:
            creator_faster, opponent_faster = count_faster(
                (r.creator.time_ms, r.opponent.time_ms if r.opponent else None) for r in self.results
            )
            self.registry.schedule_rating(self.room, MatchSummary(
                duel_id=self.id,
                creator_id=self.creator.player_id,
                opponent_id=opponent_id,
                creator_correct=self.creator.score,
                opponent_correct=opponent_score,
                creator_faster=creator_faster,
                opponent_faster=opponent_faster,
                total_questions=len(self.results),
                topic=self.topic,
                is_ranked=self.is_ranked,
            ))
        self.registry.release(self)
        return result

    def disconnect(self, player_id, sid=None):
        player = self.seat(player_id)
        if player is None or not player.connected:
            return False
        if sid is not None and player.sid != sid:
            # A newer socket already replaced this one
            return False
        player.sid = None
        log.info(f"[duel-disconnect] duel={self.id} player={player_id} status={self.status}")
        self._emit('duel:playerDisconnected', {'playerId': player_id, 'playerName': player.display_name})
        return True

    def clear_timers(self):
        self.tick_timer = cancel_timer(self.tick_timer)
        self.lock_timer = cancel_timer(self.lock_timer)
        self.next_timer = cancel_timer(self.next_timer)

    # ---- plumbing ----

    def _now(self):
        return self.registry.scheduler.now_ms()

    def _past_deadline(self, now):
        # Expiry timers may fire after the deadline; the clock still decides
        if self.locked and self.lock_started_ms is not None:
            return now >= self.lock_started_ms + self.timings.lock_time_limit * 1000
        return now >= self.question_start_ms + self.timings.question_time_limit * 1000

    def _emit(self, event, payload, to=None):
        self.registry.emitter.emit(event, payload, to=to or self.room)

    def _later(self, delay, fn, name):
        return self.registry.scheduler.call_later(delay, self.registry.dispatch, self, fn, name=f"{name}:{self.id}")

    def _every(self, interval, fn, name):
        return self.registry.scheduler.call_every(interval, self.registry.dispatch, self, fn, name=f"{name}:{self.id}")

    def _persist(self, what, fn, *args, **kwargs):
        try:
            fn(*args, **kwargs)
        except Exception:
            log.exception(f"[duel-persist-failed] duel={self.id} step={what}")
            return False
        return True
