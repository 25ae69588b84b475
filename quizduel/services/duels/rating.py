"""Elo-style skill rating for finished duels.

Pure functions compute the delta for one side of a match; ``RatingEngine``
is the single entry point that reads ratings, applies the anti-abuse gate
and persists the outcome through the store.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Tuple

log = logging.getLogger(__name__)

DEFAULT_SR = 1000
DEFAULT_RD = 350
MIN_SR = 0
MAX_SR = 30000
MIN_RD = 80
RD_DECAY = 10
MIN_DELTA = -60
MAX_DELTA = 60
MARGIN_WEIGHT = 0.35
SPEED_WEIGHT = 0.10

# Anti-abuse: ranked matches between the same pair inside the cooldown window
MAX_RANKED_MATCHES_PER_PAIR = 3
RANKED_COOLDOWN = timedelta(hours=24)

LEAGUES = (
    (2500, 'Master'),
    (2000, 'Diamond'),
    (1500, 'Platinum'),
    (1200, 'Gold'),
    (1000, 'Silver'),
)


@dataclass(frozen=True)
class PlayerStats:
    player_id: int
    correct_count: int
    faster_count: int
    sr_before: int
    rd_before: int


@dataclass(frozen=True)
class RatingChange:
    player_id: int
    sr_before: int
    sr_after: int
    rd_before: int
    rd_after: int
    delta: int

    def to_payload(self) -> dict:
        return {
            'playerId': self.player_id,
            'srBefore': self.sr_before,
            'srAfter': self.sr_after,
            'delta': self.delta,
            'leagueName': league_name(self.sr_after),
        }


@dataclass(frozen=True)
class MatchSummary:
    duel_id: str
    creator_id: int
    opponent_id: int
    creator_correct: int
    opponent_correct: int
    creator_faster: int
    opponent_faster: int
    total_questions: int
    topic: str
    is_ranked: bool


def clamp(value, lo, hi):
    return max(lo, min(hi, value))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def expected_score(my_sr: float, opp_sr: float) -> float:
    return 1 / (1 + math.pow(10, (opp_sr - my_sr) / 400))


def actual_score(my_correct: int, opp_correct: int) -> float:
    if my_correct > opp_correct:
        return 1.0
    if my_correct < opp_correct:
        return 0.0
    return 0.5


def _share(mine: int, theirs: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return clamp((mine - theirs) / total, -1.0, 1.0)


def margin_multiplier(my_correct: int, opp_correct: int, total: int) -> float:
    return 1 + MARGIN_WEIGHT * _share(my_correct, opp_correct, total)


def speed_multiplier(my_faster: int, opp_faster: int, total: int) -> float:
    return 1 + SPEED_WEIGHT * _share(my_faster, opp_faster, total)


def k_factor(rd: float) -> float:
    return clamp(16 + rd / 50, 16, 48)


def rating_delta(me: PlayerStats, opp: PlayerStats, total_questions: int) -> int:
    raw = (
        k_factor(me.rd_before)
        * (actual_score(me.correct_count, opp.correct_count) - expected_score(me.sr_before, opp.sr_before))
        * margin_multiplier(me.correct_count, opp.correct_count, total_questions)
        * speed_multiplier(me.faster_count, opp.faster_count, total_questions)
    )
    return clamp(round_half_up(raw), MIN_DELTA, MAX_DELTA)


def apply_delta(sr: int, rd: int, delta: int) -> Tuple[int, int]:
    return clamp(sr + delta, MIN_SR, MAX_SR), max(MIN_RD, rd - RD_DECAY)


def league_name(sr: int) -> str:
    for floor, name in LEAGUES:
        if sr >= floor:
            return name
    return 'Bronze'


def count_faster(timings: Iterable[Tuple[Optional[int], Optional[int]]]) -> Tuple[int, int]:
    """Count questions each side answered strictly faster.

    ``timings`` yields ``(creator_ms, opponent_ms)`` per question; a question
    only counts when both players answered it.
    """
    creator = opponent = 0
    for creator_ms, opponent_ms in timings:
        if creator_ms is None or opponent_ms is None:
            continue
        if creator_ms < opponent_ms:
            creator += 1
        elif opponent_ms < creator_ms:
            opponent += 1
    return creator, opponent


class RatingEngine:
    def __init__(self, store, now: Callable[[], datetime] = datetime.utcnow):
        self.store = store
        self.now = now

    def is_rating_affecting(self, summary: MatchSummary) -> bool:
        if not summary.is_ranked:
            return False
        since = self.now() - RANKED_COOLDOWN
        recent = self.store.count_recent_ranked(summary.creator_id, summary.opponent_id, since)
        if recent >= MAX_RANKED_MATCHES_PER_PAIR:
            log.info(
                f"[rating-gate] duel={summary.duel_id} pair={summary.creator_id}/{summary.opponent_id} recent={recent}"
            )
            return False
        return True

    def process_match(self, summary: MatchSummary) -> Tuple[RatingChange, RatingChange]:
        # Gate first: the cooldown count must not include this match
        rated = self.is_rating_affecting(summary)
        creator_rating = self.store.get_or_create_rating(summary.creator_id)
        opponent_rating = self.store.get_or_create_rating(summary.opponent_id)

        creator = PlayerStats(
            summary.creator_id, summary.creator_correct, summary.creator_faster,
            creator_rating.sr, creator_rating.rd,
        )
        opponent = PlayerStats(
            summary.opponent_id, summary.opponent_correct, summary.opponent_faster,
            opponent_rating.sr, opponent_rating.rd,
        )

        if rated:
            creator_change = self._change(creator, rating_delta(creator, opponent, summary.total_questions))
            opponent_change = self._change(opponent, rating_delta(opponent, creator, summary.total_questions))
        else:
            creator_change = self._unchanged(creator)
            opponent_change = self._unchanged(opponent)

        self.store.record_match(summary, creator_change, opponent_change, rated)
        log.info(
            f"[rating] duel={summary.duel_id} ranked={rated} "
            f"creator={creator_change.sr_before}->{creator_change.sr_after} ({creator_change.delta:+d}) "
            f"opponent={opponent_change.sr_before}->{opponent_change.sr_after} ({opponent_change.delta:+d})"
        )
        return creator_change, opponent_change

    @staticmethod
    def _change(stats: PlayerStats, delta: int) -> RatingChange:
        sr_after, rd_after = apply_delta(stats.sr_before, stats.rd_before, delta)
        return RatingChange(stats.player_id, stats.sr_before, sr_after, stats.rd_before, rd_after, sr_after - stats.sr_before)

    @staticmethod
    def _unchanged(stats: PlayerStats) -> RatingChange:
        return RatingChange(stats.player_id, stats.sr_before, stats.sr_before, stats.rd_before, stats.rd_before, 0)
