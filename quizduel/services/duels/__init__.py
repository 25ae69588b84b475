"""Duel domain services: matchmaking, sessions, rating and timers.

This package holds the realtime orchestration core. Socket handlers and
HTTP routes call into it, keeping transport concerns separated from the
duel mechanics.
"""

from quizduel.services.duels.matchmaking import MatchmakingQueue, MatchmakingSettings
from quizduel.services.duels.rating import RatingEngine
from quizduel.services.duels.registry import SessionRegistry
from quizduel.services.duels.session import DuelSession, DuelTimings

__all__ = [
    'DuelSession',
    'DuelTimings',
    'MatchmakingQueue',
    'MatchmakingSettings',
    'RatingEngine',
    'SessionRegistry',
]
