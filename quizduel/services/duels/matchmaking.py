"""Rating-based matchmaking queue.

Players wait in one bucket per language. Each carries a search window
around its rating that widens on a fixed schedule. A periodic sweep
expires stale entries, widens windows, and commits at most one match per
tick: two players are compatible when either rating falls inside the
other's window.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from quizduel.errors import ALREADY_QUEUED, DUEL_CREATE_FAILED, InvalidState, UpstreamFailure
from quizduel.services.duels.rating import MAX_SR, MIN_SR
from quizduel.services.duels.session import PENDING

log = logging.getLogger(__name__)

DEFAULT_TOPICS = {
    'ru': 'Общая эрудиция',
    'en': 'General Knowledge',
}


def _int_list(value):
    if isinstance(value, (list, tuple)):
        return tuple(int(v) for v in value)
    return tuple(int(v) for v in str(value).split(',') if v.strip())


@dataclass(frozen=True)
class MatchmakingSettings:
    sweep_interval: int = 2
    timeout: int = 60
    windows: Tuple[int, ...] = (200, 400, 600)
    widen_after: Tuple[int, ...] = (12, 24)
    languages: Tuple[str, ...] = ('ru', 'en')
    ranked_questions_count: int = 10
    ranked_difficulty: str = 'medium'

    @classmethod
    def from_config(cls, config):
        windows = _int_list(config.get('MM_WINDOWS', '200,400,600'))
        widen_after = _int_list(config.get('MM_WIDEN_AFTER_SEC', '12,24'))
        if len(widen_after) != len(windows) - 1:
            raise ValueError('MM_WIDEN_AFTER_SEC needs one entry per widening step in MM_WINDOWS')
        languages = tuple(l.strip() for l in str(config.get('SUPPORTED_LANGUAGES', 'ru,en')).split(',') if l.strip())
        return cls(
            sweep_interval=int(config.get('MM_SWEEP_INTERVAL_SEC', 2)),
            timeout=int(config.get('MM_TIMEOUT_SEC', 60)),
            windows=windows,
            widen_after=widen_after,
            languages=languages,
            ranked_questions_count=int(config.get('RANKED_QUESTIONS_COUNT', 10)),
            ranked_difficulty=config.get('RANKED_DIFFICULTY', 'medium'),
        )


@dataclass
class SearchWindow:
    min: int
    max: int
    level: int
    last_expanded_at: int

    def contains(self, sr):
        return self.min <= sr <= self.max

    def to_payload(self):
        return {'min': self.min, 'max': self.max}


@dataclass
class QueuedPlayer:
    player_id: int
    display_name: str
    sr: int
    language: str
    sid: str
    enqueued_at: int
    window: Optional[SearchWindow] = None


def compatible(a: QueuedPlayer, b: QueuedPlayer) -> bool:
    return b.window.contains(a.sr) or a.window.contains(b.sr)


class MatchmakingQueue:
    def __init__(self, store, scheduler, emitter, settings: MatchmakingSettings):
        self.store = store
        self.scheduler = scheduler
        self.emitter = emitter
        self.settings = settings
        self.buckets: Dict[str, Dict[int, QueuedPlayer]] = {lang: {} for lang in settings.languages}
        self._lock = threading.RLock()
        self._sweep_timer = None

    def start(self):
        if self._sweep_timer is None:
            self._sweep_timer = self.scheduler.call_every(self.settings.sweep_interval, self.sweep, name='mm-sweep')

    def stop(self):
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
            self._sweep_timer = None

    # ---- queue membership ----

    def find(self, player_id) -> Optional[QueuedPlayer]:
        with self._lock:
            for bucket in self.buckets.values():
                if player_id in bucket:
                    return bucket[player_id]
        return None

    def size(self, language=None):
        with self._lock:
            if language is not None:
                return len(self.buckets.get(language, {}))
            return sum(len(b) for b in self.buckets.values())

    def _window(self, sr, level, now):
        half = self.settings.windows[level]
        return SearchWindow(max(MIN_SR, sr - half), min(MAX_SR, sr + half), level, now)

    def enqueue(self, player_id, display_name, language, sid) -> QueuedPlayer:
        if language not in self.buckets:
            raise InvalidState(f"Unsupported language {language!r}")
        if self.find(player_id) is not None:
            raise InvalidState('Already in queue', code=ALREADY_QUEUED)

        rating = self.store.get_rating(player_id)

        with self._lock:
            # The rating read may have raced another enqueue for the same player
            if self.find(player_id) is not None:
                raise InvalidState('Already in queue', code=ALREADY_QUEUED)
            entry = self._add(player_id, display_name, rating.sr, language, sid)
        log.info(
            f"[mm-join] player={player_id} language={language} sr={entry.sr} "
            f"range={entry.window.min}-{entry.window.max}"
        )
        self._notify_searching(entry)
        return entry

    def _add(self, player_id, display_name, sr, language, sid):
        now = self.scheduler.now_ms()
        entry = QueuedPlayer(player_id, display_name, sr, language, sid, now, self._window(sr, 0, now))
        self.buckets[language][player_id] = entry
        return entry

    def _remove(self, entry, reason):
        bucket = self.buckets.get(entry.language, {})
        if bucket.get(entry.player_id) is entry:
            del bucket[entry.player_id]
            log.info(f"[mm-remove] player={entry.player_id} reason={reason}")
            return True
        return False

    def cancel(self, player_id) -> bool:
        with self._lock:
            entry = self.find(player_id)
            return entry is not None and self._remove(entry, 'cancelled')

    def on_disconnect(self, sid) -> bool:
        with self._lock:
            for bucket in self.buckets.values():
                for entry in list(bucket.values()):
                    if entry.sid == sid:
                        return self._remove(entry, 'disconnect')
        return False

    # ---- sweep ----

    def _widen(self, entry, now) -> bool:
        window = entry.window
        if window.level >= len(self.settings.widen_after):
            return False
        if now - window.last_expanded_at < self.settings.widen_after[window.level] * 1000:
            return False
        entry.window = self._window(entry.sr, window.level + 1, now)
        log.info(
            f"[mm-widen] player={entry.player_id} to=±{self.settings.windows[window.level + 1]} "
            f"range={entry.window.min}-{entry.window.max}"
        )
        return True

    def _find_pair(self):
        for language, bucket in self.buckets.items():
            entries = list(bucket.values())
            for i, first in enumerate(entries):
                for second in entries[i + 1:]:
                    if compatible(first, second):
                        return first, second
        return None

    def sweep(self):
        """One matchmaking tick. Returns the created duel id, if any."""
        with self._lock:
            now = self.scheduler.now_ms()
            timeout_ms = self.settings.timeout * 1000
            for bucket in self.buckets.values():
                for entry in list(bucket.values()):
                    if now - entry.enqueued_at > timeout_ms:
                        self._remove(entry, 'timeout')
                        self.emitter.emit('mm:status', {'state': 'timeout'}, to=entry.sid)
                    elif self._widen(entry, now):
                        self._notify_searching(entry)

            pair = self._find_pair()
            if pair is None:
                return None
            first, second = pair
            self._remove(first, 'matched')
            self._remove(second, 'matched')
        return self._create_match(first, second)

    def _create_match(self, first, second):
        language = first.language
        log.info(
            f"[mm-match] {first.player_id} (sr={first.sr} range={first.window.min}-{first.window.max}) vs "
            f"{second.player_id} (sr={second.sr} range={second.window.min}-{second.window.max}) language={language}"
        )
        try:
            duel_id = self.store.create_duel(
                creator_id=first.player_id,
                opponent_id=second.player_id,
                topic=DEFAULT_TOPICS.get(language, DEFAULT_TOPICS['en']),
                language=language,
                questions_count=self.settings.ranked_questions_count,
                difficulty=self.settings.ranked_difficulty,
                status=PENDING,
                is_ranked=True,
            )
        except Exception:
            log.exception(f"[mm-create-failed] {first.player_id} vs {second.player_id}")
            self._requeue(first, second)
            return None

        for me, other in ((first, second), (second, first)):
            self.emitter.emit('mm:found', {
                'duelId': duel_id,
                'opponent': {'id': other.player_id, 'name': other.display_name, 'sr': other.sr},
                'isRanked': True,
            }, to=me.sid)
        log.info(f"[mm-duel] duel={duel_id} created")
        return duel_id

    def _requeue(self, *entries):
        # Re-queued players start over with a fresh timestamp and window
        error = UpstreamFailure('Failed to create duel, still searching', code=DUEL_CREATE_FAILED)
        with self._lock:
            for old in entries:
                if self.find(old.player_id) is not None:
                    continue
                entry = self._add(old.player_id, old.display_name, old.sr, old.language, old.sid)
                self.emitter.emit('error', error.to_payload(), to=entry.sid)
                self._notify_searching(entry)

    def _notify_searching(self, entry):
        self.emitter.emit('mm:status', {'state': 'searching', 'range': entry.window.to_payload()}, to=entry.sid)
