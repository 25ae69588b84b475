"""In-memory arena of live duel sessions.

All session mutation happens under one re-entrant event lock, so each
handler (join, answer, tick, ...) runs to completion as if on a single
event loop. Collaborator calls that may be slow (loading a duel, supplying
questions) run outside the lock; whoever re-acquires it afterwards must
re-check the arena, because another event may have created, advanced or
released the same session meanwhile.
"""

from __future__ import annotations

import logging
import threading

from quizduel.errors import GENERATION_FAILED, NotAuthorized, NotFound, InvalidState, UpstreamFailure
from quizduel.services.duels.session import (
    FINISHED,
    IN_PROGRESS,
    PENDING,
    READY,
    DuelSession,
)

log = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self, store, scheduler, emitter, supplier, timings, rating_engine):
        self.store = store
        self.scheduler = scheduler
        self.emitter = emitter
        self.supplier = supplier
        self.timings = timings
        self.rating_engine = rating_engine
        self.sessions = {}
        self.player_to_duel = {}
        self._lock = threading.RLock()

    # ---- arena ----

    def get(self, duel_id):
        with self._lock:
            return self.sessions.get(duel_id)

    def active_duel_for(self, player_id):
        with self._lock:
            return self.player_to_duel.get(player_id)

    def dispatch(self, session, fn, *args):
        """Run a timer callback for ``session`` unless it was released."""
        with self._lock:
            if session.released:
                log.debug(f"[timer-abort] duel={session.id} released")
                return None
            return fn(*args)

    def _get_or_load(self, duel_id):
        with self._lock:
            session = self.sessions.get(duel_id)
        if session is not None:
            return session
        log.info(f"[duel-hydrate] duel={duel_id} not cached, loading")
        record = self.store.load_duel(duel_id)
        if record is None:
            raise NotFound('Duel not found')
        with self._lock:
            cached = self.sessions.get(duel_id)
            if cached is not None:
                log.info(f"[duel-hydrate] duel={duel_id} cached by another event while loading")
                return cached
            session = DuelSession(record, self)
            if record.status != FINISHED:
                self.sessions[duel_id] = session
            return session

    def refresh_opponent(self, duel_id):
        """Pick up an opponent who joined through the HTTP invite flow."""
        with self._lock:
            live = self.sessions.get(duel_id)
            if live is None or live.has_opponent:
                return
        record = self.store.load_duel(duel_id)
        if record is None or record.opponent_id is None:
            return
        with self._lock:
            live = self.sessions.get(duel_id)
            if live is None or live.has_opponent:
                return
            live.fill_opponent(record.opponent_id, record.opponent_name)
            if live.status not in (IN_PROGRESS, FINISHED):
                live.status = record.status
            log.info(f"[duel-opponent] duel={duel_id} opponent={record.opponent_id} status={live.status}")
            self.emitter.emit('duel:state', live.snapshot(), to=live.room)

    def release(self, session):
        session.released = True
        session.clear_timers()
        if self.sessions.get(session.id) is session:
            del self.sessions[session.id]
        for player in session.players():
            if self.player_to_duel.get(player.player_id) == session.id:
                del self.player_to_duel[player.player_id]

    def _leave_other_duel(self, player_id, duel_id):
        """Free the player's seat in any other live duel before a join.

        A duel already in progress keeps the player; the new join is refused.
        """
        current_id = self.player_to_duel.get(player_id)
        if current_id is None or current_id == duel_id:
            return
        current = self.sessions.get(current_id)
        if current is not None and current.status == IN_PROGRESS:
            log.info(f"[duel-join] duel={duel_id} player={player_id} busy in duel={current_id}")
            raise InvalidState('You are already playing another duel')
        del self.player_to_duel[player_id]
        if current is None:
            return
        seat = current.seat(player_id)
        old_sid = seat.sid if seat is not None else None
        current.disconnect(player_id)
        if old_sid is not None:
            self.emitter.leave_room(old_sid, current.room)
        log.info(f"[duel-leave] duel={current_id} player={player_id} moved to duel={duel_id}")

    # ---- client operations ----

    def join(self, duel_id, player_id, player_name, sid):
        session = self._get_or_load(duel_id)
        if session.seat(player_id) is None and not session.has_opponent:
            self.refresh_opponent(duel_id)

        with self._lock:
            session = self.sessions.get(duel_id, session)
            player = session.seat(player_id)
            if player is None:
                log.info(f"[duel-join] duel={duel_id} player={player_id} not a participant")
                raise NotAuthorized('You are not part of this duel')
            self._leave_other_duel(player_id, duel_id)
            player.sid = sid
            if session.status != FINISHED:
                self.player_to_duel[player_id] = duel_id
            self.emitter.enter_room(sid, session.room)
            log.info(f"[duel-join] duel={duel_id} player={player_id} name={player_name} sid={sid} status={session.status}")

            self.emitter.emit('duel:joined', {
                'duelId': duel_id,
                'state': session.snapshot(),
                'isRanked': session.is_ranked,
            }, to=sid)
            if session.status == IN_PROGRESS:
                self.emitter.emit('duel:playerReconnected', {
                    'playerId': player_id,
                    'playerName': player.display_name,
                }, to=session.room, skip_sid=sid)

            needs_questions = (
                session.both_connected
                and session.status == PENDING
                and not session.questions
                and not session.supplying
            )
            if needs_questions:
                session.supplying = True
        if needs_questions:
            log.info(f"[duel-autostart] duel={duel_id} both players joined, supplying questions")
            self._supply_and_begin(duel_id, expected_status=PENDING)
        return session

    def start(self, duel_id, caller_id):
        session = self._get_or_load(duel_id)
        with self._lock:
            session = self.sessions.get(duel_id, session)
            if session.creator.player_id != caller_id:
                raise NotAuthorized('Only the creator can start the duel')
            if session.status != READY or not session.has_opponent:
                raise InvalidState(f"Duel cannot be started from status {session.status}")
            if session.questions:
                session.begin()
                return session
            if session.supplying:
                return session
            session.supplying = True
        self._supply_and_begin(duel_id, expected_status=READY)
        return session

    def submit_answer(self, duel_id, player_id, question_index, answer_index):
        session = self._get_or_load(duel_id)
        with self._lock:
            session = self.sessions.get(duel_id, session)
            return session.submit_answer(player_id, question_index, answer_index)

    def sync(self, duel_id, player_id, sid):
        session = self._get_or_load(duel_id)
        with self._lock:
            session = self.sessions.get(duel_id, session)
            if session.seat(player_id) is None:
                raise NotAuthorized('You are not part of this duel')
            state = session.snapshot()
            self.emitter.emit('duel:state', state, to=sid)
            return state

    def disconnect(self, player_id, sid=None):
        with self._lock:
            duel_id = self.player_to_duel.get(player_id)
            session = self.sessions.get(duel_id) if duel_id else None
            if session is None:
                return False
            return session.disconnect(player_id, sid)

    # ---- collaborators ----

    def _supply_and_begin(self, duel_id, expected_status):
        with self._lock:
            session = self.sessions.get(duel_id)
            if session is None:
                return
            request = (session.topic, session.questions_count, session.language, session.difficulty, session.is_ranked)
            room = session.room

        try:
            pack = self.supplier.supply(*request)
            if not pack.questions:
                raise LookupError('question supplier returned an empty pack')
            self.store.save_pack(duel_id, pack)
            # Another process may have stored a pack first; the stored one wins
            record = self.store.load_duel(duel_id)
            questions = record.questions if record and record.questions else pack.questions
            seed = record.seed if record and record.questions else pack.seed
            commit_hash = record.commit_hash if record and record.questions else pack.commit_hash
        except Exception:
            log.exception(f"[duel-supply-failed] duel={duel_id}")
            with self._lock:
                live = self.sessions.get(duel_id)
                if live is session:
                    live.supplying = False
                error = UpstreamFailure('Failed to generate questions. Please try again.', code=GENERATION_FAILED)
                self.emitter.emit('error', error.to_payload(), to=room)
            return

        with self._lock:
            live = self.sessions.get(duel_id)
            if live is not session or live.status != expected_status or live.questions:
                log.info(f"[duel-supply-stale] duel={duel_id} session changed while supplying")
                return
            live.supplying = False
            live.load_pack(questions, seed, commit_hash)
            live.begin()

    def schedule_rating(self, room, summary):
        """Process ratings after the finish broadcast without blocking it."""
        self.scheduler.call_later(0, self._process_rating, room, summary, name=f"rating:{summary.duel_id}")

    def _process_rating(self, room, summary):
        try:
            creator, opponent = self.rating_engine.process_match(summary)
        except Exception:
            log.exception(f"[rating-failed] duel={summary.duel_id}")
            return
        self.emitter.emit('duel:ratingUpdated', {
            'duelId': summary.duel_id,
            'creator': creator.to_payload(),
            'opponent': opponent.to_payload(),
        }, to=room)
