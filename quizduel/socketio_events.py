from flask_socketio import emit
from flask import current_app, request
from quizduel import socketio
from quizduel.auth import verify_token
from quizduel.errors import DuelError, INTERNAL_ERROR, UNAUTHORIZED, NotAuthorized, NotFound
from quizduel.services.duels.emitter import NAMESPACE
from functools import wraps
from typing import Dict, Any
import logging

log = logging.getLogger(__name__)

# Identity resolved for each connected socket
_sid_to_ctx: Dict[str, Dict[str, Any]] = {}


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _registry():
    return current_app.extensions['quizduel.duels']


def _matchmaking():
    return current_app.extensions['quizduel.matchmaking']


def _reports_errors(handler):
    """Report failures to the calling socket only; never raise into Socket.IO."""
    @wraps(handler)
    def wrapper(data=None):
        try:
            return handler(data or {})
        except DuelError as exc:
            log.info(f"[ws-error] event={handler.__name__} sid={_get_sid()} code={exc.code} message={exc.message}")
            emit('error', exc.to_payload())
        except Exception:
            log.exception(f"[ws-error] event={handler.__name__} sid={_get_sid()}")
            emit('error', {'code': INTERNAL_ERROR, 'message': 'Internal server error'})
    return wrapper


def _ctx_from(identity):
    return {
        'user_id': identity['userId'],
        'name': identity.get('firstName') or identity.get('username') or 'Player',
        'language': identity.get('language'),
    }


def _identify(data):
    """Resolve the caller from a token in the payload, or from an earlier one."""
    token = data.get('token')
    if token:
        identity = verify_token(token)
        if identity is None:
            raise NotAuthorized('Invalid token', code=UNAUTHORIZED)
        ctx = _sid_to_ctx[_get_sid()] = _ctx_from(identity)
        return ctx
    ctx = _sid_to_ctx.get(_get_sid())
    if ctx is None:
        raise NotAuthorized('Authentication required', code=UNAUTHORIZED)
    return ctx


def _duel_id(data):
    duel_id = data.get('duelId')
    if not duel_id or not isinstance(duel_id, str):
        raise NotFound('duelId is required')
    return duel_id


def handle_connect(auth=None):
    # Clients may authenticate once at connect time instead of on every join
    token = (auth or {}).get('token') if isinstance(auth, dict) else None
    if token:
        identity = verify_token(token)
        if identity is not None:
            _sid_to_ctx[_get_sid()] = _ctx_from(identity)
    emit('connected', {'message': f'Connected to {NAMESPACE}'})


def handle_disconnect(*args):
    sid = _get_sid()
    ctx = _sid_to_ctx.pop(sid, None)
    _matchmaking().on_disconnect(sid)
    if ctx:
        _registry().disconnect(ctx['user_id'], sid)


@_reports_errors
def handle_duel_join(data):
    ctx = _identify(data)
    _registry().join(_duel_id(data), ctx['user_id'], ctx['name'], _get_sid())


@_reports_errors
def handle_duel_start(data):
    ctx = _identify(data)
    _registry().start(_duel_id(data), ctx['user_id'])


@_reports_errors
def handle_duel_answer(data):
    ctx = _identify(data)
    _registry().submit_answer(
        _duel_id(data),
        ctx['user_id'],
        data.get('questionIndex'),
        data.get('answerIndex'),
    )


@_reports_errors
def handle_duel_sync(data):
    ctx = _identify(data)
    _registry().sync(_duel_id(data), ctx['user_id'], _get_sid())


@_reports_errors
def handle_mm_join(data):
    ctx = _identify(data)
    language = data.get('language') or ctx.get('language') or 'ru'
    _matchmaking().enqueue(ctx['user_id'], ctx['name'], language, _get_sid())


@_reports_errors
def handle_mm_cancel(data):
    ctx = _identify(data)
    if _matchmaking().cancel(ctx['user_id']):
        emit('mm:status', {'state': 'cancelled'})


def handle_ping(data=None):
    emit('pong', data or {})


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on the '/ws' namespace."""
    socketio.on_event('connect', handle_connect, namespace=NAMESPACE)
    socketio.on_event('disconnect', handle_disconnect, namespace=NAMESPACE)
    socketio.on_event('duel:join', handle_duel_join, namespace=NAMESPACE)
    socketio.on_event('duel:start', handle_duel_start, namespace=NAMESPACE)
    socketio.on_event('duel:answer', handle_duel_answer, namespace=NAMESPACE)
    socketio.on_event('duel:sync', handle_duel_sync, namespace=NAMESPACE)
    socketio.on_event('mm:join', handle_mm_join, namespace=NAMESPACE)
    socketio.on_event('mm:cancel', handle_mm_cancel, namespace=NAMESPACE)
    socketio.on_event('ping', handle_ping, namespace=NAMESPACE)
