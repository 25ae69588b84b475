from functools import wraps

from flask import current_app, g, jsonify, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

_SALT = 'quizduel-auth'


def _serializer():
    return URLSafeTimedSerializer(current_app.config['SECRET_KEY'], salt=_SALT)


def issue_token(user):
    """Sign the identity the realtime server needs for a user."""
    return _serializer().dumps({
        'userId': user.id,
        'firstName': user.display_name(),
        'username': user.username,
        'language': user.language,
    })


def verify_token(token):
    if not token:
        return None
    max_age = int(current_app.config.get('TOKEN_MAX_AGE_SEC', 7 * 24 * 3600))
    try:
        payload = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        current_app.logger.info("[auth] token expired")
        return None
    except BadSignature:
        return None
    if not isinstance(payload, dict) or 'userId' not in payload:
        return None
    return payload


def token_from_header(header_value):
    if not header_value:
        return None
    scheme, _, token = header_value.partition(' ')
    if scheme.lower() != 'bearer' or not token:
        return None
    return token.strip()


def require_token(view):
    """Resolve ``Authorization: Bearer`` into ``g.identity`` or answer 401."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        identity = verify_token(token_from_header(request.headers.get('Authorization')))
        if identity is None:
            return jsonify({'error': 'Unauthorized'}), 401
        g.identity = identity
        return view(*args, **kwargs)
    return wrapped
