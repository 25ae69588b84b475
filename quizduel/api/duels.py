from flask import Blueprint, current_app, g, jsonify, request
from quizduel import db
from quizduel.auth import require_token
from quizduel.models import Duel

duels = Blueprint('duels', __name__)

QUESTION_COUNTS = (10, 20, 30)
DIFFICULTIES = ('easy', 'medium', 'hard')
MAX_TOPIC_LENGTH = 200


def _languages():
    return [l.strip() for l in str(current_app.config.get('SUPPORTED_LANGUAGES', 'ru,en')).split(',') if l.strip()]


def _summary(duel):
    payload = duel.to_dict()
    payload['creatorName'] = duel.creator.display_name(1) if duel.creator else None
    payload['opponentName'] = duel.opponent.display_name(2) if duel.opponent else None
    return payload


@duels.route('/create', methods=['POST'])
@require_token
def create_duel():
    data = request.get_json(silent=True) or {}
    topic = (data.get('topic') or '').strip()
    if not topic or len(topic) > MAX_TOPIC_LENGTH:
        return jsonify({'error': f'topic must be 1-{MAX_TOPIC_LENGTH} characters'}), 400
    try:
        questions_count = int(data.get('questionsCount', 10))
    except (TypeError, ValueError):
        questions_count = None
    if questions_count not in QUESTION_COUNTS:
        return jsonify({'error': 'questionsCount must be one of 10, 20, 30'}), 400
    language = data.get('language') or g.identity.get('language') or 'ru'
    if language not in _languages():
        return jsonify({'error': f'Unsupported language {language}'}), 400
    difficulty = data.get('difficulty') or 'medium'
    if difficulty not in DIFFICULTIES:
        return jsonify({'error': 'difficulty must be easy, medium or hard'}), 400

    store = current_app.extensions['quizduel.duels'].store
    duel_id = store.create_duel(
        creator_id=g.identity['userId'],
        topic=topic,
        language=language,
        questions_count=questions_count,
        difficulty=difficulty,
    )
    current_app.logger.info(f"[duel-create] duel={duel_id} creator={g.identity['userId']} topic={topic!r}")
    return jsonify({'duelId': duel_id, 'status': 'waiting'}), 201


@duels.route('/<string:duel_id>/join', methods=['POST'])
@require_token
def join_duel(duel_id):
    user_id = g.identity['userId']
    duel = db.session.get(Duel, duel_id)
    if duel is None:
        return jsonify({'error': 'Duel not found'}), 404
    if duel.creator_id == user_id:
        return jsonify({'duelId': duel.id, 'role': 'creator', 'status': duel.status})
    if duel.opponent_id == user_id:
        return jsonify({'duelId': duel.id, 'role': 'opponent', 'status': duel.status})
    if duel.status != 'waiting':
        return jsonify({'error': 'This duel is not open for joining'}), 409
    if duel.opponent_id is not None:
        return jsonify({'error': 'This duel already has an opponent'}), 409

    registry = current_app.extensions['quizduel.duels']
    registry.store.set_opponent(duel.id, user_id)
    registry.refresh_opponent(duel.id)
    current_app.logger.info(f"[duel-invite-join] duel={duel.id} opponent={user_id}")
    return jsonify({'duelId': duel.id, 'role': 'opponent', 'status': 'ready'})


@duels.route('/<string:duel_id>', methods=['GET'])
def get_duel(duel_id):
    duel = db.session.get(Duel, duel_id)
    if duel is None:
        return jsonify({'error': 'Duel not found'}), 404
    return jsonify(_summary(duel))
