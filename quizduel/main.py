from flask import Blueprint, current_app, g, jsonify
from quizduel.auth import require_token
from quizduel.services.duels.rating import league_name

main = Blueprint('main', __name__)


@main.route('/')
def index():
    return jsonify({'service': 'quizduel', 'realtime': '/ws'})


@main.route('/health')
def health():
    registry = current_app.extensions['quizduel.duels']
    queue = current_app.extensions['quizduel.matchmaking']
    return jsonify({
        'status': 'ok',
        'activeDuels': len(registry.sessions),
        'queued': queue.size(),
    })


@main.route('/api/rating')
@require_token
def get_rating():
    # New players see the defaults; the row is created on their first rated match
    rating = current_app.extensions['quizduel.duels'].store.get_rating(g.identity['userId'])
    return jsonify({
        'userId': rating.user_id,
        'sr': rating.sr,
        'rd': rating.rd,
        'gamesPlayed': rating.games_played,
        'leagueName': league_name(rating.sr),
    })
