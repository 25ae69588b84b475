"""create users, duels, packs, answers, ratings, match results, question bank

Revision ID: 3c7a9d1e5b20
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c7a9d1e5b20'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('first_name', sa.String(length=64), nullable=False, server_default=''),
        sa.Column('username', sa.String(length=64), nullable=True),
        sa.Column('language', sa.String(length=8), nullable=False, server_default='en'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username'),
    )
    op.create_index('ix_user_username', 'user', ['username'])

    op.create_table(
        'duel',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('topic', sa.String(length=200), nullable=False),
        sa.Column('language', sa.String(length=8), nullable=False),
        sa.Column('difficulty', sa.String(length=16), nullable=False),
        sa.Column('questions_count', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('is_ranked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('creator_id', sa.Integer(), nullable=False),
        sa.Column('opponent_id', sa.Integer(), nullable=True),
        sa.Column('winner_id', sa.Integer(), nullable=True),
        sa.Column('creator_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('opponent_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['creator_id'], ['user.id']),
        sa.ForeignKeyConstraint(['opponent_id'], ['user.id']),
        sa.ForeignKeyConstraint(['winner_id'], ['user.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_duel_creator_id', 'duel', ['creator_id'])
    op.create_index('ix_duel_opponent_id', 'duel', ['opponent_id'])

    op.create_table(
        'duel_pack',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('duel_id', sa.String(length=32), nullable=False),
        sa.Column('questions', sa.Text(), nullable=False),
        sa.Column('seed', sa.String(length=64), nullable=False),
        sa.Column('commit_hash', sa.String(length=64), nullable=False),
        sa.ForeignKeyConstraint(['duel_id'], ['duel.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('duel_id'),
    )

    op.create_table(
        'duel_answer',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('duel_id', sa.String(length=32), nullable=False),
        sa.Column('player_id', sa.Integer(), nullable=False),
        sa.Column('question_index', sa.Integer(), nullable=False),
        sa.Column('answer_index', sa.Integer(), nullable=True),
        sa.Column('is_correct', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('response_time_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('answered_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['duel_id'], ['duel.id']),
        sa.ForeignKeyConstraint(['player_id'], ['user.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_duel_answer_duel_id', 'duel_answer', ['duel_id'])

    op.create_table(
        'user_rating',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('sr', sa.Integer(), nullable=False),
        sa.Column('rd', sa.Integer(), nullable=False),
        sa.Column('games_played', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['user_id'], ['user.id']),
        sa.PrimaryKeyConstraint('user_id'),
    )

    op.create_table(
        'match_result',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('duel_id', sa.String(length=32), nullable=False),
        sa.Column('creator_id', sa.Integer(), nullable=False),
        sa.Column('opponent_id', sa.Integer(), nullable=False),
        sa.Column('is_ranked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('topic_norm', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('total_questions', sa.Integer(), nullable=False),
        sa.Column('creator_correct_count', sa.Integer(), nullable=False),
        sa.Column('creator_faster_count', sa.Integer(), nullable=False),
        sa.Column('creator_sr_before', sa.Integer(), nullable=False),
        sa.Column('creator_sr_after', sa.Integer(), nullable=False),
        sa.Column('creator_delta', sa.Integer(), nullable=False),
        sa.Column('opponent_correct_count', sa.Integer(), nullable=False),
        sa.Column('opponent_faster_count', sa.Integer(), nullable=False),
        sa.Column('opponent_sr_before', sa.Integer(), nullable=False),
        sa.Column('opponent_sr_after', sa.Integer(), nullable=False),
        sa.Column('opponent_delta', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['duel_id'], ['duel.id']),
        sa.ForeignKeyConstraint(['creator_id'], ['user.id']),
        sa.ForeignKeyConstraint(['opponent_id'], ['user.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('duel_id'),
    )
    op.create_index('ix_match_result_creator_id', 'match_result', ['creator_id'])
    op.create_index('ix_match_result_opponent_id', 'match_result', ['opponent_id'])
    op.create_index('ix_match_result_created_at', 'match_result', ['created_at'])

    op.create_table(
        'bank_question',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('topic_norm', sa.String(length=200), nullable=False),
        sa.Column('language', sa.String(length=8), nullable=False),
        sa.Column('difficulty', sa.String(length=16), nullable=False, server_default='medium'),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('options', sa.Text(), nullable=False),
        sa.Column('correct_index', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_bank_question_topic_norm', 'bank_question', ['topic_norm'])
    op.create_index('ix_bank_question_language', 'bank_question', ['language'])


def downgrade():
    op.drop_index('ix_bank_question_language', table_name='bank_question')
    op.drop_index('ix_bank_question_topic_norm', table_name='bank_question')
    op.drop_table('bank_question')
    op.drop_index('ix_match_result_created_at', table_name='match_result')
    op.drop_index('ix_match_result_opponent_id', table_name='match_result')
    op.drop_index('ix_match_result_creator_id', table_name='match_result')
    op.drop_table('match_result')
    op.drop_table('user_rating')
    op.drop_index('ix_duel_answer_duel_id', table_name='duel_answer')
    op.drop_table('duel_answer')
    op.drop_table('duel_pack')
    op.drop_index('ix_duel_opponent_id', table_name='duel')
    op.drop_index('ix_duel_creator_id', table_name='duel')
    op.drop_table('duel')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
