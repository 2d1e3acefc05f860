"""initial adventure schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-09-02 00:00:00.000000

Creates the canonical adventure tables:
- adventure_progress: one row per (user, world)
- adventure_paths: generated node graph per (user, world)
- adventure_node_completions: completed-node set (at-most-once guard)
- adventure_xp_credits: XP reward ledger
- adventure_boss_wins: boss-completion history

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'adventure_progress',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('world_number', sa.Integer(), nullable=False),
        sa.Column('world_status', sa.String(), nullable=False, server_default='locked'),
        sa.Column('current_position', sa.String(), nullable=False, server_default='level_1'),
        sa.Column('levels_completed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_levels', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_xp_earned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('mini_boss_defeated', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('boss_defeated', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_adventure_progress')),
        sa.UniqueConstraint('user_id', 'world_number', name='uq_adventure_progress_user_world'),
    )
    op.create_index(op.f('ix_adventure_progress_user_id'), 'adventure_progress', ['user_id'])

    op.create_table(
        'adventure_paths',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('world_number', sa.Integer(), nullable=False),
        sa.Column('nodes', sa.JSON(), nullable=False),
        sa.Column('start_node', sa.String(), nullable=False),
        sa.Column('total_levels', sa.Integer(), nullable=False),
        sa.Column('mini_boss_position', sa.Integer(), nullable=True),
        sa.Column('generator', sa.String(), nullable=False, server_default='scaled'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_adventure_paths')),
        sa.UniqueConstraint('user_id', 'world_number', name='uq_adventure_paths_user_world'),
    )
    op.create_index(op.f('ix_adventure_paths_user_id'), 'adventure_paths', ['user_id'])

    op.create_table(
        'adventure_node_completions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('world_number', sa.Integer(), nullable=False),
        sa.Column('position_key', sa.String(), nullable=False),
        sa.Column('node_type', sa.String(), nullable=False),
        sa.Column('reward_xp', sa.Integer(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_adventure_node_completions')),
        sa.UniqueConstraint(
            'user_id', 'world_number', 'position_key', name='uq_adventure_node_completions_node'
        ),
    )
    op.create_index(
        op.f('ix_adventure_node_completions_user_id'), 'adventure_node_completions', ['user_id']
    )

    op.create_table(
        'adventure_xp_credits',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('completion_key', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('world_number', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('credited_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_adventure_xp_credits')),
        sa.UniqueConstraint('completion_key', name=op.f('uq_adventure_xp_credits_completion_key')),
    )
    op.create_index(op.f('ix_adventure_xp_credits_user_id'), 'adventure_xp_credits', ['user_id'])

    op.create_table(
        'adventure_boss_wins',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('world_number', sa.Integer(), nullable=False),
        sa.Column('boss_type', sa.String(), nullable=False),
        sa.Column('boss_name', sa.String(), nullable=False),
        sa.Column('xp_earned', sa.Integer(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_adventure_boss_wins')),
    )
    op.create_index(op.f('ix_adventure_boss_wins_user_id'), 'adventure_boss_wins', ['user_id'])


def downgrade() -> None:
    op.drop_index(op.f('ix_adventure_boss_wins_user_id'), table_name='adventure_boss_wins')
    op.drop_table('adventure_boss_wins')
    op.drop_index(op.f('ix_adventure_xp_credits_user_id'), table_name='adventure_xp_credits')
    op.drop_table('adventure_xp_credits')
    op.drop_index(op.f('ix_adventure_node_completions_user_id'), table_name='adventure_node_completions')
    op.drop_table('adventure_node_completions')
    op.drop_index(op.f('ix_adventure_paths_user_id'), table_name='adventure_paths')
    op.drop_table('adventure_paths')
    op.drop_index(op.f('ix_adventure_progress_user_id'), table_name='adventure_progress')
    op.drop_table('adventure_progress')
