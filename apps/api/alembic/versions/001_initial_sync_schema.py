"""initial sync schema: members, activities, challenges

Revision ID: 001
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'member',
        sa.Column('athlete_id', sa.String(32), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('profile_json', sa.Text(), nullable=True),
        sa.Column('strava_access_token', sa.Text(), nullable=True),
        sa.Column('strava_refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_authorized', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'activity',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('strava_activity_id', sa.BigInteger(), nullable=False),
        sa.Column('athlete_id', sa.String(32), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('activity_type', sa.Text(), nullable=False),
        sa.Column('distance_m', sa.Float(), server_default='0', nullable=False),
        sa.Column('moving_time_s', sa.Integer(), server_default='0', nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('visibility', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('strava_activity_id', name='uq_activity_strava_activity_id'),
    )
    op.create_index('ix_activity_athlete_id', 'activity', ['athlete_id'])
    op.create_index('ix_activity_start_date', 'activity', ['start_date'])
    op.create_index('ix_activity_athlete_start', 'activity', ['athlete_id', 'start_date'])

    op.create_table(
        'challenge',
        sa.Column('challenge_id', sa.String(64), primary_key=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('challenge_type', sa.Text(), server_default='INDIVIDUAL', nullable=False),
        sa.Column('status', sa.Text(), server_default='Active', nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('target_value', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'challenge_participant',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('challenge_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(32), nullable=False),
        sa.Column('progress', sa.Float(), server_default='0', nullable=False),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('challenge_id', 'user_id', name='uq_challenge_participant'),
    )
    op.create_index('ix_challenge_participant_challenge_id', 'challenge_participant', ['challenge_id'])


def downgrade() -> None:
    op.drop_table('challenge_participant')
    op.drop_table('challenge')
    op.drop_index('ix_activity_athlete_start', table_name='activity')
    op.drop_index('ix_activity_start_date', table_name='activity')
    op.drop_index('ix_activity_athlete_id', table_name='activity')
    op.drop_table('activity')
    op.drop_table('member')
