"""
create habit_routines and habit_logs

Revision ID: 20261019_create_habit_tables
Revises: 
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_create_habit_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'habit_routines',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=80), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('recurrence', sa.String(length=20), nullable=False),
        sa.Column('days_of_week', sa.JSON(), nullable=True),
        sa.Column('time_start', sa.Time(), nullable=False),
        sa.Column('time_end', sa.Time(), nullable=True),
        sa.Column('schedule_timezone', sa.String(length=64), nullable=False),
        sa.Column('tolerance_minutes', sa.Integer(), nullable=False),
        sa.Column('auto_complete_by_session', sa.Boolean(), nullable=False),
        sa.Column('min_session_minutes', sa.Integer(), nullable=False),
        sa.Column('decay_protection', sa.Boolean(), nullable=False),
        sa.Column('target_consistency_percent', sa.Integer(), nullable=False),
        sa.Column('difficulty', sa.Integer(), nullable=False),
        sa.Column('current_streak', sa.Integer(), nullable=False),
        sa.Column('longest_streak', sa.Integer(), nullable=False),
        sa.Column('protection_used', sa.Boolean(), nullable=False),
        sa.Column('last_log_date', sa.Date(), nullable=True),
        sa.Column('xp_on_complete', sa.Integer(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_habit_routines_user_id', 'habit_routines', ['user_id'])
    op.create_index('ix_habit_routines_status', 'habit_routines', ['status'])
    op.create_index('ix_habit_routines_user_status', 'habit_routines', ['user_id', 'status'])
    op.create_index('ix_habit_routines_user_time_start', 'habit_routines', ['user_id', 'time_start'])

    op.create_table(
        'habit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('routine_id', sa.Integer(), sa.ForeignKey('habit_routines.id'), nullable=False),
        sa.Column('log_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lateness_minutes', sa.Integer(), nullable=False),
        sa.Column('resistance_snapshot', sa.Integer(), nullable=False),
        sa.Column('streak_after', sa.Integer(), nullable=False),
        sa.Column('auto_captured', sa.Boolean(), nullable=False),
        sa.Column('source', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'routine_id', 'log_date', name='uq_habit_logs_user_routine_day'),
    )
    op.create_index('ix_habit_logs_user_id', 'habit_logs', ['user_id'])
    op.create_index('ix_habit_logs_routine_id', 'habit_logs', ['routine_id'])
    op.create_index('ix_habit_logs_log_date', 'habit_logs', ['log_date'])
    op.create_index('ix_habit_logs_user_date', 'habit_logs', ['user_id', 'log_date'])


def downgrade() -> None:
    op.drop_index('ix_habit_logs_user_date', table_name='habit_logs')
    op.drop_index('ix_habit_logs_log_date', table_name='habit_logs')
    op.drop_index('ix_habit_logs_routine_id', table_name='habit_logs')
    op.drop_index('ix_habit_logs_user_id', table_name='habit_logs')
    op.drop_table('habit_logs')
    op.drop_index('ix_habit_routines_user_time_start', table_name='habit_routines')
    op.drop_index('ix_habit_routines_user_status', table_name='habit_routines')
    op.drop_index('ix_habit_routines_status', table_name='habit_routines')
    op.drop_index('ix_habit_routines_user_id', table_name='habit_routines')
    op.drop_table('habit_routines')
