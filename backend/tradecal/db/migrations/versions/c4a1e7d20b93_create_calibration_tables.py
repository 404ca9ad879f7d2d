"""Create trade event log and calibration state tables

Revision ID: c4a1e7d20b93
Revises:
Create Date: 2025-08-18 00:00:00.000000

- trade_offer_events / trade_outcome_events: append-only prediction log
- historical_trades: completed league trades used as ground truth
- trade_feedback: user ratings of AI trade grades
- calibration_states: one row of active calibration parameters per season
- job_leases: advisory single-flight leases for calibration jobs
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'c4a1e7d20b93'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create calibration tables."""

    op.create_table(
        'historical_trades',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('league_id', sa.String(), nullable=True),
        sa.Column('season', sa.Integer(), nullable=False),
        sa.Column('week', sa.Integer(), nullable=True),
        sa.Column('analyzed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('value_given', sa.Float(), nullable=True),
        sa.Column('value_received', sa.Float(), nullable=True),
        sa.Column('value_differential', sa.Float(), nullable=True),
        sa.Column('analysis_result', sa.JSON(), nullable=True),
        sa.Column('is_super_flex', sa.Boolean(), nullable=True),
        sa.Column('league_format', sa.String(), nullable=True),
        sa.Column('scoring_type', sa.String(), nullable=True),
        sa.Column('trade_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_historical_trades_season_analyzed',
                   'historical_trades', ['season', 'analyzed'], unique=False)

    op.create_table(
        'trade_offer_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('league_id', sa.String(), nullable=True),
        sa.Column('season', sa.Integer(), nullable=True),
        sa.Column('week', sa.Integer(), nullable=True),
        sa.Column('sender_user_id', sa.String(), nullable=True),
        sa.Column('opponent_user_id', sa.String(), nullable=True),
        sa.Column('assets_given', sa.JSON(), nullable=False),
        sa.Column('assets_received', sa.JSON(), nullable=False),
        sa.Column('features_json', sa.JSON(), nullable=True),
        sa.Column('accept_prob', sa.Float(), nullable=False, server_default='0'),
        sa.Column('calibrated_accept_prob', sa.Float(), nullable=True),
        sa.Column('intercept_used', sa.Float(), nullable=True),
        sa.Column('verdict', sa.String(), nullable=False, server_default='UNKNOWN'),
        sa.Column('grade', sa.String(), nullable=True),
        sa.Column('confidence_score', sa.Float(), nullable=True),
        sa.Column('mode', sa.String(), nullable=False),
        sa.Column('is_super_flex', sa.Boolean(), nullable=True),
        sa.Column('league_format', sa.String(), nullable=True),
        sa.Column('scoring_type', sa.String(), nullable=True),
        sa.Column('input_hash', sa.String(length=32), nullable=False),
        sa.Column('model_version', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('input_hash', name='uq_trade_offer_events_input_hash')
    )
    op.create_index('ix_trade_offer_events_season',
                   'trade_offer_events', ['season'], unique=False)
    op.create_index('ix_trade_offer_events_league_season',
                   'trade_offer_events', ['league_id', 'season'], unique=False)

    op.create_table(
        'trade_outcome_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('offer_event_id', sa.Integer(), nullable=True),
        sa.Column('league_id', sa.String(), nullable=True),
        sa.Column('season', sa.Integer(), nullable=True),
        sa.Column('week', sa.Integer(), nullable=True),
        sa.Column('outcome', sa.String(length=16), nullable=False),
        sa.Column('time_to_decision_min', sa.Integer(), nullable=True),
        sa.Column('league_trade_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.CheckConstraint("outcome IN ('ACCEPTED', 'REJECTED', 'EXPIRED', 'COUNTERED')",
                           name='ck_trade_outcome_events_outcome'),
        sa.ForeignKeyConstraint(['offer_event_id'], ['trade_offer_events.id']),
        sa.ForeignKeyConstraint(['league_trade_id'], ['historical_trades.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_trade_outcome_events_season',
                   'trade_outcome_events', ['season'], unique=False)
    op.create_index('ix_trade_outcome_events_league_trade',
                   'trade_outcome_events', ['league_trade_id'], unique=False)

    op.create_table(
        'trade_feedback',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('ai_grade', sa.Text(), nullable=True),
        sa.Column('you_give', sa.JSON(), nullable=True),
        sa.Column('you_receive', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.CheckConstraint('rating >= 1 AND rating <= 5', name='ck_trade_feedback_rating'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_trade_feedback_created_at',
                   'trade_feedback', ['created_at'], unique=False)

    op.create_table(
        'calibration_states',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('season', sa.Integer(), nullable=False),
        sa.Column('schema_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('intercept', sa.Float(), nullable=True),
        sa.Column('intercept_sample_size', sa.Integer(), nullable=True),
        sa.Column('intercept_calibrated_at', sa.DateTime(), nullable=True),
        sa.Column('calibration_history', sa.JSON(), nullable=True),
        sa.Column('feedback_adjustments', sa.JSON(), nullable=True),
        sa.Column('feedback_calibrated_at', sa.DateTime(), nullable=True),
        sa.Column('segment_intercepts', sa.JSON(), nullable=True),
        sa.Column('isotonic_map', sa.JSON(), nullable=True),
        sa.Column('isotonic_sample_size', sa.Integer(), nullable=True),
        sa.Column('isotonic_computed_at', sa.DateTime(), nullable=True),
        sa.Column('shadow_intercept', sa.Float(), nullable=True),
        sa.Column('shadow_sample_size', sa.Integer(), nullable=True),
        sa.Column('shadow_computed_at', sa.DateTime(), nullable=True),
        sa.Column('shadow_metrics', sa.JSON(), nullable=True),
        sa.Column('last_recalibration_at', sa.DateTime(), nullable=True),
        sa.Column('drift_report', sa.JSON(), nullable=True),
        sa.Column('drift_checked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('season', name='uq_calibration_states_season')
    )

    op.create_table(
        'job_leases',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('holder', sa.String(), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', name='uq_job_leases_name')
    )


def downgrade() -> None:
    """Drop calibration tables."""
    op.drop_table('job_leases')
    op.drop_table('calibration_states')

    op.drop_index('ix_trade_feedback_created_at', table_name='trade_feedback')
    op.drop_table('trade_feedback')

    op.drop_index('ix_trade_outcome_events_league_trade', table_name='trade_outcome_events')
    op.drop_index('ix_trade_outcome_events_season', table_name='trade_outcome_events')
    op.drop_table('trade_outcome_events')

    op.drop_index('ix_trade_offer_events_league_season', table_name='trade_offer_events')
    op.drop_index('ix_trade_offer_events_season', table_name='trade_offer_events')
    op.drop_table('trade_offer_events')

    op.drop_index('ix_historical_trades_season_analyzed', table_name='historical_trades')
    op.drop_table('historical_trades')
