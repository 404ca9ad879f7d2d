"""Add narrative validation log, daily model metrics and offer health columns

Revision ID: e2d9b4a61f07
Revises: c4a1e7d20b93
Create Date: 2025-09-02 00:00:00.000000

- trade_offer_events: confidence label, narrative/driver validity, drivers
- narrative_validation_logs: one row per explanation validation
- model_metrics_daily: per day/mode/segment model health rollup
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'e2d9b4a61f07'
down_revision: Union[str, Sequence[str], None] = 'c4a1e7d20b93'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add model health tables and offer columns."""
    op.add_column('trade_offer_events', sa.Column('confidence_label', sa.String(), nullable=True))
    op.add_column('trade_offer_events', sa.Column('narrative_valid', sa.Boolean(), nullable=True))
    op.add_column('trade_offer_events', sa.Column('driver_set_complete', sa.Boolean(), nullable=True))
    op.add_column('trade_offer_events', sa.Column('drivers_json', sa.JSON(), nullable=True))
    op.create_index('ix_trade_offer_events_mode_created',
                   'trade_offer_events', ['mode', 'created_at'], unique=False)

    op.create_table(
        'narrative_validation_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('offer_event_id', sa.Integer(), nullable=True),
        sa.Column('mode', sa.String(), nullable=True),
        sa.Column('valid', sa.Boolean(), nullable=False),
        sa.Column('violations', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.ForeignKeyConstraint(['offer_event_id'], ['trade_offer_events.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_narrative_validation_logs_created_at',
                   'narrative_validation_logs', ['created_at'], unique=False)

    op.create_table(
        'model_metrics_daily',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('mode', sa.String(), nullable=False),
        sa.Column('segment_key', sa.String(), nullable=False),
        sa.Column('n_offers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('n_labeled', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('n_accepted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('mean_pred', sa.Float(), nullable=False, server_default='0'),
        sa.Column('mean_obs', sa.Float(), nullable=False, server_default='0'),
        sa.Column('ece', sa.Float(), nullable=False, server_default='0'),
        sa.Column('brier', sa.Float(), nullable=False, server_default='0'),
        sa.Column('auc', sa.Float(), nullable=True),
        sa.Column('psi_json', sa.JSON(), nullable=True),
        sa.Column('cap_rate_json', sa.JSON(), nullable=True),
        sa.Column('bucket_stats_json', sa.JSON(), nullable=True),
        sa.Column('narrative_fail_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('day', 'mode', 'segment_key', name='uq_model_metrics_daily_key')
    )
    op.create_index('ix_model_metrics_daily_day', 'model_metrics_daily', ['day'], unique=False)


def downgrade() -> None:
    """Drop model health tables and offer columns."""
    op.drop_index('ix_model_metrics_daily_day', table_name='model_metrics_daily')
    op.drop_table('model_metrics_daily')

    op.drop_index('ix_narrative_validation_logs_created_at', table_name='narrative_validation_logs')
    op.drop_table('narrative_validation_logs')

    op.drop_index('ix_trade_offer_events_mode_created', table_name='trade_offer_events')
    op.drop_column('trade_offer_events', 'drivers_json')
    op.drop_column('trade_offer_events', 'driver_set_complete')
    op.drop_column('trade_offer_events', 'narrative_valid')
    op.drop_column('trade_offer_events', 'confidence_label')
