"""create_attribution_engine_tables

Revision ID: a1f3c9e27b40
Revises:
Create Date: 2026-10-18

Touchpoint log, model registry, accuracy history, experiments and alerts.
Customer journeys are derived from touchpoints and have no table.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1f3c9e27b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the attribution engine tables."""
    op.create_table(
        'attribution_touchpoints',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('seq', sa.Integer(), index=True),

        # Customer identification
        sa.Column('customer_id', sa.String(), nullable=False, index=True),
        sa.Column('customer_segment', sa.String(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),

        # Touchpoint details
        sa.Column('timestamp', sa.DateTime(), nullable=False, index=True),
        sa.Column('touch_type', sa.String()),
        sa.Column('is_conversion', sa.Boolean(), default=False),
        sa.Column('touch_value', sa.Float(), default=0.0),
        sa.Column('cost', sa.Float(), default=0.0),

        # Channel
        sa.Column('channel_id', sa.String(), nullable=False, index=True),
        sa.Column('channel_name', sa.String()),
        sa.Column('platform', sa.String(), index=True),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),

        # Device/context
        sa.Column('device_type', sa.String(), nullable=True),
        sa.Column('touch_metadata', sa.JSON(), nullable=True),

        sa.Column('created_at', sa.DateTime()),
    )

    op.create_table(
        'attribution_models',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('type', sa.String()),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('params', sa.JSON(), nullable=True),

        # Quality metrics (0-1)
        sa.Column('accuracy', sa.Float(), default=0.0),
        sa.Column('precision', sa.Float(), default=0.0),
        sa.Column('recall', sa.Float(), default=0.0),
        sa.Column('f1_score', sa.Float(), default=0.0),

        # Training metadata
        sa.Column('training_journeys', sa.Integer(), default=0),
        sa.Column('training_start', sa.DateTime(), nullable=True),
        sa.Column('training_end', sa.DateTime(), nullable=True),
        sa.Column('features', sa.JSON(), nullable=True),
        sa.Column('last_trained', sa.DateTime(), nullable=True),

        sa.Column('status', sa.String(), default='ready'),
        sa.Column('version', sa.String(), default='1.0.0'),
        sa.Column('is_active', sa.Boolean(), default=False, index=True),

        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )

    op.create_table(
        'model_accuracy_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('model_id', sa.String(), nullable=False, index=True),
        sa.Column('accuracy', sa.Float(), nullable=False),
        sa.Column('journeys', sa.Integer(), default=0),
        sa.Column('source', sa.String(), default='monitor'),
        sa.Column('recorded_at', sa.DateTime(), index=True),
    )

    op.create_table(
        'attribution_experiments',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), default='draft', index=True),

        sa.Column('control_model', sa.String(), nullable=False),
        sa.Column('treatment_model', sa.String(), nullable=False),
        sa.Column('traffic_split', sa.Float(), nullable=False),

        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),

        # Latest snapshot
        sa.Column('control_accuracy', sa.Float(), default=0.0),
        sa.Column('control_revenue', sa.Float(), default=0.0),
        sa.Column('control_conversions', sa.Integer(), default=0),
        sa.Column('treatment_accuracy', sa.Float(), default=0.0),
        sa.Column('treatment_revenue', sa.Float(), default=0.0),
        sa.Column('treatment_conversions', sa.Integer(), default=0),
        sa.Column('lift', sa.Float(), default=0.0),
        sa.Column('significance', sa.Float(), default=0.0),
        sa.Column('confidence', sa.Float(), default=0.0),
        sa.Column('evaluations', sa.Integer(), default=0),

        sa.Column('winner', sa.String(), nullable=True),
        sa.Column('conclusion', sa.Text(), nullable=True),

        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )

    op.create_table(
        'experiment_metric_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('experiment_id', sa.String(), nullable=False, index=True),
        sa.Column('recorded_at', sa.DateTime(), index=True),

        sa.Column('control_accuracy', sa.Float(), default=0.0),
        sa.Column('control_revenue', sa.Float(), default=0.0),
        sa.Column('control_conversions', sa.Integer(), default=0),
        sa.Column('control_journeys', sa.Integer(), default=0),
        sa.Column('treatment_accuracy', sa.Float(), default=0.0),
        sa.Column('treatment_revenue', sa.Float(), default=0.0),
        sa.Column('treatment_conversions', sa.Integer(), default=0),
        sa.Column('treatment_journeys', sa.Integer(), default=0),

        sa.Column('lift', sa.Float(), default=0.0),
        sa.Column('significance', sa.Float(), default=0.0),
        sa.Column('confidence', sa.Float(), default=0.0),
    )

    op.create_table(
        'attribution_alerts',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('timestamp', sa.DateTime(), index=True),
        sa.Column('type', sa.String(), nullable=False, index=True),
        sa.Column('severity', sa.String(), nullable=False, index=True),

        sa.Column('title', sa.String()),
        sa.Column('description', sa.Text()),
        sa.Column('affected_channels', sa.JSON()),

        # Metrics
        sa.Column('metric_before', sa.Float()),
        sa.Column('metric_after', sa.Float()),
        sa.Column('metric_change', sa.Float()),
        sa.Column('metric_threshold', sa.Float()),

        sa.Column('recommendations', sa.JSON()),
        sa.Column('action_required', sa.Boolean(), default=True),
        sa.Column('auto_resolve', sa.Boolean(), default=False),
        sa.Column('fingerprint', sa.String(), index=True),

        sa.Column('resolved', sa.Boolean(), default=False, index=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    """Drop the attribution engine tables."""
    op.drop_table('attribution_alerts')
    op.drop_table('experiment_metric_snapshots')
    op.drop_table('attribution_experiments')
    op.drop_table('model_accuracy_history')
    op.drop_table('attribution_models')
    op.drop_table('attribution_touchpoints')
