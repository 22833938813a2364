"""initial schema

Revision ID: a3f1c2d4e5b6
Revises:
Create Date: 2025-11-09 14:45:29.000000

Creates the alerting core tables: incidents, alerts with their throttle
gate claims, and the remediation rule and execution tables.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'a3f1c2d4e5b6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'incidents',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('correlation_key', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('first_detected_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('alert_count', sa.Integer(), nullable=False),
        sa.Column('confidence_score', sa.Integer(), nullable=False),
        sa.Column('correlation_reason', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('correlation_key'),
    )
    op.create_index(op.f('ix_incidents_status'), 'incidents', ['status'], unique=False)

    op.create_table(
        'alerts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('alert_key', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('acknowledged_by', sa.String(), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('correlation_id', sa.Uuid(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['correlation_id'], ['incidents.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('alert_key'),
    )
    op.create_index(op.f('ix_alerts_status'), 'alerts', ['status'], unique=False)
    op.create_index(op.f('ix_alerts_correlation_id'), 'alerts', ['correlation_id'], unique=False)
    op.create_index('ix_alerts_type_created_at', 'alerts', ['type', 'created_at'], unique=False)

    # One row per throttle slot, e.g. gate_key = 'throttle:JobFailure'
    op.create_table(
        'alert_gate_claims',
        sa.Column('gate_key', sa.String(), nullable=False),
        sa.Column('alert_id', sa.Uuid(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('gate_key'),
    )
    op.create_index(op.f('ix_alert_gate_claims_alert_id'), 'alert_gate_claims', ['alert_id'], unique=False)

    op.create_table(
        'remediation_rules',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('trigger_conditions', sa.JSON(), nullable=False),
        sa.Column('actions', sa.JSON(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('cooldown_minutes', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('timeout_seconds', sa.Integer(), nullable=False),
        sa.Column('requires_confirmation', sa.Boolean(), nullable=False),
        sa.Column('business_impact', sa.Text(), nullable=True),

        # Cooldown claim
        sa.Column('last_triggered_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),

        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'remediation_executions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('rule_id', sa.String(), nullable=False),
        sa.Column('trigger_data', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('actions_executed', sa.JSON(), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_remediation_executions_status'), 'remediation_executions', ['status'], unique=False)
    op.create_index(
        'ix_remediation_executions_rule_start',
        'remediation_executions',
        ['rule_id', 'start_time'],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index('ix_remediation_executions_rule_start', table_name='remediation_executions')
    op.drop_index(op.f('ix_remediation_executions_status'), table_name='remediation_executions')
    op.drop_table('remediation_executions')
    op.drop_table('remediation_rules')
    op.drop_index(op.f('ix_alert_gate_claims_alert_id'), table_name='alert_gate_claims')
    op.drop_table('alert_gate_claims')
    op.drop_index('ix_alerts_type_created_at', table_name='alerts')
    op.drop_index(op.f('ix_alerts_correlation_id'), table_name='alerts')
    op.drop_index(op.f('ix_alerts_status'), table_name='alerts')
    op.drop_table('alerts')
    op.drop_index(op.f('ix_incidents_status'), table_name='incidents')
    op.drop_table('incidents')
