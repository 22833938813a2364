"""add alert escalation tables

Revision ID: b7e2d9f0a1c3
Revises: a3f1c2d4e5b6
Create Date: 2025-11-09 15:10:00.000000

Adds escalation_rules (time-tiered escalation of unacknowledged alerts) and
alert_escalations, the record of each tier sent. The unique constraint on
(alert_id, rule_id, escalation_level) keeps a tier from being sent twice
when two checkers race.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'b7e2d9f0a1c3'
down_revision: Union[str, None] = 'a3f1c2d4e5b6'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'escalation_rules',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('alert_type', sa.String(), nullable=True),
        sa.Column('min_severity', sa.String(), nullable=False),

        # Tiers: first is mandatory, second and final optional
        sa.Column('first_escalation_minutes', sa.Integer(), nullable=False),
        sa.Column('first_escalation_recipients', sa.String(), nullable=False),
        sa.Column('second_escalation_minutes', sa.Integer(), nullable=True),
        sa.Column('second_escalation_recipients', sa.String(), nullable=True),
        sa.Column('final_escalation_minutes', sa.Integer(), nullable=True),
        sa.Column('final_escalation_recipients', sa.String(), nullable=True),

        sa.Column('escalate_via_webhook', sa.Boolean(), nullable=False),
        sa.Column('escalate_via_teams', sa.Boolean(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_escalation_rules_enabled'), 'escalation_rules', ['enabled'], unique=False)

    op.create_table(
        'alert_escalations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('alert_id', sa.Uuid(), nullable=False),
        sa.Column('rule_id', sa.Uuid(), nullable=False),
        sa.Column('escalation_level', sa.Integer(), nullable=False),
        sa.Column('recipients', sa.String(), nullable=False),
        sa.Column('escalated_at', sa.DateTime(), nullable=False),
        sa.Column('minutes_since_alert', sa.Integer(), nullable=False),
        sa.Column('sent_via_webhook', sa.Boolean(), nullable=False),
        sa.Column('sent_via_teams', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['alert_id'], ['alerts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['rule_id'], ['escalation_rules.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('alert_id', 'rule_id', 'escalation_level', name='uq_alert_escalations_level'),
    )
    op.create_index(op.f('ix_alert_escalations_alert_id'), 'alert_escalations', ['alert_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_alert_escalations_alert_id'), table_name='alert_escalations')
    op.drop_table('alert_escalations')
    op.drop_index(op.f('ix_escalation_rules_enabled'), table_name='escalation_rules')
    op.drop_table('escalation_rules')
