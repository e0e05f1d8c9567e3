"""Create SIP plan, execution, trigger and job tables

Revision ID: 3f1c9a2b7d40
Revises:
Create Date: 2026-10-18 09:12:44.218305

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1c9a2b7d40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'sip_plans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('wallet_id', sa.String(length=100), nullable=False),
        sa.Column('from_asset', sa.String(length=100), nullable=False),
        sa.Column('to_asset', sa.String(length=100), nullable=False),
        sa.Column('amount', sa.Numeric(precision=36, scale=18), nullable=False),
        sa.Column('cadence', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('last_execution', sa.DateTime(), nullable=True),
        sa.Column('next_execution', sa.DateTime(), nullable=False),
        sa.Column('total_executions', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_sip_plans_wallet_id'), 'sip_plans', ['wallet_id'], unique=False)
    op.create_index(op.f('ix_sip_plans_status'), 'sip_plans', ['status'], unique=False)

    op.create_table(
        'sip_plan_executions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('outcome', sa.String(length=30), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('trade_id', sa.String(length=200), nullable=True),
        sa.Column('transaction_hash', sa.String(length=200), nullable=True),
        sa.Column('network', sa.String(length=50), nullable=True),
        sa.Column('error_kind', sa.String(length=30), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('resulting_status', sa.String(length=30), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['plan_id'], ['sip_plans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        op.f('ix_sip_plan_executions_plan_id'), 'sip_plan_executions', ['plan_id'], unique=False
    )

    op.create_table(
        'schedule_triggers',
        sa.Column('id', sa.String(length=120), nullable=False),
        sa.Column('queue_name', sa.String(length=100), nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('pattern', sa.String(length=100), nullable=False),
        sa.Column('anchor_at', sa.DateTime(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('next_fire_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        op.f('ix_schedule_triggers_plan_id'), 'schedule_triggers', ['plan_id'], unique=False
    )
    op.create_index(
        op.f('ix_schedule_triggers_next_fire_at'), 'schedule_triggers', ['next_fire_at'], unique=False
    )

    op.create_table(
        'execution_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('queue_name', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('trigger_id', sa.String(length=120), nullable=True),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts_made', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('backoff_seconds', sa.Numeric(precision=10, scale=3), nullable=False),
        sa.Column('available_at', sa.DateTime(), nullable=False),
        sa.Column('locked_until', sa.DateTime(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_execution_jobs_trigger_id'), 'execution_jobs', ['trigger_id'], unique=False)
    op.create_index(op.f('ix_execution_jobs_plan_id'), 'execution_jobs', ['plan_id'], unique=False)
    op.create_index(
        'ix_execution_jobs_status_available', 'execution_jobs', ['status', 'available_at'], unique=False
    )


def downgrade() -> None:
    op.drop_index('ix_execution_jobs_status_available', table_name='execution_jobs')
    op.drop_index(op.f('ix_execution_jobs_plan_id'), table_name='execution_jobs')
    op.drop_index(op.f('ix_execution_jobs_trigger_id'), table_name='execution_jobs')
    op.drop_table('execution_jobs')

    op.drop_index(op.f('ix_schedule_triggers_next_fire_at'), table_name='schedule_triggers')
    op.drop_index(op.f('ix_schedule_triggers_plan_id'), table_name='schedule_triggers')
    op.drop_table('schedule_triggers')

    op.drop_index(op.f('ix_sip_plan_executions_plan_id'), table_name='sip_plan_executions')
    op.drop_table('sip_plan_executions')

    op.drop_index(op.f('ix_sip_plans_status'), table_name='sip_plans')
    op.drop_index(op.f('ix_sip_plans_wallet_id'), table_name='sip_plans')
    op.drop_table('sip_plans')
