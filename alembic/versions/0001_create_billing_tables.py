"""create billing tables

Revision ID: 0001_create_billing_tables
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_create_billing_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'billing_accounts',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('gateway', sa.String(50), nullable=True),
        sa.Column('gateway_account_id', sa.String(200), nullable=True),
        sa.Column('gateway_connected', sa.Boolean, nullable=False, server_default=sa.sql.expression.false()),
        sa.Column('default_payment_method_id', sa.String(200), nullable=True),
        sa.Column('bank_account_payment_method_id', sa.String(200), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('account_id', sa.String(64), sa.ForeignKey('billing_accounts.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('plan_name', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active', index=True),
        sa.Column('billing_cycle', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False, server_default='usd'),
        sa.Column('current_period_start', sa.DateTime, nullable=False),
        sa.Column('current_period_end', sa.DateTime, nullable=False, index=True),
        sa.Column('cancel_at_period_end', sa.Boolean, nullable=False, server_default=sa.sql.expression.false()),
        sa.Column('payment_failure_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('grace_period_end', sa.DateTime, nullable=True),
        sa.Column('next_retry_date', sa.DateTime, nullable=True),
        sa.Column('last_payment_error', sa.Text, nullable=True),
        sa.Column('proration_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('last_payment_attempt_at', sa.DateTime, nullable=True),
        sa.Column('last_payment_success_at', sa.DateTime, nullable=True),
        sa.Column('last_gateway_payment_id', sa.String(255), nullable=True, index=True),
        sa.Column('settlement_pending', sa.Boolean, nullable=False, server_default=sa.sql.expression.false()),
        sa.Column('attempt_token', sa.String(64), nullable=True),
        sa.Column('attempt_started_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.CheckConstraint('payment_failure_count >= 0', name='ck_subscriptions_failure_count'),
    )
    op.create_index('ix_subscriptions_retry', 'subscriptions', ['status', 'next_retry_date'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('subscription_id', sa.String(64), sa.ForeignKey('subscriptions.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('account_id', sa.String(64), nullable=True, index=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False, server_default='usd'),
        sa.Column('gateway', sa.String(50), nullable=True),
        sa.Column('gateway_account_id', sa.String(200), nullable=True),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True, unique=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('payment_method', sa.String(20), nullable=True),
        sa.Column('payment_type', sa.String(50), nullable=False, server_default='subscription'),
        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('failure_count', sa.Integer, nullable=True),
        sa.Column('receipt_url', sa.Text, nullable=True),
        sa.Column('paid_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('action', sa.String(100), nullable=False, index=True),
        sa.Column('actor', sa.String(200), nullable=False),
        sa.Column('target_type', sa.String(50), nullable=False),
        sa.Column('target_id', sa.String(255), nullable=True),
        sa.Column('details', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )


def downgrade():
    op.drop_table('audit_log')
    op.drop_table('payments')
    op.drop_index('ix_subscriptions_retry', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('billing_accounts')
