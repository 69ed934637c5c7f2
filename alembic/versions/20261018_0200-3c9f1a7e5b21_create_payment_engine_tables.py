"""create_payment_engine_tables

Revision ID: 3c9f1a7e5b21
Revises:
Create Date: 2026-10-18 02:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c9f1a7e5b21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'card_tokens',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('brand', sa.String(length=20), nullable=False),
        sa.Column('bin', sa.String(length=6), nullable=False, server_default='', comment='卡号前六位'),
        sa.Column('last4', sa.String(length=4), nullable=False),
        sa.Column('exp_month', sa.Integer(), nullable=False),
        sa.Column('exp_year', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True, comment='令牌被使用的时间，非空即失效'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'payment_intents',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('merchant_id', sa.String(length=64), nullable=False, comment='商户ID'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217 小写'),
        sa.Column('status', sa.String(length=32), nullable=False,
                  comment='requires_payment_method/requires_action/succeeded/canceled'),
        sa.Column('client_secret', sa.String(length=128), nullable=False),
        sa.Column('receipt_email', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('card_token', sa.String(length=64), nullable=True),
        sa.Column('card_last4', sa.String(length=4), nullable=True),
        sa.Column('card_brand', sa.String(length=20), nullable=True),
        sa.Column('fraud_score', sa.Integer(), nullable=True),
        sa.Column('fraud_flags', sa.JSON(), nullable=True),
        sa.Column('step_up_status', sa.String(length=20), nullable=True),
        sa.Column('authorization_code', sa.String(length=64), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=64), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_intents_merchant_id', 'payment_intents', ['merchant_id'])
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'])
    op.create_index('ix_payment_intents_created_at', 'payment_intents', ['created_at'])
    op.create_index('ix_payment_intents_merchant_status', 'payment_intents', ['merchant_id', 'status'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('merchant_id', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=False),
        sa.Column('price_id', sa.String(length=64), nullable=False),
        sa.Column('unit_amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('interval', sa.String(length=10), nullable=False, comment='day/week/month/year'),
        sa.Column('interval_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='active/paused/past_due/cancelled'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_failure_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('card_token', sa.String(length=64), nullable=True),
        sa.Column('card_last4', sa.String(length=4), nullable=True),
        sa.Column('card_brand', sa.String(length=20), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscriptions_merchant_id', 'subscriptions', ['merchant_id'])
    op.create_index('ix_subscriptions_customer_id', 'subscriptions', ['customer_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_next_billing_date', 'subscriptions', ['next_billing_date'])
    op.create_index('ix_subscriptions_due', 'subscriptions', ['status', 'next_billing_date'])
    op.create_index('ix_subscriptions_customer_price', 'subscriptions', ['merchant_id', 'customer_id', 'price_id'])

    op.create_table(
        'charges',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('merchant_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, comment='succeeded/failed/refunded'),
        sa.Column('card_last4', sa.String(length=4), nullable=True),
        sa.Column('card_brand', sa.String(length=20), nullable=True),
        sa.Column('card_token', sa.String(length=64), nullable=True),
        sa.Column('payment_intent_id', sa.String(length=64), nullable=True),
        sa.Column('subscription_id', sa.String(length=64), nullable=True),
        sa.Column('fraud_score', sa.Integer(), nullable=True),
        sa.Column('fraud_status', sa.String(length=20), nullable=True),
        sa.Column('fraud_flags', sa.JSON(), nullable=True),
        sa.Column('authorization_status', sa.String(length=20), nullable=True),
        sa.Column('authorization_code', sa.String(length=64), nullable=True),
        sa.Column('failure_code', sa.String(length=64), nullable=True),
        sa.Column('failure_message', sa.Text(), nullable=True),
        sa.Column('amount_refunded', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['payment_intent_id'], ['payment_intents.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_charges_merchant_id', 'charges', ['merchant_id'])
    op.create_index('ix_charges_status', 'charges', ['status'])
    op.create_index('ix_charges_payment_intent_id', 'charges', ['payment_intent_id'])
    op.create_index('ix_charges_subscription_id', 'charges', ['subscription_id'])
    op.create_index('ix_charges_created_at', 'charges', ['created_at'])
    op.create_index('ix_charges_fraud_window', 'charges', ['merchant_id', 'card_last4', 'created_at'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('charge_id', sa.String(length=64), nullable=False),
        sa.Column('merchant_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('reason', sa.String(length=32), nullable=True, comment='requested_by_customer/duplicate/fraudulent'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='succeeded'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['charge_id'], ['charges.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refunds_charge_id', 'refunds', ['charge_id'])
    op.create_index('ix_refunds_merchant_id', 'refunds', ['merchant_id'])

    op.create_table(
        'webhook_endpoints',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('merchant_id', sa.String(length=64), nullable=False),
        sa.Column('url', sa.String(length=2048), nullable=False),
        sa.Column('secret', sa.String(length=128), nullable=False, comment='签名密钥 whsec_...'),
        sa.Column('events', sa.JSON(), nullable=False, comment='订阅的事件类型列表'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_failure_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_webhook_endpoints_merchant_id', 'webhook_endpoints', ['merchant_id'])
    op.create_index('ix_webhook_endpoints_is_active', 'webhook_endpoints', ['is_active'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('merchant_id', sa.String(length=64), nullable=False),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('created', sa.BigInteger(), nullable=False, comment='unix 秒'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='pending/retrying/sent/failed'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_webhook_events_merchant_id', 'webhook_events', ['merchant_id'])
    op.create_index('ix_webhook_events_type', 'webhook_events', ['type'])
    op.create_index('ix_webhook_events_due', 'webhook_events', ['status', 'next_retry_at'])

    op.create_table(
        'webhook_deliveries',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('event_id', sa.String(length=64), nullable=False),
        sa.Column('endpoint_id', sa.String(length=64), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=True, comment='超时/网络错误时为空'),
        sa.Column('duration_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['event_id'], ['webhook_events.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['endpoint_id'], ['webhook_endpoints.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_webhook_deliveries_event_id', 'webhook_deliveries', ['event_id'])
    op.create_index('ix_webhook_deliveries_endpoint_id', 'webhook_deliveries', ['endpoint_id'])
    op.create_index('ix_webhook_deliveries_created_at', 'webhook_deliveries', ['created_at'])


def downgrade() -> None:
    op.drop_table('webhook_deliveries')
    op.drop_table('webhook_events')
    op.drop_table('webhook_endpoints')
    op.drop_table('refunds')
    op.drop_table('charges')
    op.drop_table('subscriptions')
    op.drop_table('payment_intents')
    op.drop_table('card_tokens')
