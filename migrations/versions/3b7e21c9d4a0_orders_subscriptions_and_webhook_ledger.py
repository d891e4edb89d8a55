"""orders, subscriptions and webhook ledger

Revision ID: 3b7e21c9d4a0
Revises:
Create Date: 2026-10-18 10:12:41.300417

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3b7e21c9d4a0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False),
        sa.Column('created_at', TS, nullable=False),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_users_public_id', 'users', ['public_id'], unique=True)

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('anchor_order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('shipping_address', JSONType, nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('payment_type', sa.String(length=32), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('items_price', sa.BigInteger(), nullable=False),
        sa.Column('tax_price', sa.BigInteger(), nullable=False),
        sa.Column('shipping_price', sa.BigInteger(), nullable=False),
        sa.Column('total_price', sa.BigInteger(), nullable=False),
        sa.Column('is_paid', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('paid_at', TS, nullable=True),
        sa.Column('is_delivered', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('delivered_at', TS, nullable=True),
        sa.Column('payment_intent_id', sa.String(length=128), nullable=True),
        sa.Column('payment_intent_status', sa.String(length=64), nullable=True),
        sa.Column('payment_intent_client_secret', sa.String(length=255), nullable=True),
        sa.Column('payment_error', JSONType, nullable=True),
        sa.Column('payment_result', JSONType, nullable=True),
        sa.Column('tracking', JSONType, nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_by', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('cancelled_at', TS, nullable=True),
        sa.Column('return_reason', sa.Text(), nullable=True),
        sa.Column('return_requested_at', TS, nullable=True),
        sa.Column('refund_amount', sa.BigInteger(), nullable=True),
        sa.Column('refunded_at', TS, nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('is_subscription', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('subscription_type', sa.String(length=16), nullable=True),
        sa.Column('subscription_name', sa.String(length=255), nullable=True),
        sa.Column('subscription_price', sa.BigInteger(), nullable=True),
        sa.Column('recurrence', sa.String(length=16), nullable=True),
        sa.Column('billing_cycle', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('total_billing_cycles', sa.Integer(), nullable=True),
        sa.Column('current_billing_cycle', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('subscription_status', sa.String(length=32), nullable=True),
        sa.Column('next_billing_date', TS, nullable=True),
        sa.Column('gateway_subscription_id', sa.String(length=128), nullable=True),
        sa.Column('gateway_customer_id', sa.String(length=128), nullable=True),
        sa.Column('gateway_price_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
        sa.UniqueConstraint('anchor_order_id', 'current_billing_cycle', name='uq_orders_anchor_cycle'),
    )
    op.create_index('ix_orders_public_id', 'orders', ['public_id'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_anchor_order_id', 'orders', ['anchor_order_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_intent_id', 'orders', ['payment_intent_id'])
    op.create_index('ix_orders_subscription_status', 'orders', ['subscription_status'])
    op.create_index('ix_orders_next_billing_date', 'orders', ['next_billing_date'])
    op.create_index('ix_orders_gateway_subscription_id', 'orders', ['gateway_subscription_id'])
    op.create_index(
        'uq_orders_gateway_subscription_anchor', 'orders', ['gateway_subscription_id'], unique=True,
        postgresql_where=sa.text('anchor_order_id IS NULL AND gateway_subscription_id IS NOT NULL'),
    )

    op.create_table(
        'orderitem',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('image', sa.String(length=1024), nullable=True),
        sa.Column('unit_price', sa.BigInteger(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
    )
    op.create_index('ix_orderitem_order_id', 'orderitem', ['order_id'])

    op.create_table(
        'orderstatusevent',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('ix_orderstatusevent_order_id', 'orderstatusevent', ['order_id'])

    op.create_table(
        'subscriptionpayment',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payment_id', sa.String(length=128), nullable=True),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('billing_cycle', sa.Integer(), nullable=False),
        sa.Column('paid_at', TS, nullable=False),
        sa.Column('gateway_invoice_id', sa.String(length=128), nullable=True),
        sa.Column('gateway_payment_intent_id', sa.String(length=128), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('metadata', JSONType, nullable=True),
        sa.UniqueConstraint('gateway_invoice_id', 'status', name='uq_subpayment_invoice_status'),
    )
    op.create_index('ix_subscriptionpayment_order_id', 'subscriptionpayment', ['order_id'])
    op.create_index(
        'uq_subpayment_order_cycle_succeeded', 'subscriptionpayment', ['order_id', 'billing_cycle'], unique=True,
        postgresql_where=sa.text("status = 'succeeded'"),
    )

    op.create_table(
        'paymentwebhookevent',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('provider_event_id', sa.String(length=128), nullable=False),
        sa.Column('event_type', sa.String(length=128), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('payload', JSONType, nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('processed_at', TS, nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_webhook_provider_event'),
    )
    op.create_index('ix_paymentwebhookevent_order_id', 'paymentwebhookevent', ['order_id'])
    op.create_index('ix_paymentwebhookevent_processed_at', 'paymentwebhookevent', ['processed_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('paymentwebhookevent')
    op.drop_table('subscriptionpayment')
    op.drop_table('orderstatusevent')
    op.drop_table('orderitem')
    op.drop_index('uq_orders_gateway_subscription_anchor', table_name='orders')
    op.drop_table('orders')
    op.drop_table('users')
