"""
Alembic migration: Create order fulfillment schema.

Creates users, products, orders, order_items, order_status_history,
notification_logs and notification_preferences. Enum columns are stored
as strings; the allowed values are enforced by the models.

Revision ID: 001
Revises:
Create Date: 2024-03-01 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
    ]


def upgrade() -> None:
    """
    Create the order fulfillment tables with their indexes and constraints.
    """
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column(
            'role',
            sa.String(length=50),
            nullable=False,
            server_default='CUSTOMER',
        ),
        sa.Column(
            'is_active',
            sa.Boolean(),
            nullable=False,
            server_default=sa.text('true'),
        ),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sa.CheckConstraint(
            'length(email) >= 3',
            name='ck_users_email_min_length',
        ),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_role_active', 'users', ['role', 'is_active'])

    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column(
            'is_active',
            sa.Boolean(),
            nullable=False,
            server_default=sa.text('true'),
        ),
        sa.Column('wholesaler_name', sa.String(length=255), nullable=True),
        sa.Column('wholesaler_email', sa.String(length=255), nullable=True),
        sa.Column('wholesaler_product_code', sa.String(length=100), nullable=True),
        sa.Column('wholesaler_cost', sa.Numeric(precision=10, scale=2), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('slug', name='uq_products_slug'),
        sa.CheckConstraint('price >= 0', name='ck_products_price_non_negative'),
    )
    op.create_index('ix_products_is_active', 'products', ['is_active'])
    op.create_index('ix_products_wholesaler_email', 'products', ['wholesaler_email'])

    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('order_number', sa.String(length=50), nullable=False),
        sa.Column(
            'customer_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('users.id', ondelete='RESTRICT'),
            nullable=True,
        ),
        sa.Column('guest_info', postgresql.JSONB(), nullable=True),
        sa.Column('shipping_address', postgresql.JSONB(), nullable=False),
        sa.Column('billing_address', postgresql.JSONB(), nullable=False),
        sa.Column('subtotal', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column(
            'tax',
            sa.Numeric(precision=10, scale=2),
            nullable=False,
            server_default=sa.text('0.00'),
        ),
        sa.Column(
            'shipping',
            sa.Numeric(precision=10, scale=2),
            nullable=False,
            server_default=sa.text('0.00'),
        ),
        sa.Column('total', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column(
            'currency',
            sa.String(length=3),
            nullable=False,
            server_default='USD',
        ),
        sa.Column(
            'payment_method',
            sa.String(length=50),
            nullable=False,
            server_default='other',
        ),
        sa.Column(
            'payment_status',
            sa.String(length=50),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('gateway_payment_id', sa.String(length=255), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('transaction_id', sa.String(length=255), nullable=True),
        sa.Column(
            'status',
            sa.String(length=50),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('tracking_number', sa.String(length=100), nullable=True),
        sa.Column('shipping_carrier', sa.String(length=100), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('estimated_delivery_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.String(length=1000), nullable=True),
        sa.Column('referral_source', sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('updated_by', sa.String(length=255), nullable=True),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        sa.UniqueConstraint('gateway_payment_id', name='uq_orders_gateway_payment_id'),
        sa.CheckConstraint(
            'customer_id IS NOT NULL OR guest_info IS NOT NULL',
            name='ck_orders_owner_present',
        ),
        sa.CheckConstraint(
            'subtotal >= 0 AND tax >= 0 AND shipping >= 0',
            name='ck_orders_amounts_non_negative',
        ),
        sa.CheckConstraint(
            'total = subtotal + tax + shipping',
            name='ck_orders_total_matches_components',
        ),
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_customer_created', 'orders', ['customer_id', 'created_at'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index(
        'ix_orders_guest_email',
        'orders',
        [sa.text("(guest_info ->> 'email')")],
    )

    op.create_table(
        'order_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'order_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column(
            'product_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('products.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('wholesaler_name', sa.String(length=255), nullable=True),
        sa.Column('wholesaler_email', sa.String(length=255), nullable=True),
        sa.Column('wholesaler_product_code', sa.String(length=100), nullable=True),
        sa.Column(
            'wholesaler_notified',
            sa.Boolean(),
            nullable=False,
            server_default=sa.text('false'),
        ),
        sa.Column('wholesaler_notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            'notification_attempts',
            sa.Integer(),
            nullable=False,
            server_default=sa.text('0'),
        ),
        sa.Column('last_notification_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            'quantity BETWEEN 1 AND 99',
            name='ck_order_items_quantity_range',
        ),
        sa.CheckConstraint('price >= 0', name='ck_order_items_price_non_negative'),
        sa.CheckConstraint(
            'notification_attempts >= 0',
            name='ck_order_items_attempts_non_negative',
        ),
        sa.CheckConstraint(
            'NOT wholesaler_notified OR wholesaler_notified_at IS NOT NULL',
            name='ck_order_items_notified_has_timestamp',
        ),
    )
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])
    op.create_index('ix_order_items_order_line', 'order_items', ['order_id', 'line_number'])
    op.create_index(
        'ix_order_items_pending_notification',
        'order_items',
        ['order_id'],
        postgresql_where=sa.text(
            'wholesaler_notified = false AND wholesaler_email IS NOT NULL'
        ),
    )

    op.create_table(
        'order_status_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'order_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('from_status', sa.String(length=50), nullable=True),
        sa.Column('to_status', sa.String(length=50), nullable=False),
        sa.Column('changed_by', sa.String(length=255), nullable=True),
        sa.Column('change_reason', sa.String(length=500), nullable=True),
        sa.Column('tracking_number', sa.String(length=100), nullable=True),
        sa.Column(
            'metadata',
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
    )
    op.create_index(
        'ix_order_status_history_order_created',
        'order_status_history',
        ['order_id', 'created_at'],
    )

    op.create_table(
        'notification_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'user_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('users.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column(
            'order_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column(
            'order_item_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('order_items.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column('notification_type', sa.String(length=50), nullable=False),
        sa.Column(
            'channel',
            sa.String(length=50),
            nullable=False,
            server_default='EMAIL',
        ),
        sa.Column('recipient', sa.String(length=255), nullable=False),
        sa.Column('subject', sa.String(length=500), nullable=True),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column(
            'status',
            sa.String(length=50),
            nullable=False,
            server_default='PENDING',
        ),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('provider_message_id', sa.String(length=255), nullable=True),
        sa.Column(
            'metadata',
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
        sa.CheckConstraint(
            'length(recipient) >= 3',
            name='ck_notification_logs_recipient_min_length',
        ),
    )
    op.create_index('ix_notification_logs_user_id', 'notification_logs', ['user_id'])
    op.create_index('ix_notification_logs_order_id', 'notification_logs', ['order_id'])
    op.create_index(
        'ix_notification_logs_notification_type',
        'notification_logs',
        ['notification_type'],
    )
    op.create_index('ix_notification_logs_status', 'notification_logs', ['status'])
    op.create_index(
        'ix_notification_logs_order_type',
        'notification_logs',
        ['order_id', 'notification_type'],
    )
    op.create_index(
        'ix_notification_logs_status_created',
        'notification_logs',
        ['status', 'created_at'],
    )

    op.create_table(
        'notification_preferences',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'user_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('notification_type', sa.String(length=50), nullable=False),
        sa.Column(
            'email_enabled',
            sa.Boolean(),
            nullable=False,
            server_default=sa.text('true'),
        ),
        *_timestamps(),
    )
    op.create_index(
        'ix_notification_preferences_user_type',
        'notification_preferences',
        ['user_id', 'notification_type'],
        unique=True,
    )


def downgrade() -> None:
    """
    Drop the order fulfillment tables in reverse dependency order.
    """
    op.drop_index('ix_notification_preferences_user_type', table_name='notification_preferences')
    op.drop_table('notification_preferences')

    op.drop_index('ix_notification_logs_status_created', table_name='notification_logs')
    op.drop_index('ix_notification_logs_order_type', table_name='notification_logs')
    op.drop_index('ix_notification_logs_status', table_name='notification_logs')
    op.drop_index('ix_notification_logs_notification_type', table_name='notification_logs')
    op.drop_index('ix_notification_logs_order_id', table_name='notification_logs')
    op.drop_index('ix_notification_logs_user_id', table_name='notification_logs')
    op.drop_table('notification_logs')

    op.drop_index('ix_order_status_history_order_created', table_name='order_status_history')
    op.drop_table('order_status_history')

    op.drop_index('ix_order_items_pending_notification', table_name='order_items')
    op.drop_index('ix_order_items_order_line', table_name='order_items')
    op.drop_index('ix_order_items_product_id', table_name='order_items')
    op.drop_table('order_items')

    op.drop_index('ix_orders_guest_email', table_name='orders')
    op.drop_index('ix_orders_status_created', table_name='orders')
    op.drop_index('ix_orders_customer_created', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_payment_status', table_name='orders')
    op.drop_index('ix_orders_customer_id', table_name='orders')
    op.drop_table('orders')

    op.drop_index('ix_products_wholesaler_email', table_name='products')
    op.drop_index('ix_products_is_active', table_name='products')
    op.drop_table('products')

    op.drop_index('ix_users_role_active', table_name='users')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
