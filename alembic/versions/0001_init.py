"""create order, payment, tracking and notification tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'products',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('stock', sa.Integer, nullable=False, server_default='0'),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_non_negative'),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, nullable=False, index=True),
        sa.Column('vendor_id', sa.Integer, nullable=False, index=True),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, index=True),
        sa.Column('tracking_number', sa.String(100), nullable=True),
        sa.Column('shipping_address', sa.JSON, nullable=False),
        sa.Column('estimated_delivery', sa.DateTime, nullable=True),
        sa.Column('actual_delivery', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.Column('version', sa.Integer, nullable=False),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('product_id', sa.Integer, nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('product_name_snapshot', sa.String(200), nullable=True),
        sa.CheckConstraint('quantity >= 1', name='ck_order_items_quantity_positive'),
    )
    op.create_table(
        'tracking_entries',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('latitude', sa.Float, nullable=True),
        sa.Column('longitude', sa.Float, nullable=True),
        sa.Column('address', sa.String(300), nullable=True),
        sa.Column('timestamp', sa.DateTime, nullable=False),
        sa.Column('notes', sa.Text, nullable=True),
    )
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, unique=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('gateway_order_id', sa.String(100), nullable=False, unique=True, index=True),
        sa.Column('gateway_payment_id', sa.String(100), nullable=True),
        sa.Column('gateway_signature', sa.String(200), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('payment_method', sa.String(30), nullable=True),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime, nullable=True),
        sa.Column('refund_id', sa.String(100), nullable=True),
        sa.Column('refund_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('version', sa.Integer, nullable=False),
        sa.CheckConstraint('refund_amount IS NULL OR refund_amount <= amount', name='ck_payments_refund_within_amount'),
    )
    op.create_table(
        'notification_settings',
        sa.Column('user_id', sa.Integer, primary_key=True),
        sa.Column('email_notifications', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('sms_notifications', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('push_notifications', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('order_notifications', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_table(
        'user_purchases',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, nullable=False, index=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )

def downgrade():
    op.drop_table('user_purchases')
    op.drop_table('notification_settings')
    op.drop_table('payments')
    op.drop_table('tracking_entries')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('products')
