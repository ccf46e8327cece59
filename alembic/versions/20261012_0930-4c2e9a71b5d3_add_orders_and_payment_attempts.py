"""add_orders_and_payment_attempts

Revision ID: 4c2e9a71b5d3
Revises:
Create Date: 2026-10-12 09:30:41.218734

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4c2e9a71b5d3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create orders table
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=36), nullable=False, comment='订单ID'),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='下单用户ID'),
        sa.Column('branch', sa.String(length=100), nullable=False, comment='履约门店'),
        sa.Column('items', sa.JSON(), nullable=False, comment='订单明细 [{product_id, quantity, price}]'),
        sa.Column('total', sa.Numeric(precision=12, scale=2), nullable=False, comment='订单总额'),
        sa.Column('delivery_address', sa.Text(), nullable=True, comment='配送地址'),
        sa.Column('delivery_location', sa.JSON(), nullable=True, comment='配送坐标 {lat, lng}'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='订单状态: pending/processing/paid/failed/cancelled'),
        sa.Column('mpesa_checkout_request_id', sa.String(length=100), nullable=True, comment='当前 STK Push 的 CheckoutRequestID'),
        sa.Column('mpesa_code', sa.String(length=50), nullable=True, comment='M-Pesa 收据号'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='支付失败原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        comment='订单表，记录订单及其支付状态'
    )

    op.create_index('ix_orders_user_id', 'orders', ['user_id'], unique=False)
    op.create_index('ix_orders_branch', 'orders', ['branch'], unique=False)
    op.create_index('ix_orders_status', 'orders', ['status'], unique=False)
    op.create_index('ix_orders_mpesa_checkout_request_id', 'orders', ['mpesa_checkout_request_id'], unique=False)
    # 清理任务按 (status, created_at) 扫描
    op.create_index('ix_orders_status_created_at', 'orders', ['status', 'created_at'], unique=False)
    op.create_index('ix_orders_user_created_at', 'orders', ['user_id', 'created_at'], unique=False)

    # Create payment_attempts table
    op.create_table(
        'payment_attempts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=False, comment='关联订单ID'),
        sa.Column('checkout_request_id', sa.String(length=100), nullable=False, comment='CheckoutRequestID'),
        sa.Column('merchant_request_id', sa.String(length=100), nullable=True, comment='MerchantRequestID'),
        sa.Column('phone', sa.String(length=20), nullable=False, comment='付款手机号（渠道格式）'),
        sa.Column('amount', sa.Integer(), nullable=False, comment='提交给渠道的整数金额'),
        sa.Column('initiated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='发起时间'),
        sa.Column('superseded_at', sa.DateTime(timezone=True), nullable=True, comment='被新的尝试替代的时间'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('checkout_request_id', name='uq_payment_attempts_checkout_request_id'),
        comment='STK Push 尝试记录，用于迟到回调的归因'
    )

    op.create_index('ix_payment_attempts_order_id', 'payment_attempts', ['order_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_payment_attempts_order_id', table_name='payment_attempts')
    op.drop_table('payment_attempts')

    op.drop_index('ix_orders_user_created_at', table_name='orders')
    op.drop_index('ix_orders_status_created_at', table_name='orders')
    op.drop_index('ix_orders_mpesa_checkout_request_id', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_branch', table_name='orders')
    op.drop_index('ix_orders_user_id', table_name='orders')
    op.drop_table('orders')
