"""create_payments_tables

Revision ID: 3f2b9c1d7a10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f2b9c1d7a10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=32), nullable=False, comment='支付ID'),
        sa.Column('order_id', sa.String(length=64), nullable=False, comment='订单ID'),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='支付金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('method', sa.String(length=32), nullable=False, comment='支付渠道: card-processor/wallet-processor/hash-processor'),
        sa.Column('gateway_transaction_id', sa.String(length=200), nullable=True, comment='网关交易号'),
        sa.Column('gateway_response', sa.JSON(), nullable=True, comment='网关最近一次原始响应'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='支付状态: pending/processing/completed/failed/refunded'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('refund_reason', sa.Text(), nullable=True, comment='退款原因'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='支付完成时间'),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True, comment='退款时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('ip_address', sa.String(length=64), nullable=True, comment='发起支付的IP'),
        sa.Column('user_agent', sa.String(length=500), nullable=True, comment='发起支付的UA'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('method', 'gateway_transaction_id', name='uq_payments_method_gateway_txn'),
        comment='支付表，每行是一次支付尝试'
    )

    # Create indexes
    op.create_index('ix_payments_order_id', 'payments', ['order_id'], unique=False)
    op.create_index('ix_payments_user_id', 'payments', ['user_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_created_at', 'payments', ['created_at'], unique=False)
    op.create_index('ix_payments_user_created', 'payments', ['user_id', 'created_at'], unique=False)
    op.create_index('ix_payments_status_updated', 'payments', ['status', 'updated_at'], unique=False)
    # 同一订单最多一笔 completed 支付
    op.create_index(
        'uq_payments_order_completed',
        'payments',
        ['order_id'],
        unique=True,
        postgresql_where=sa.text("status = 'completed'"),
    )

    # Create payment_transactions table (append-only ledger)
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.String(length=32), nullable=False, comment='关联的支付ID'),
        sa.Column('transaction_type', sa.String(length=20), nullable=False, comment='类型: authorize/capture/refund/void'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='状态: success/failed/pending/duplicate/ignored'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('gateway_transaction_id', sa.String(length=200), nullable=True, comment='网关交易号'),
        sa.Column('gateway_response', sa.JSON(), nullable=True, comment='原始事件载荷'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='错误信息'),
        sa.Column('event_type', sa.String(length=40), nullable=True, comment='规范事件类型'),
        sa.Column('source', sa.String(length=20), nullable=True, comment='来源: webhook/confirm/sweep/refund'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], name='fk_payment_transactions_payment_id_payments'),
        sa.PrimaryKeyConstraint('id'),
        comment='支付流水表，只追加'
    )
    op.create_index('ix_payment_transactions_payment_id', 'payment_transactions', ['payment_id'], unique=False)
    op.create_index('ix_payment_transactions_gateway_transaction_id', 'payment_transactions', ['gateway_transaction_id'], unique=False)
    op.create_index('ix_payment_transactions_created_at', 'payment_transactions', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_payment_transactions_created_at', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_gateway_transaction_id', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_payment_id', table_name='payment_transactions')
    op.drop_table('payment_transactions')

    op.drop_index('uq_payments_order_completed', table_name='payments')
    op.drop_index('ix_payments_status_updated', table_name='payments')
    op.drop_index('ix_payments_user_created', table_name='payments')
    op.drop_index('ix_payments_created_at', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_user_id', table_name='payments')
    op.drop_index('ix_payments_order_id', table_name='payments')
    op.drop_table('payments')
