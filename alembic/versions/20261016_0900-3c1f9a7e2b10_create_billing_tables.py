"""create_billing_tables

Revision ID: 3c1f9a7e2b10
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c1f9a7e2b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
    ]


def _pricing():
    return [
        sa.Column('base_amount', sa.BigInteger(), nullable=False, comment='原价'),
        sa.Column('scholarship_percent', sa.Integer(), nullable=False, server_default='0', comment='奖学金比例 0-100'),
        sa.Column('scholarship_type', sa.String(length=50), nullable=True, comment='奖学金类型'),
        sa.Column('discount_amount', sa.BigInteger(), nullable=False, server_default='0', comment='优惠金额'),
        sa.Column('final_amount', sa.BigInteger(), nullable=False, comment='应付金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='VND', comment='货币代码 ISO-4217'),
    ]


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=36), nullable=False, comment='订单ID'),
        sa.Column('student_id', sa.String(length=36), nullable=False, comment='学生ID'),
        sa.Column('branch_id', sa.String(length=36), nullable=True, comment='分校ID（快照）'),
        sa.Column('items', sa.JSON(), nullable=False, comment='订单明细'),
        sa.Column('request_ids', sa.JSON(), nullable=False, comment='关联的缴费请求ID（有序）'),
        *_pricing(),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending_payment', comment='订单状态: pending_payment/paid/failed/cancelled'),
        sa.Column('note', sa.Text(), nullable=True, comment='备注'),
        sa.Column('cancel_reason', sa.Text(), nullable=True, comment='取消原因'),
        *_timestamps(),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='支付完成时间'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='取消时间'),
        sa.PrimaryKeyConstraint('id'),
        comment='订单表：一次选课结算',
    )
    op.create_index('ix_orders_student_id', 'orders', ['student_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_student_status', 'orders', ['student_id', 'status'])

    op.create_table(
        'class_payment_requests',
        sa.Column('id', sa.String(length=36), nullable=False, comment='活动ID'),
        sa.Column('class_id', sa.String(length=36), nullable=False, comment='班级ID'),
        sa.Column('class_name', sa.String(length=200), nullable=True, comment='班级名称（快照）'),
        sa.Column('class_subject', sa.String(length=200), nullable=True, comment='科目（快照）'),
        sa.Column('title', sa.String(length=200), nullable=False, comment='标题'),
        sa.Column('description', sa.Text(), nullable=True, comment='描述'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='每位学生原价金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='VND', comment='货币代码'),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True, comment='截止日期'),
        sa.Column('created_by', sa.String(length=36), nullable=False, comment='创建人ID'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active', comment='状态: active/cancelled'),
        sa.Column('total_students', sa.Integer(), nullable=False, server_default='0', comment='学生总数'),
        sa.Column('paid_count', sa.Integer(), nullable=False, server_default='0', comment='已缴人数'),
        sa.Column('total_collected', sa.BigInteger(), nullable=False, server_default='0', comment='已收金额'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        comment='班级收费活动表',
    )
    op.create_index('ix_class_payment_requests_class_id', 'class_payment_requests', ['class_id'])
    op.create_index('ix_class_payment_requests_status', 'class_payment_requests', ['status'])

    op.create_table(
        'payment_requests',
        sa.Column('id', sa.String(length=36), nullable=False, comment='缴费请求ID'),
        sa.Column('order_id', sa.String(length=36), nullable=True, comment='所属订单ID'),
        sa.Column('class_payment_request_id', sa.String(length=36), nullable=True, comment='所属收费活动ID'),
        sa.Column('student_id', sa.String(length=36), nullable=False, comment='学生ID'),
        sa.Column('student_name', sa.String(length=200), nullable=True, comment='学生姓名（快照）'),
        sa.Column('class_id', sa.String(length=36), nullable=False, comment='班级ID'),
        sa.Column('class_name', sa.String(length=200), nullable=True, comment='班级名称（快照）'),
        sa.Column('class_subject', sa.String(length=200), nullable=True, comment='科目（快照，优先于实时班级数据）'),
        sa.Column('title', sa.String(length=200), nullable=False, comment='标题'),
        sa.Column('description', sa.Text(), nullable=True, comment='描述'),
        *_pricing(),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True, comment='截止日期'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='状态: pending/paid/cancelled'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='缴费时间'),
        sa.Column('payment_id', sa.String(length=36), nullable=True, comment='结算该请求的支付ID'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['class_payment_request_id'], ['class_payment_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        comment='缴费请求表：学生对某班级的一笔应缴费用',
    )
    op.create_index('ix_payment_requests_order_id', 'payment_requests', ['order_id'])
    op.create_index('ix_payment_requests_class_payment_request_id', 'payment_requests', ['class_payment_request_id'])
    op.create_index('ix_payment_requests_student_id', 'payment_requests', ['student_id'])
    op.create_index('ix_payment_requests_class_id', 'payment_requests', ['class_id'])
    op.create_index('ix_payment_requests_status', 'payment_requests', ['status'])
    op.create_index('ix_payment_requests_payment_id', 'payment_requests', ['payment_id'])
    op.create_index('ix_payment_requests_student_status', 'payment_requests', ['student_id', 'status'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=36), nullable=False, comment='支付ID（即网关 txn_ref）'),
        sa.Column('student_id', sa.String(length=36), nullable=False, comment='学生ID'),
        sa.Column('paid_by', sa.String(length=36), nullable=False, comment='付款人ID'),
        sa.Column('method', sa.String(length=20), nullable=False, comment='支付渠道: gateway_x/cash'),
        sa.Column('external_ref', sa.String(length=200), nullable=True, comment='渠道交易号'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='支付金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='VND', comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='created', comment='支付状态: created/pending/success/cancelled/failed'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('confirmed_by', sa.String(length=36), nullable=True, comment='现金确认管理员ID'),
        sa.Column('branch_id', sa.String(length=36), nullable=True, comment='分校ID（快照）'),
        sa.Column('branch_name', sa.String(length=200), nullable=True, comment='分校名称（快照）'),
        sa.Column('subject_name', sa.String(length=500), nullable=True, comment='科目（快照，逗号分隔）'),
        *_timestamps(),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True, comment='进入终态时间'),
        sa.PrimaryKeyConstraint('id'),
        comment='支付表：一次收款尝试，可覆盖多个缴费请求',
    )
    op.create_index('ix_payments_student_id', 'payments', ['student_id'])
    op.create_index('ix_payments_method', 'payments', ['method'])
    op.create_index('ix_payments_external_ref', 'payments', ['external_ref'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])
    op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'])

    op.create_table(
        'payment_request_links',
        sa.Column('payment_id', sa.String(length=36), nullable=False, comment='支付ID'),
        sa.Column('request_id', sa.String(length=36), nullable=False, comment='缴费请求ID'),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0', comment='顺序'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['request_id'], ['payment_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('payment_id', 'request_id'),
        comment='支付覆盖的缴费请求',
    )
    op.create_index('ix_payment_request_links_request_id', 'payment_request_links', ['request_id'])

    op.create_table(
        'payment_settlements',
        sa.Column('request_id', sa.String(length=36), nullable=False, comment='缴费请求ID'),
        sa.Column('payment_id', sa.String(length=36), nullable=False, comment='支付ID'),
        sa.Column('settled_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='结算时间'),
        sa.ForeignKeyConstraint(['request_id'], ['payment_requests.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('request_id'),
        comment='结算台账：一个缴费请求至多被一笔成功支付结算',
    )
    op.create_index('ix_payment_settlements_payment_id', 'payment_settlements', ['payment_id'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.String(length=36), nullable=False, comment='流水ID'),
        sa.Column('payment_id', sa.String(length=36), nullable=False, comment='支付ID'),
        sa.Column('type', sa.String(length=20), nullable=False, comment='类型: create/callback/cash_confirm/expire/system'),
        sa.Column('message', sa.Text(), nullable=True, comment='说明'),
        sa.Column('raw_data', sa.JSON(), nullable=True, comment='原始回调数据'),
        sa.Column('performed_by', sa.String(length=36), nullable=True, comment='操作人'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        comment='支付流水（审计日志，只增不改）',
    )
    op.create_index('ix_payment_transactions_payment_id', 'payment_transactions', ['payment_id'])


def downgrade() -> None:
    op.drop_table('payment_transactions')
    op.drop_table('payment_settlements')
    op.drop_table('payment_request_links')
    op.drop_table('payments')
    op.drop_table('payment_requests')
    op.drop_table('class_payment_requests')
    op.drop_table('orders')
