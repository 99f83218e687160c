"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, BigInteger, DateTime, Text, JSON,
    Index, ForeignKey
)
from datetime import datetime, timezone

from .base import Base


def _now():
    return datetime.now(timezone.utc)


class PaymentModel(Base):
    """
    支付数据库模型

    所有业务规则都在 domain.billing.entity.Payment 与状态机中
    """
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, comment="支付ID（即网关 txn_ref）")
    student_id = Column(String(36), nullable=False, index=True, comment="学生ID")
    paid_by = Column(String(36), nullable=False, comment="付款人ID")

    method = Column(String(20), nullable=False, index=True, comment="支付渠道: gateway_x/cash")
    external_ref = Column(String(200), nullable=True, index=True, comment="渠道交易号")

    amount = Column(BigInteger, nullable=False, comment="支付金额（最小货币单位）")
    currency = Column(String(3), nullable=False, default="VND", comment="货币代码 ISO-4217")

    status = Column(
        String(20),
        nullable=False,
        default="created",
        index=True,
        comment="支付状态: created/pending/success/cancelled/failed"
    )
    failure_reason = Column(Text, nullable=True, comment="失败原因")
    confirmed_by = Column(String(36), nullable=True, comment="现金确认管理员ID")

    # 报表快照，缺失时由对账任务回填
    branch_id = Column(String(36), nullable=True, comment="分校ID（快照）")
    branch_name = Column(String(200), nullable=True, comment="分校名称（快照）")
    subject_name = Column(String(500), nullable=True, comment="科目（快照，逗号分隔）")

    created_at = Column(DateTime(timezone=True), default=_now, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False, comment="更新时间")
    completed_at = Column(DateTime(timezone=True), nullable=True, comment="进入终态时间")

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id='{self.id}', method='{self.method}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class PaymentRequestLinkModel(Base):
    """支付覆盖的缴费请求（有序）"""
    __tablename__ = "payment_request_links"

    payment_id = Column(
        String(36), ForeignKey("payments.id", ondelete="CASCADE"), primary_key=True, comment="支付ID"
    )
    request_id = Column(
        String(36), ForeignKey("payment_requests.id", ondelete="CASCADE"), primary_key=True, index=True,
        comment="缴费请求ID",
    )
    position = Column(Integer, nullable=False, default=0, comment="顺序")


class PaymentSettlementModel(Base):
    """
    结算台账

    request_id 为主键：一个缴费请求至多被一笔成功支付结算
    """
    __tablename__ = "payment_settlements"

    request_id = Column(
        String(36), ForeignKey("payment_requests.id", ondelete="CASCADE"), primary_key=True, comment="缴费请求ID"
    )
    payment_id = Column(
        String(36), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True, comment="支付ID"
    )
    settled_at = Column(DateTime(timezone=True), default=_now, nullable=False, comment="结算时间")


class PaymentTransactionModel(Base):
    """支付流水（审计日志，只增不改）"""
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, comment="流水ID")
    payment_id = Column(
        String(36), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True, comment="支付ID"
    )
    type = Column(String(20), nullable=False, comment="类型: create/callback/cash_confirm/expire/system")
    message = Column(Text, nullable=True, comment="说明")
    raw_data = Column(JSON, nullable=True, comment="原始回调数据")
    performed_by = Column(String(36), nullable=True, comment="操作人")
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False, comment="创建时间")
