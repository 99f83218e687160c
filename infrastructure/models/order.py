"""
订单数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, JSON, Index
from datetime import datetime, timezone

from .base import Base


class OrderModel(Base):
    """
    订单数据库模型

    业务规则都在 domain.billing.entity.Order 中
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, comment="订单ID")
    student_id = Column(String(36), nullable=False, index=True, comment="学生ID")
    branch_id = Column(String(36), nullable=True, comment="分校ID（快照）")

    # 选课明细快照：[{class_id, class_name, class_subject, class_fee}]
    items = Column(JSON, nullable=False, default=list, comment="订单明细")
    request_ids = Column(JSON, nullable=False, default=list, comment="关联的缴费请求ID（有序）")

    # 金额信息（整数最小货币单位）
    base_amount = Column(BigInteger, nullable=False, comment="原价合计")
    scholarship_percent = Column(Integer, nullable=False, default=0, comment="奖学金比例 0-100")
    scholarship_type = Column(String(50), nullable=True, comment="奖学金类型")
    discount_amount = Column(BigInteger, nullable=False, default=0, comment="优惠金额")
    final_amount = Column(BigInteger, nullable=False, comment="应付金额")
    currency = Column(String(3), nullable=False, default="VND", comment="货币代码 ISO-4217")

    status = Column(
        String(20),
        nullable=False,
        default="pending_payment",
        index=True,
        comment="订单状态: pending_payment/paid/failed/cancelled"
    )
    note = Column(Text, nullable=True, comment="备注")
    cancel_reason = Column(Text, nullable=True, comment="取消原因")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    paid_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    cancelled_at = Column(DateTime(timezone=True), nullable=True, comment="取消时间")

    __table_args__ = (
        Index("ix_orders_student_status", "student_id", "status"),
    )

    def __repr__(self):
        return f"<OrderModel(id='{self.id}', student_id='{self.student_id}', status='{self.status}')>"
