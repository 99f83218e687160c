"""
缴费请求与班级收费活动数据库模型
"""
from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, Index, ForeignKey
from datetime import datetime, timezone

from .base import Base


def _now():
    return datetime.now(timezone.utc)


class ClassPaymentRequestModel(Base):
    """班级收费活动（管理员对整个班级发起收费）"""
    __tablename__ = "class_payment_requests"

    id = Column(String(36), primary_key=True, comment="活动ID")
    class_id = Column(String(36), nullable=False, index=True, comment="班级ID")
    class_name = Column(String(200), nullable=True, comment="班级名称（快照）")
    class_subject = Column(String(200), nullable=True, comment="科目（快照）")
    title = Column(String(200), nullable=False, comment="标题")
    description = Column(Text, nullable=True, comment="描述")
    amount = Column(BigInteger, nullable=False, comment="每位学生原价金额")
    currency = Column(String(3), nullable=False, default="VND", comment="货币代码")
    due_date = Column(DateTime(timezone=True), nullable=True, comment="截止日期")
    created_by = Column(String(36), nullable=False, comment="创建人ID")
    status = Column(String(20), nullable=False, default="active", index=True, comment="状态: active/cancelled")

    # 统计（结算时重算）
    total_students = Column(Integer, nullable=False, default=0, comment="学生总数")
    paid_count = Column(Integer, nullable=False, default=0, comment="已缴人数")
    total_collected = Column(BigInteger, nullable=False, default=0, comment="已收金额")

    created_at = Column(DateTime(timezone=True), default=_now, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False, comment="更新时间")


class PaymentRequestModel(Base):
    """缴费请求：某学生对某班级应缴的一笔费用"""
    __tablename__ = "payment_requests"

    id = Column(String(36), primary_key=True, comment="缴费请求ID")
    order_id = Column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="所属订单ID",
    )
    class_payment_request_id = Column(
        String(36),
        ForeignKey("class_payment_requests.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="所属收费活动ID",
    )
    student_id = Column(String(36), nullable=False, index=True, comment="学生ID")
    student_name = Column(String(200), nullable=True, comment="学生姓名（快照）")
    class_id = Column(String(36), nullable=False, index=True, comment="班级ID")
    class_name = Column(String(200), nullable=True, comment="班级名称（快照）")
    class_subject = Column(String(200), nullable=True, comment="科目（快照，优先于实时班级数据）")
    title = Column(String(200), nullable=False, comment="标题")
    description = Column(Text, nullable=True, comment="描述")

    base_amount = Column(BigInteger, nullable=False, comment="原价")
    scholarship_percent = Column(Integer, nullable=False, default=0, comment="奖学金比例")
    scholarship_type = Column(String(50), nullable=True, comment="奖学金类型")
    discount_amount = Column(BigInteger, nullable=False, default=0, comment="优惠金额")
    final_amount = Column(BigInteger, nullable=False, comment="应付金额")
    currency = Column(String(3), nullable=False, default="VND", comment="货币代码")

    due_date = Column(DateTime(timezone=True), nullable=True, comment="截止日期")
    # overdue 不落库，读取时由 pending + due_date 推导
    status = Column(String(20), nullable=False, default="pending", index=True, comment="状态: pending/paid/cancelled")
    paid_at = Column(DateTime(timezone=True), nullable=True, comment="缴费时间")
    payment_id = Column(String(36), nullable=True, index=True, comment="结算该请求的支付ID")

    created_at = Column(DateTime(timezone=True), default=_now, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False, comment="更新时间")

    __table_args__ = (
        Index("ix_payment_requests_student_status", "student_id", "status"),
    )

    def __repr__(self):
        return f"<PaymentRequestModel(id='{self.id}', student_id='{self.student_id}', status='{self.status}')>"
