"""
订单仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.billing.entity import Order, OrderItem, OrderStatus
from domain.billing.repository import OrderRepository
from infrastructure.models.order import OrderModel


logger = get_logger(__name__)


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        return Order(
            id=model.id,
            student_id=model.student_id,
            branch_id=model.branch_id,
            items=[OrderItem(**item) for item in (model.items or [])],
            base_amount=model.base_amount,
            scholarship_percent=model.scholarship_percent,
            scholarship_type=model.scholarship_type,
            discount_amount=model.discount_amount,
            final_amount=model.final_amount,
            currency=model.currency,
            status=OrderStatus(model.status),
            request_ids=list(model.request_ids or []),
            created_at=model.created_at,
            paid_at=model.paid_at,
            cancelled_at=model.cancelled_at,
            cancel_reason=model.cancel_reason,
            note=model.note,
        )

    def _to_model(self, entity: Order) -> OrderModel:
        """将领域实体转换为数据库模型"""
        return OrderModel(
            id=entity.id,
            student_id=entity.student_id,
            branch_id=entity.branch_id,
            items=[
                {
                    "class_id": item.class_id,
                    "class_name": item.class_name,
                    "class_subject": item.class_subject,
                    "class_fee": item.class_fee,
                }
                for item in entity.items
            ],
            request_ids=list(entity.request_ids),
            base_amount=entity.base_amount,
            scholarship_percent=entity.scholarship_percent,
            scholarship_type=entity.scholarship_type,
            discount_amount=entity.discount_amount,
            final_amount=entity.final_amount,
            currency=entity.currency,
            status=entity.status.value,
            note=entity.note,
            cancel_reason=entity.cancel_reason,
            created_at=entity.created_at,
            paid_at=entity.paid_at,
            cancelled_at=entity.cancelled_at,
        )

    async def add(self, order: Order) -> Order:
        """创建订单"""
        db_order = self._to_model(order)
        self.session.add(db_order)
        await self.session.flush()
        logger.info(
            "order_created",
            order_id=db_order.id,
            student_id=db_order.student_id,
            final_amount=db_order.final_amount,
            status=db_order.status,
        )
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        """根据ID获取订单（总是读取数据库最新值）"""
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.id == order_id)
            .execution_options(populate_existing=True)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def list_by_student(self, student_id: str, status: Optional[OrderStatus] = None) -> List[Order]:
        """获取学生的订单列表"""
        query = select(OrderModel).where(OrderModel.student_id == student_id)
        if status:
            query = query.where(OrderModel.status == status.value)
        query = query.order_by(OrderModel.created_at.desc())
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return [self._to_entity(o) for o in result.scalars().all()]

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: Iterable[OrderStatus],
        new: OrderStatus,
        *,
        paid_at: Optional[datetime] = None,
        cancelled_at: Optional[datetime] = None,
        cancel_reason: Optional[str] = None,
    ) -> bool:
        """仅当当前状态属于 expected 时更新，返回是否更新成功"""
        values = {"status": new.value}
        if paid_at is not None:
            values["paid_at"] = paid_at
        if cancelled_at is not None:
            values["cancelled_at"] = cancelled_at
        if cancel_reason is not None:
            values["cancel_reason"] = cancel_reason
        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.id == order_id,
                OrderModel.status.in_([s.value for s in expected]),
            )
            .values(**values)
        )
        won = result.rowcount == 1
        if won:
            logger.info("order_status_changed", order_id=order_id, status=new.value)
        return won
