"""
缴费请求 / 班级收费活动 仓储实现
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.billing.entity import (
    CampaignStatus,
    ClassPaymentRequest,
    PaymentRequest,
    RequestStatus,
)
from domain.billing.repository import ClassPaymentRequestRepository, PaymentRequestRepository
from infrastructure.models.payment_request import ClassPaymentRequestModel, PaymentRequestModel


logger = get_logger(__name__)


class SQLAlchemyPaymentRequestRepository(PaymentRequestRepository):
    """缴费请求仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentRequestModel) -> PaymentRequest:
        return PaymentRequest(
            id=model.id,
            student_id=model.student_id,
            student_name=model.student_name,
            class_id=model.class_id,
            class_name=model.class_name,
            class_subject=model.class_subject,
            title=model.title,
            description=model.description,
            base_amount=model.base_amount,
            scholarship_percent=model.scholarship_percent,
            scholarship_type=model.scholarship_type,
            discount_amount=model.discount_amount,
            final_amount=model.final_amount,
            currency=model.currency,
            status=RequestStatus(model.status),
            order_id=model.order_id,
            class_payment_request_id=model.class_payment_request_id,
            due_date=model.due_date,
            paid_at=model.paid_at,
            payment_id=model.payment_id,
            created_at=model.created_at,
        )

    def _to_model(self, entity: PaymentRequest) -> PaymentRequestModel:
        return PaymentRequestModel(
            id=entity.id,
            order_id=entity.order_id,
            class_payment_request_id=entity.class_payment_request_id,
            student_id=entity.student_id,
            student_name=entity.student_name,
            class_id=entity.class_id,
            class_name=entity.class_name,
            class_subject=entity.class_subject,
            title=entity.title,
            description=entity.description,
            base_amount=entity.base_amount,
            scholarship_percent=entity.scholarship_percent,
            scholarship_type=entity.scholarship_type,
            discount_amount=entity.discount_amount,
            final_amount=entity.final_amount,
            currency=entity.currency,
            due_date=entity.due_date,
            status=entity.status.value,
            paid_at=entity.paid_at,
            payment_id=entity.payment_id,
            created_at=entity.created_at,
        )

    async def _select(self, *criteria, order_by=None) -> List[PaymentRequest]:
        query = select(PaymentRequestModel).where(*criteria)
        query = query.order_by(order_by if order_by is not None else PaymentRequestModel.created_at)
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return [self._to_entity(m) for m in result.scalars().all()]

    async def add_many(self, requests: list[PaymentRequest]) -> list[PaymentRequest]:
        """批量创建缴费请求"""
        self.session.add_all([self._to_model(r) for r in requests])
        await self.session.flush()
        logger.info("payment_requests_created", count=len(requests))
        return requests

    async def get(self, request_id: str) -> Optional[PaymentRequest]:
        result = await self.session.execute(
            select(PaymentRequestModel)
            .where(PaymentRequestModel.id == request_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_many(self, request_ids: list[str], *, for_update: bool = False) -> list[PaymentRequest]:
        """
        批量读取，按传入顺序返回

        for_update=True 时按 id 升序加行锁，所有写路径使用同一加锁顺序
        （SQLite 会忽略 FOR UPDATE）
        """
        if not request_ids:
            return []
        query = (
            select(PaymentRequestModel)
            .where(PaymentRequestModel.id.in_(list(request_ids)))
            .order_by(PaymentRequestModel.id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        by_id = {m.id: self._to_entity(m) for m in result.scalars().all()}
        return [by_id[rid] for rid in request_ids if rid in by_id]

    async def list_by_order(self, order_id: str) -> list[PaymentRequest]:
        return await self._select(PaymentRequestModel.order_id == order_id)

    async def list_by_student(self, student_id: str, status: Optional[RequestStatus] = None) -> list[PaymentRequest]:
        criteria = [PaymentRequestModel.student_id == student_id]
        if status:
            criteria.append(PaymentRequestModel.status == status.value)
        return await self._select(*criteria, order_by=PaymentRequestModel.created_at.desc())

    async def list_by_campaign(self, campaign_id: str) -> list[PaymentRequest]:
        return await self._select(PaymentRequestModel.class_payment_request_id == campaign_id)

    async def _move_pending(self, request_ids: list[str], values: dict) -> list[str]:
        moved: list[str] = []
        for rid in request_ids:
            result = await self.session.execute(
                update(PaymentRequestModel)
                .where(
                    PaymentRequestModel.id == rid,
                    PaymentRequestModel.status == RequestStatus.PENDING.value,
                )
                .values(**values)
            )
            if result.rowcount == 1:
                moved.append(rid)
        return moved

    async def mark_paid(self, request_ids: list[str], payment_id: Optional[str], paid_at: datetime) -> list[str]:
        """pending -> paid，返回实际变更的请求ID"""
        moved = await self._move_pending(
            request_ids,
            {"status": RequestStatus.PAID.value, "paid_at": paid_at, "payment_id": payment_id},
        )
        logger.info("payment_requests_paid", payment_id=payment_id, request_ids=moved)
        return moved

    async def cancel_pending(self, request_ids: list[str]) -> list[str]:
        moved = await self._move_pending(request_ids, {"status": RequestStatus.CANCELLED.value})
        if moved:
            logger.info("payment_requests_cancelled", request_ids=moved)
        return moved

    async def list_missing_snapshot(self, limit: int) -> list[PaymentRequest]:
        query = (
            select(PaymentRequestModel)
            .where(
                or_(
                    PaymentRequestModel.class_name.is_(None),
                    PaymentRequestModel.class_subject.is_(None),
                )
            )
            .order_by(PaymentRequestModel.created_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update_snapshot(self, request_id: str, *, class_name: Optional[str], class_subject: Optional[str]) -> None:
        await self.session.execute(
            update(PaymentRequestModel)
            .where(PaymentRequestModel.id == request_id)
            .values(class_name=class_name, class_subject=class_subject)
        )


class SQLAlchemyClassPaymentRequestRepository(ClassPaymentRequestRepository):
    """班级收费活动仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ClassPaymentRequestModel) -> ClassPaymentRequest:
        return ClassPaymentRequest(
            id=model.id,
            class_id=model.class_id,
            class_name=model.class_name,
            class_subject=model.class_subject,
            title=model.title,
            description=model.description,
            amount=model.amount,
            currency=model.currency,
            due_date=model.due_date,
            created_by=model.created_by,
            status=CampaignStatus(model.status),
            total_students=model.total_students,
            paid_count=model.paid_count,
            total_collected=model.total_collected,
            created_at=model.created_at,
        )

    async def add(self, campaign: ClassPaymentRequest) -> ClassPaymentRequest:
        self.session.add(
            ClassPaymentRequestModel(
                id=campaign.id,
                class_id=campaign.class_id,
                class_name=campaign.class_name,
                class_subject=campaign.class_subject,
                title=campaign.title,
                description=campaign.description,
                amount=campaign.amount,
                currency=campaign.currency,
                due_date=campaign.due_date,
                created_by=campaign.created_by,
                status=campaign.status.value,
                total_students=campaign.total_students,
                paid_count=campaign.paid_count,
                total_collected=campaign.total_collected,
                created_at=campaign.created_at,
            )
        )
        await self.session.flush()
        logger.info("class_payment_request_created", campaign_id=campaign.id, class_id=campaign.class_id)
        return campaign

    async def get(self, campaign_id: str) -> Optional[ClassPaymentRequest]:
        result = await self.session.execute(
            select(ClassPaymentRequestModel)
            .where(ClassPaymentRequestModel.id == campaign_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_by_class(self, class_id: str) -> list[ClassPaymentRequest]:
        result = await self.session.execute(
            select(ClassPaymentRequestModel)
            .where(ClassPaymentRequestModel.class_id == class_id)
            .order_by(ClassPaymentRequestModel.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def compare_and_set_status(self, campaign_id: str, expected: CampaignStatus, new: CampaignStatus) -> bool:
        result = await self.session.execute(
            update(ClassPaymentRequestModel)
            .where(
                ClassPaymentRequestModel.id == campaign_id,
                ClassPaymentRequestModel.status == expected.value,
            )
            .values(status=new.value)
        )
        return result.rowcount == 1

    async def refresh_stats(self, campaign_id: str) -> Optional[ClassPaymentRequest]:
        """按缴费请求重新统计已缴人数与金额"""
        result = await self.session.execute(
            select(
                func.count(PaymentRequestModel.id),
                func.coalesce(func.sum(PaymentRequestModel.final_amount), 0),
            ).where(
                PaymentRequestModel.class_payment_request_id == campaign_id,
                PaymentRequestModel.status == RequestStatus.PAID.value,
            )
        )
        paid_count, total_collected = result.one()
        await self.session.execute(
            update(ClassPaymentRequestModel)
            .where(ClassPaymentRequestModel.id == campaign_id)
            .values(paid_count=paid_count, total_collected=int(total_collected))
        )
        return await self.get(campaign_id)
