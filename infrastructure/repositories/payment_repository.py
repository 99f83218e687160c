"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.billing.entity import (
    OPEN_PAYMENT_STATUSES,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    RequestStatus,
    TransactionType,
)
from domain.billing.repository import PaymentRepository, PaymentTransactionRepository
from infrastructure.models.payment import (
    PaymentModel,
    PaymentRequestLinkModel,
    PaymentSettlementModel,
    PaymentTransactionModel,
)
from infrastructure.models.payment_request import PaymentRequestModel


logger = get_logger(__name__)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel, request_ids: list[str]) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            request_ids=request_ids,
            student_id=model.student_id,
            paid_by=model.paid_by,
            method=PaymentMethod(model.method),
            amount=model.amount,
            currency=model.currency,
            status=PaymentStatus(model.status),
            branch_id=model.branch_id,
            branch_name=model.branch_name,
            subject_name=model.subject_name,
            external_ref=model.external_ref,
            failure_reason=model.failure_reason,
            confirmed_by=model.confirmed_by,
            created_at=model.created_at,
            completed_at=model.completed_at,
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            student_id=entity.student_id,
            paid_by=entity.paid_by,
            method=entity.method.value,
            external_ref=entity.external_ref,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            failure_reason=entity.failure_reason,
            confirmed_by=entity.confirmed_by,
            branch_id=entity.branch_id,
            branch_name=entity.branch_name,
            subject_name=entity.subject_name,
            created_at=entity.created_at,
            completed_at=entity.completed_at,
        )

    async def _request_ids_for(self, payment_ids: list[str]) -> dict[str, list[str]]:
        if not payment_ids:
            return {}
        result = await self.session.execute(
            select(PaymentRequestLinkModel.payment_id, PaymentRequestLinkModel.request_id)
            .where(PaymentRequestLinkModel.payment_id.in_(payment_ids))
            .order_by(PaymentRequestLinkModel.payment_id, PaymentRequestLinkModel.position)
        )
        links: dict[str, list[str]] = {pid: [] for pid in payment_ids}
        for payment_id, request_id in result.all():
            links[payment_id].append(request_id)
        return links

    async def _hydrate(self, models) -> List[Payment]:
        models = list(models)
        links = await self._request_ids_for([m.id for m in models])
        return [self._to_entity(m, links.get(m.id, [])) for m in models]

    async def _fetch(self, query) -> List[Payment]:
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return await self._hydrate(result.scalars().all())

    async def add(self, payment: Payment) -> Payment:
        """创建支付记录及其覆盖的缴费请求关联"""
        self.session.add(self._to_model(payment))
        self.session.add_all(
            [
                PaymentRequestLinkModel(payment_id=payment.id, request_id=rid, position=i)
                for i, rid in enumerate(payment.request_ids)
            ]
        )
        await self.session.flush()
        logger.info(
            "payment_created",
            payment_id=payment.id,
            method=payment.method.value,
            amount=payment.amount,
            request_ids=payment.request_ids,
        )
        return payment

    async def get(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付（总是读取数据库最新值）"""
        payments = await self._fetch(select(PaymentModel).where(PaymentModel.id == payment_id))
        return payments[0] if payments else None

    async def list_by_student(self, student_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        """获取学生的支付列表"""
        query = select(PaymentModel).where(PaymentModel.student_id == student_id)
        if status:
            query = query.where(PaymentModel.status == status.value)
        return await self._fetch(query.order_by(PaymentModel.created_at.desc()))

    async def list_for_requests(
        self, request_ids: list[str], statuses: Optional[Iterable[PaymentStatus]] = None
    ) -> List[Payment]:
        if not request_ids:
            return []
        linked = select(PaymentRequestLinkModel.payment_id).where(
            PaymentRequestLinkModel.request_id.in_(list(request_ids))
        )
        query = select(PaymentModel).where(PaymentModel.id.in_(linked))
        if statuses is not None:
            query = query.where(PaymentModel.status.in_([s.value for s in statuses]))
        return await self._fetch(query.order_by(PaymentModel.id))

    async def compare_and_set_status(
        self,
        payment_id: str,
        expected: Iterable[PaymentStatus],
        new: PaymentStatus,
        *,
        external_ref: Optional[str] = None,
        failure_reason: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        confirmed_by: Optional[str] = None,
    ) -> bool:
        """条件更新：仅当当前状态属于 expected 时写入，返回是否赢得更新"""
        values = {"status": new.value}
        if external_ref is not None:
            values["external_ref"] = external_ref
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        if completed_at is not None:
            values["completed_at"] = completed_at
        if confirmed_by is not None:
            values["confirmed_by"] = confirmed_by
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.id == payment_id,
                PaymentModel.status.in_([s.value for s in expected]),
            )
            .values(**values)
        )
        won = result.rowcount == 1
        logger.info("payment_status_cas", payment_id=payment_id, status=new.value, won=won)
        return won

    async def record_settlements(self, payment_id: str, request_ids: list[str]) -> None:
        """写入结算台账，request_id 主键保证一个请求只被一笔支付结算"""
        if not request_ids:
            return
        self.session.add_all(
            [PaymentSettlementModel(request_id=rid, payment_id=payment_id) for rid in request_ids]
        )
        await self.session.flush()

    async def settled_by(self, request_ids: list[str]) -> dict[str, str]:
        if not request_ids:
            return {}
        result = await self.session.execute(
            select(PaymentSettlementModel.request_id, PaymentSettlementModel.payment_id).where(
                PaymentSettlementModel.request_id.in_(list(request_ids))
            )
        )
        return {request_id: payment_id for request_id, payment_id in result.all()}

    async def update_snapshot(self, payment_id: str, *, branch_name: Optional[str], subject_name: Optional[str]) -> None:
        await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .values(branch_name=branch_name, subject_name=subject_name)
        )

    async def list_missing_snapshot(self, limit: int) -> List[Payment]:
        query = (
            select(PaymentModel)
            .where(or_(PaymentModel.branch_name.is_(None), PaymentModel.subject_name.is_(None)))
            .order_by(PaymentModel.created_at)
            .limit(limit)
        )
        return await self._fetch(query)

    async def list_stale(self, created_before: datetime, limit: int) -> List[Payment]:
        query = (
            select(PaymentModel)
            .where(
                PaymentModel.status.in_([s.value for s in OPEN_PAYMENT_STATUSES]),
                PaymentModel.created_at < created_before,
            )
            .order_by(PaymentModel.created_at)
            .limit(limit)
        )
        return await self._fetch(query)

    async def list_unsettled_success(self, limit: int) -> List[Payment]:
        # 成功支付中仍有 pending 且未入台账的关联请求
        open_link = exists().where(
            and_(
                PaymentRequestLinkModel.payment_id == PaymentModel.id,
                PaymentRequestModel.id == PaymentRequestLinkModel.request_id,
                PaymentRequestModel.status == RequestStatus.PENDING.value,
                ~exists().where(PaymentSettlementModel.request_id == PaymentRequestLinkModel.request_id),
            )
        )
        query = (
            select(PaymentModel)
            .where(PaymentModel.status == PaymentStatus.SUCCESS.value, open_link)
            .order_by(PaymentModel.completed_at)
            .limit(limit)
        )
        return await self._fetch(query)


class SQLAlchemyPaymentTransactionRepository(PaymentTransactionRepository):
    """支付流水仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentTransactionModel) -> PaymentTransaction:
        return PaymentTransaction(
            id=model.id,
            payment_id=model.payment_id,
            type=TransactionType(model.type),
            message=model.message,
            raw_data=model.raw_data or {},
            performed_by=model.performed_by,
            created_at=model.created_at,
        )

    async def add(self, transaction: PaymentTransaction) -> PaymentTransaction:
        self.session.add(
            PaymentTransactionModel(
                id=transaction.id,
                payment_id=transaction.payment_id,
                type=transaction.type.value,
                message=transaction.message,
                raw_data=transaction.raw_data,
                performed_by=transaction.performed_by,
                created_at=transaction.created_at,
            )
        )
        await self.session.flush()
        return transaction

    async def list_by_payment(self, payment_id: str) -> List[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransactionModel)
            .where(PaymentTransactionModel.payment_id == payment_id)
            .order_by(PaymentTransactionModel.created_at)
        )
        return [self._to_entity(m) for m in result.scalars().all()]
