"""
Payment request fanout and class billing campaigns.

The fanout turns a priced Order (or a campaign) into one PaymentRequest per
billing line. It is pure: persistence happens in the caller's unit of work so
an order and its lines commit together.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Callable, Iterable, Optional

from application.dtos.billing import (
    CampaignSummary,
    ClassPaymentRequestDTO,
    CreateClassPaymentRequest,
    PaymentRequestDTO,
    StudentProfile,
)
from application.ports.directory import StudentDirectory
from application.services.settlement_service import cancel_open_payments
from core.logging_config import get_logger
from domain.billing.entity import (
    CampaignStatus,
    ClassPaymentRequest,
    Order,
    OrderStatus,
    PaymentRequest,
    RequestStatus,
    new_id,
    utcnow,
)
from domain.billing.exceptions import (
    CampaignNotFoundException,
    ClassNotFoundException,
    InvalidAmountException,
    PaymentRequestNotFoundException,
)
from domain.billing.money import price, split_pricing
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork


logger = get_logger(__name__)


class PaymentRequestFanout:
    """Builds billing lines; shared by checkout orders and admin campaigns."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def for_order(self, order: Order, *, student_name: Optional[str] = None) -> list[PaymentRequest]:
        now = self._clock()
        requests: list[PaymentRequest] = []
        # 行金额之和必须等于订单金额
        lines = split_pricing([item.class_fee for item in order.items], order.scholarship_percent)
        for item, pricing in zip(order.items, lines):
            settled = order.status == OrderStatus.PAID or pricing.fully_discounted
            requests.append(
                PaymentRequest(
                    id=new_id(),
                    order_id=order.id,
                    student_id=order.student_id,
                    student_name=student_name,
                    class_id=item.class_id,
                    class_name=item.class_name,
                    class_subject=item.class_subject,
                    title=f"Tuition - {item.class_name}",
                    base_amount=pricing.base,
                    scholarship_percent=pricing.percent,
                    scholarship_type=order.scholarship_type,
                    discount_amount=pricing.discount,
                    final_amount=pricing.final,
                    currency=order.currency,
                    status=RequestStatus.PAID if settled else RequestStatus.PENDING,
                    paid_at=(order.paid_at or now) if settled else None,
                    created_at=now,
                )
            )
        return requests

    def for_campaign(self, campaign: ClassPaymentRequest, students: Iterable[StudentProfile]) -> list[PaymentRequest]:
        now = self._clock()
        requests: list[PaymentRequest] = []
        for student in students:
            pricing = price(campaign.amount, student.scholarship_percent)
            requests.append(
                PaymentRequest(
                    id=new_id(),
                    class_payment_request_id=campaign.id,
                    student_id=student.id,
                    student_name=student.name,
                    class_id=campaign.class_id,
                    class_name=campaign.class_name,
                    class_subject=campaign.class_subject,
                    title=campaign.title,
                    description=campaign.description,
                    base_amount=pricing.base,
                    scholarship_percent=pricing.percent,
                    scholarship_type=student.scholarship_type,
                    discount_amount=pricing.discount,
                    final_amount=pricing.final,
                    currency=campaign.currency,
                    due_date=campaign.due_date,
                    status=RequestStatus.PAID if pricing.fully_discounted else RequestStatus.PENDING,
                    paid_at=now if pricing.fully_discounted else None,
                    created_at=now,
                )
            )
        return requests


class PaymentRequestService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        directory: StudentDirectory,
        *,
        currency: str = "VND",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._directory = directory
        self._currency = currency
        self._clock = clock
        self._fanout = PaymentRequestFanout(clock)

    async def create_class_payment_request(
        self, cmd: CreateClassPaymentRequest, created_by: str
    ) -> ClassPaymentRequestDTO:
        info = await self._directory.get_class(cmd.class_id)
        if info is None:
            raise ClassNotFoundException(cmd.class_id)
        amount = cmd.amount if cmd.amount is not None else info.fee
        if amount <= 0:
            raise InvalidAmountException("amount", amount, reason="must be greater than 0")
        if not info.student_ids:
            raise DomainValidationException("Class has no students", field="class_id", details={"class_id": info.id})

        students: list[StudentProfile] = []
        for student_id in dict.fromkeys(info.student_ids):
            profile = await self._directory.get_student(student_id)
            if profile is None:
                logger.warning("campaign_student_missing", class_id=info.id, student_id=student_id)
                continue
            students.append(profile)

        campaign = ClassPaymentRequest(
            id=new_id(),
            class_id=info.id,
            class_name=info.name,
            class_subject=info.subject,
            title=cmd.title,
            description=cmd.description,
            amount=amount,
            currency=self._currency,
            due_date=cmd.due_date,
            created_by=created_by,
            created_at=self._clock(),
        )
        requests = self._fanout.for_campaign(campaign, students)
        campaign.total_students = len(requests)
        campaign.paid_count = sum(1 for r in requests if r.status == RequestStatus.PAID)

        async with self._uow_factory() as uow:
            await uow.class_payment_request_repository.add(campaign)
            await uow.payment_request_repository.add_many(requests)

        logger.info(
            "class_payment_request_created",
            campaign_id=campaign.id,
            class_id=campaign.class_id,
            amount=amount,
            total_students=campaign.total_students,
        )
        return ClassPaymentRequestDTO.from_entity(campaign)

    async def cancel_class_payment_request(self, campaign_id: str) -> ClassPaymentRequestDTO:
        async with self._uow_factory() as uow:
            campaign = await uow.class_payment_request_repository.get(campaign_id)
            if campaign is None:
                raise CampaignNotFoundException(campaign_id)
            if campaign.status == CampaignStatus.CANCELLED:
                return ClassPaymentRequestDTO.from_entity(campaign)
            await uow.class_payment_request_repository.compare_and_set_status(
                campaign_id, CampaignStatus.ACTIVE, CampaignStatus.CANCELLED
            )
            requests = await uow.payment_request_repository.list_by_campaign(campaign_id)
            pending = [r.id for r in requests if r.status == RequestStatus.PENDING]
            if pending:
                await uow.payment_request_repository.get_many(pending, for_update=True)
                await cancel_open_payments(uow, pending, now=self._clock(), reason="campaign_cancelled", strict=False)
                cancelled = await uow.payment_request_repository.cancel_pending(pending)
            else:
                cancelled = []
            campaign.mark_cancelled()
        logger.info("class_payment_request_cancelled", campaign_id=campaign_id, cancelled_requests=len(cancelled))
        return ClassPaymentRequestDTO.from_entity(campaign)

    async def list_class_payment_requests(self, class_id: str) -> list[ClassPaymentRequestDTO]:
        async with self._uow_factory(readonly=True) as uow:
            campaigns = await uow.class_payment_request_repository.list_by_class(class_id)
        return [ClassPaymentRequestDTO.from_entity(c) for c in campaigns]

    async def get_campaign_summary(self, campaign_id: str) -> CampaignSummary:
        now = self._clock()
        async with self._uow_factory(readonly=True) as uow:
            campaign = await uow.class_payment_request_repository.get(campaign_id)
            if campaign is None:
                raise CampaignNotFoundException(campaign_id)
            requests = await uow.payment_request_repository.list_by_campaign(campaign_id)
        counts = Counter(r.effective_status(now) for r in requests)
        return CampaignSummary(
            campaign=ClassPaymentRequestDTO.from_entity(campaign),
            paid_count=counts[RequestStatus.PAID],
            pending_count=counts[RequestStatus.PENDING],
            overdue_count=counts[RequestStatus.OVERDUE],
            cancelled_count=counts[RequestStatus.CANCELLED],
            total_collected=sum(r.final_amount for r in requests if r.status == RequestStatus.PAID),
            total_outstanding=sum(r.final_amount for r in requests if r.status == RequestStatus.PENDING),
        )

    async def list_student_requests(
        self, student_id: str, status: Optional[RequestStatus] = None
    ) -> list[PaymentRequestDTO]:
        now = self._clock()
        stored = RequestStatus.PENDING if status == RequestStatus.OVERDUE else status
        async with self._uow_factory(readonly=True) as uow:
            requests = await uow.payment_request_repository.list_by_student(student_id, stored)
        views = [PaymentRequestDTO.from_entity(r, now) for r in requests]
        if status is not None:
            views = [v for v in views if v.status == status.value]
        return views

    async def get_request(self, request_id: str) -> PaymentRequestDTO:
        async with self._uow_factory(readonly=True) as uow:
            req = await uow.payment_request_repository.get(request_id)
        if req is None:
            raise PaymentRequestNotFoundException(request_id)
        return PaymentRequestDTO.from_entity(req, self._clock())
