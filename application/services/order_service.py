"""
Order aggregation: validate a class selection, price it, and persist the order
together with its payment requests. Also order cancellation.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Callable, Optional

from application.dtos.billing import ClassInfo, OrderDTO, PaymentRequestDTO
from application.ports.directory import StudentDirectory
from application.services.payment_request_service import PaymentRequestFanout
from application.services.settlement_service import cancel_open_payments
from core.logging_config import get_logger
from domain.billing.entity import Order, OrderItem, OrderStatus, new_id, utcnow
from domain.billing.exceptions import (
    AlreadySettledException,
    ClassNotFoundException,
    CrossBranchSelectionException,
    DuplicateClassSelectionException,
    EmptySelectionException,
    InvalidStateTransitionException,
    OrderNotFoundException,
    StudentNotFoundException,
)
from domain.billing.money import ScholarshipTerms, price
from domain.common.unit_of_work import AbstractUnitOfWork


logger = get_logger(__name__)


class OrderService:
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

    async def create_order(
        self,
        student_id: str,
        class_ids: list[str],
        terms: Optional[ScholarshipTerms] = None,
        *,
        note: Optional[str] = None,
    ) -> OrderDTO:
        """Price the selection and persist Order + PaymentRequests atomically.

        ``terms`` defaults to the scholarship on the student's profile, read
        once here; later profile edits do not reprice existing orders.
        """
        if not class_ids:
            raise EmptySelectionException()
        duplicates = sorted(cid for cid, n in Counter(class_ids).items() if n > 1)
        if duplicates:
            raise DuplicateClassSelectionException(duplicates)

        student = await self._directory.get_student(student_id)
        if student is None:
            raise StudentNotFoundException(student_id)
        if terms is None:
            terms = ScholarshipTerms(percent=student.scholarship_percent, type=student.scholarship_type)

        classes: list[ClassInfo] = []
        for class_id in class_ids:
            info = await self._directory.get_class(class_id)
            if info is None:
                raise ClassNotFoundException(class_id)
            if student.branch_id and info.branch_id != student.branch_id:
                raise CrossBranchSelectionException(class_id, info.branch_id, student.branch_id)
            classes.append(info)

        items = [
            OrderItem(class_id=c.id, class_name=c.name, class_subject=c.subject, class_fee=c.fee)
            for c in classes
        ]
        pricing = price(sum(i.class_fee for i in items), terms.percent)
        now = self._clock()
        order = Order(
            id=new_id(),
            student_id=student_id,
            branch_id=student.branch_id,
            items=items,
            base_amount=pricing.base,
            scholarship_percent=pricing.percent,
            scholarship_type=terms.type,
            discount_amount=pricing.discount,
            final_amount=pricing.final,
            currency=self._currency,
            status=OrderStatus.PAID if pricing.fully_discounted else OrderStatus.PENDING_PAYMENT,
            created_at=now,
            paid_at=now if pricing.fully_discounted else None,
            note=note,
        )
        requests = self._fanout.for_order(order, student_name=student.name)
        order.request_ids = [r.id for r in requests]

        async with self._uow_factory() as uow:
            await uow.order_repository.add(order)
            await uow.payment_request_repository.add_many(requests)

        logger.info(
            "order_created",
            order_id=order.id,
            student_id=student_id,
            status=order.status.value,
            base_amount=order.base_amount,
            final_amount=order.final_amount,
            class_count=len(items),
        )
        return OrderDTO.from_entity(order)

    async def cancel_order(self, order_id: str, *, reason: Optional[str] = None) -> OrderDTO:
        """Cancel a pending order with its open payments and pending requests.

        Raises AlreadySettled when a covering payment succeeded, including one
        that lands while this runs; nothing is cancelled in that case.
        """
        now = self._clock()
        async with self._uow_factory() as uow:
            order = await uow.order_repository.get(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            if order.status == OrderStatus.CANCELLED:
                return OrderDTO.from_entity(order)
            if order.status == OrderStatus.PAID:
                raise AlreadySettledException("Order is already paid", current=order.snapshot())
            if order.status != OrderStatus.PENDING_PAYMENT:
                raise InvalidStateTransitionException(
                    "Order", order.status.value, OrderStatus.CANCELLED.value, current=order.snapshot()
                )

            await uow.payment_request_repository.get_many(order.request_ids, for_update=True)
            try:
                await cancel_open_payments(uow, order.request_ids, now=now, reason="order_cancelled")
            except AlreadySettledException:
                fresh = await uow.order_repository.get(order_id)
                raise AlreadySettledException(
                    "Order has a settled payment", current=(fresh or order).snapshot()
                )

            won = await uow.order_repository.compare_and_set_status(
                order_id,
                [OrderStatus.PENDING_PAYMENT],
                OrderStatus.CANCELLED,
                cancelled_at=now,
                cancel_reason=reason,
            )
            if not won:
                fresh = await uow.order_repository.get(order_id)
                if fresh is not None and fresh.status == OrderStatus.CANCELLED:
                    return OrderDTO.from_entity(fresh)
                raise AlreadySettledException("Order changed while cancelling", current=fresh.snapshot() if fresh else None)
            await uow.payment_request_repository.cancel_pending(order.request_ids)
            order.mark_cancelled(reason, at=now)

        logger.info("order_cancelled", order_id=order_id, reason=reason)
        return OrderDTO.from_entity(order)

    async def get_order(self, order_id: str) -> OrderDTO:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        return OrderDTO.from_entity(order)

    async def list_orders(self, student_id: str, status: Optional[OrderStatus] = None) -> list[OrderDTO]:
        async with self._uow_factory(readonly=True) as uow:
            orders = await uow.order_repository.list_by_student(student_id, status)
        return [OrderDTO.from_entity(o) for o in orders]

    async def list_order_requests(self, order_id: str) -> list[PaymentRequestDTO]:
        now = self._clock()
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            requests = await uow.payment_request_repository.list_by_order(order_id)
        return [PaymentRequestDTO.from_entity(r, now) for r in requests]
