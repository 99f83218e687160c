"""
Settlement use-cases: initiate a payment, apply channel callbacks exactly once,
confirm cash, expire stuck payments and repair orphaned successes.

All status changes run inside one unit of work and are guarded by a
compare-and-swap on the payment's prior status, so concurrent or repeated
deliveries of the same callback apply their side effects at most once.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.billing import PaymentDTO, PaymentInitiation, PaymentTransactionDTO
from application.ports.directory import StudentDirectory
from application.ports.payment_gateway import PaymentChannel
from core.logging_config import get_logger
from domain.billing.entity import (
    OPEN_PAYMENT_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentRequest,
    PaymentStatus,
    PaymentTransaction,
    TransactionType,
    new_id,
    utcnow,
)
from domain.billing.events import SettlementEvent, SettlementResult
from domain.billing.exceptions import (
    AlreadySettledException,
    AmountMismatchException,
    CallbackNotAcceptedException,
    DirectoryUnavailableException,
    InvalidAmountException,
    MalformedCallbackException,
    PaymentNotFoundException,
    PaymentRequestNotFoundException,
    RequestNotPayableException,
    TransientStoreException,
    UnsupportedPaymentMethodException,
)
from domain.billing.money import join_subjects
from domain.billing.state_machine import DecisionKind, all_paid, decide, expiry_event
from domain.common.unit_of_work import AbstractUnitOfWork


logger = get_logger(__name__)

ChannelFactory = Callable[[str], PaymentChannel]

# A lost compare-and-swap re-reads and decides again; the status can only move
# forward, so a handful of rounds always converges.
_MAX_CAS_ROUNDS = 3


async def cancel_open_payments(
    uow: AbstractUnitOfWork,
    request_ids: list[str],
    *,
    now: datetime,
    reason: str,
    strict: bool = True,
) -> list[str]:
    """Cancel created/pending payments covering ``request_ids``.

    With ``strict`` a covering payment that already reached success (before or
    during this call) aborts the whole unit of work with AlreadySettled.
    Returns the ids of payments this call cancelled.
    """
    cancelled: list[str] = []
    payments = await uow.payment_repository.list_for_requests(request_ids)
    for payment in payments:
        if payment.status == PaymentStatus.SUCCESS:
            if strict:
                raise AlreadySettledException("A covering payment already succeeded", current=payment.snapshot())
            continue
        if payment.status not in OPEN_PAYMENT_STATUSES:
            continue
        won = await uow.payment_repository.compare_and_set_status(
            payment.id,
            OPEN_PAYMENT_STATUSES,
            PaymentStatus.CANCELLED,
            failure_reason=reason,
            completed_at=now,
        )
        if won:
            cancelled.append(payment.id)
            await uow.payment_transaction_repository.add(
                PaymentTransaction(
                    id=new_id(),
                    payment_id=payment.id,
                    type=TransactionType.SYSTEM,
                    message=f"cancelled: {reason}",
                    created_at=now,
                )
            )
            continue
        fresh = await uow.payment_repository.get(payment.id)
        if fresh is not None and fresh.status == PaymentStatus.SUCCESS and strict:
            logger.info("cancel_lost_to_settlement", payment_id=payment.id)
            raise AlreadySettledException("A covering payment settled concurrently", current=fresh.snapshot())
    return cancelled


class SettlementService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        directory: StudentDirectory,
        channel_factory: ChannelFactory,
        *,
        expiry_window: timedelta = timedelta(minutes=30),
        retry_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._directory = directory
        self._channel_factory = channel_factory
        self._expiry_window = expiry_window
        self._retry_attempts = max(1, retry_attempts)
        self._clock = clock

    def _channel(self, method: str | PaymentMethod) -> PaymentChannel:
        name = method.value if isinstance(method, PaymentMethod) else str(method)
        try:
            PaymentMethod(name)
        except ValueError:
            raise UnsupportedPaymentMethodException(name)
        return self._channel_factory(name)

    # ------------------------------------------------------------------ initiate

    async def initiate_payment(
        self,
        request_ids: list[str],
        method: str | PaymentMethod,
        student_id: str,
        *,
        paid_by: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> PaymentInitiation:
        channel = self._channel(method)
        request_ids = list(dict.fromkeys(request_ids))

        async with self._uow_factory(readonly=True) as uow:
            requests = await uow.payment_request_repository.get_many(request_ids)
        amount = self._validate_payable(request_ids, requests, student_id)
        branch_id, branch_name = await self._branch_snapshot(student_id)
        subject_name = await self._subject_snapshot(requests)

        payment = Payment(
            id=new_id(),
            request_ids=request_ids,
            student_id=student_id,
            paid_by=paid_by or student_id,
            method=PaymentMethod(channel.method),
            amount=amount,
            currency=requests[0].currency,
            status=channel.initial_status,
            branch_id=branch_id,
            branch_name=branch_name,
            subject_name=subject_name or None,
            created_at=self._clock(),
        )

        async with self._uow_factory() as uow:
            # re-check under row locks, cancel_order takes the same locks
            locked = await uow.payment_request_repository.get_many(request_ids, for_update=True)
            self._validate_payable(request_ids, locked, student_id)
            await uow.payment_repository.add(payment)
            await uow.payment_transaction_repository.add(
                PaymentTransaction(
                    id=new_id(),
                    payment_id=payment.id,
                    type=TransactionType.CREATE,
                    message=f"{payment.method.value} payment created",
                    raw_data={"request_ids": request_ids, "amount": amount},
                    performed_by=payment.paid_by,
                    created_at=payment.created_at,
                )
            )

        redirect_url = await channel.initiate(payment, client_ip=client_ip)
        logger.info(
            "payment_initiated",
            payment_id=payment.id,
            method=payment.method.value,
            amount=payment.amount,
            request_count=len(request_ids),
        )
        return PaymentInitiation(
            payment_id=payment.id,
            method=payment.method.value,
            status=payment.status.value,
            amount=payment.amount,
            currency=payment.currency,
            redirect_url=redirect_url,
        )

    def _validate_payable(self, request_ids: list[str], requests: list[PaymentRequest], student_id: str) -> int:
        found = {r.id for r in requests}
        for rid in request_ids:
            if rid not in found:
                raise PaymentRequestNotFoundException(rid)
        foreign = [r.id for r in requests if r.student_id != student_id]
        if foreign:
            raise RequestNotPayableException(foreign, "Requests do not belong to the student")
        closed = [r.id for r in requests if not r.is_payable()]
        if closed:
            raise RequestNotPayableException(closed, "Requests are not pending")
        currencies = {r.currency for r in requests}
        if len(currencies) > 1:
            raise RequestNotPayableException(request_ids, "Requests use different currencies")
        total = sum(r.final_amount for r in requests)
        if total <= 0:
            raise InvalidAmountException("amount", total, reason="must be greater than 0")
        return total

    async def _branch_snapshot(self, student_id: str) -> tuple[Optional[str], Optional[str]]:
        try:
            student = await self._directory.get_student(student_id)
            if student is None or not student.branch_id:
                return None, None
            branch = await self._directory.get_branch(student.branch_id)
            return student.branch_id, (branch.name if branch else None)
        except DirectoryUnavailableException as exc:
            # left empty, the reconciliation pass backfills it
            logger.warning("payment_snapshot_branch_unresolved", student_id=student_id, error=str(exc))
            return None, None

    async def _subject_snapshot(self, requests: Iterable[PaymentRequest]) -> str:
        subjects: list[Optional[str]] = []
        for req in requests:
            if req.class_subject:
                subjects.append(req.class_subject)
                continue
            try:
                info = await self._directory.get_class(req.class_id)
            except DirectoryUnavailableException as exc:
                logger.warning("payment_snapshot_subject_unresolved", request_id=req.id, error=str(exc))
                continue
            if info is not None:
                subjects.append(info.subject)
        return join_subjects(subjects)

    # ------------------------------------------------------------------ callbacks

    async def handle_gateway_callback(self, channel_name: str, raw: dict[str, Any]) -> SettlementResult:
        channel = self._channel(channel_name)
        if not channel.accepts_callbacks:
            logger.warning("settlement_callback_refused", channel=channel_name)
            raise CallbackNotAcceptedException(channel.method)
        event = channel.parse_callback(raw)
        logger.info(
            "settlement_callback_received",
            channel=channel_name,
            payment_id=event.payment_id,
            outcome=event.outcome.value,
            external_ref=event.external_ref,
        )
        return await self.apply_event_with_retry(channel.method, event)

    async def confirm_cash_payment(self, payment_id: str, admin_id: Optional[str], *, note: Optional[str] = None) -> SettlementResult:
        channel = self._channel(PaymentMethod.CASH)
        raw = {"payment_id": payment_id, "confirmed_by": admin_id, "status": "confirmed"}
        if note:
            raw["note"] = note
        event = channel.parse_callback(raw)
        return await self.apply_event_with_retry(channel.method, event, tx_type=TransactionType.CASH_CONFIRM)

    async def apply_event_with_retry(
        self,
        channel_name: str,
        event: SettlementEvent,
        *,
        tx_type: TransactionType = TransactionType.CALLBACK,
    ) -> SettlementResult:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=0.1, min=0.05, max=1.0),
            retry=retry_if_exception_type(TransientStoreException),
            reraise=True,
        ):
            with attempt:
                return await self.apply_event(channel_name, event, tx_type=tx_type)

    async def apply_event(
        self,
        channel_name: str,
        event: SettlementEvent,
        *,
        tx_type: TransactionType = TransactionType.CALLBACK,
    ) -> SettlementResult:
        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.get(event.payment_id)
            if payment is None:
                raise PaymentNotFoundException(event.payment_id)
            if payment.method.value != channel_name:
                raise MalformedCallbackException(channel_name, f"payment {payment.id} belongs to {payment.method.value}")
            if event.amount is not None and event.amount != payment.amount:
                logger.warning(
                    "settlement_amount_mismatch",
                    payment_id=payment.id,
                    expected=payment.amount,
                    received=event.amount,
                )
                raise AmountMismatchException(channel_name, payment.id, payment.amount, event.amount)

            for _ in range(_MAX_CAS_ROUNDS):
                decision = decide(payment, event)
                if decision.kind == DecisionKind.DUPLICATE:
                    logger.info(
                        "settlement_duplicate_ignored",
                        payment_id=payment.id,
                        stored_status=payment.status.value,
                        outcome=event.outcome.value,
                    )
                    await self._audit(uow, payment.id, tx_type, event, "duplicate ignored")
                    return await self._stored_result(uow, payment)
                if decision.kind == DecisionKind.NOOP:
                    return SettlementResult(payment_id=payment.id, status=payment.status.value)

                now = self._clock()
                terminal = decision.to_status in TERMINAL_PAYMENT_STATUSES
                await uow.payment_request_repository.get_many(payment.request_ids, for_update=True)
                won = await uow.payment_repository.compare_and_set_status(
                    payment.id,
                    [decision.from_status],
                    decision.to_status,
                    external_ref=event.external_ref,
                    failure_reason=event.reason if decision.to_status != PaymentStatus.SUCCESS else None,
                    completed_at=now if terminal else None,
                    confirmed_by=event.performed_by if payment.method == PaymentMethod.CASH else None,
                )
                if won:
                    break
                fresh = await uow.payment_repository.get(payment.id)
                if fresh is None:
                    raise PaymentNotFoundException(payment.id)
                payment = fresh
            else:
                raise TransientStoreException("Payment kept changing under settlement", details={"payment_id": payment.id})

            result = SettlementResult(payment_id=payment.id, status=decision.to_status.value, applied=True)
            if decision.settles:
                await self._apply_success(uow, payment, now, result)
            await self._audit(uow, payment.id, tx_type, event, f"{decision.from_status.value} -> {decision.to_status.value}")

        logger.info(
            "settlement_applied",
            payment_id=result.payment_id,
            status=result.status,
            paid_requests=len(result.paid_request_ids),
            paid_orders=result.paid_order_ids,
        )
        return result

    async def _apply_success(
        self, uow: AbstractUnitOfWork, payment: Payment, now: datetime, result: SettlementResult
    ) -> None:
        moved = await uow.payment_request_repository.mark_paid(payment.request_ids, payment.id, now)
        await uow.payment_repository.record_settlements(payment.id, moved)

        moved_ids = set(moved)
        untouched = [rid for rid in payment.request_ids if rid not in moved_ids]
        if untouched:
            ledger = await uow.payment_repository.settled_by(untouched)
            foreign = [rid for rid in untouched if ledger.get(rid) != payment.id]
            if foreign:
                # money moved twice for these lines; left for manual refund
                logger.warning(
                    "settlement_double_collection",
                    payment_id=payment.id,
                    request_ids=foreign,
                    settled_by={rid: ledger.get(rid) for rid in foreign},
                )
                result.already_settled_request_ids = foreign

        requests = await uow.payment_request_repository.get_many(payment.request_ids)
        for campaign_id in sorted({r.class_payment_request_id for r in requests if r.class_payment_request_id}):
            await uow.class_payment_request_repository.refresh_stats(campaign_id)

        for order_id in sorted({r.order_id for r in requests if r.order_id}):
            siblings = await uow.payment_request_repository.list_by_order(order_id)
            if not all_paid(siblings):
                continue
            if await uow.order_repository.compare_and_set_status(
                order_id, [OrderStatus.PENDING_PAYMENT], OrderStatus.PAID, paid_at=now
            ):
                result.paid_order_ids.append(order_id)
        result.paid_request_ids = list(moved)

    async def _stored_result(self, uow: AbstractUnitOfWork, payment: Payment) -> SettlementResult:
        result = SettlementResult(payment_id=payment.id, status=payment.status.value, duplicate=True)
        if payment.status != PaymentStatus.SUCCESS:
            return result
        ledger = await uow.payment_repository.settled_by(payment.request_ids)
        result.paid_request_ids = [rid for rid in payment.request_ids if ledger.get(rid) == payment.id]
        result.already_settled_request_ids = [
            rid for rid in payment.request_ids if rid in ledger and ledger[rid] != payment.id
        ]
        requests = await uow.payment_request_repository.get_many(result.paid_request_ids)
        for order_id in sorted({r.order_id for r in requests if r.order_id}):
            order = await uow.order_repository.get(order_id)
            if order is not None and order.status == OrderStatus.PAID:
                result.paid_order_ids.append(order_id)
        return result

    async def _audit(
        self, uow: AbstractUnitOfWork, payment_id: str, tx_type: TransactionType, event: SettlementEvent, message: str
    ) -> None:
        await uow.payment_transaction_repository.add(
            PaymentTransaction(
                id=new_id(),
                payment_id=payment_id,
                type=tx_type,
                message=message,
                raw_data=dict(event.raw),
                performed_by=event.performed_by,
                created_at=self._clock(),
            )
        )

    # ------------------------------------------------------------------ reads

    async def get_payment(self, payment_id: str) -> PaymentDTO:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return PaymentDTO.from_entity(payment)

    async def list_payments(self, student_id: str, status: Optional[PaymentStatus] = None) -> list[PaymentDTO]:
        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_by_student(student_id, status)
        return [PaymentDTO.from_entity(p) for p in payments]

    async def list_payment_transactions(self, payment_id: str) -> list[PaymentTransactionDTO]:
        async with self._uow_factory(readonly=True) as uow:
            if await uow.payment_repository.get(payment_id) is None:
                raise PaymentNotFoundException(payment_id)
            transactions = await uow.payment_transaction_repository.list_by_payment(payment_id)
        return [PaymentTransactionDTO.from_entity(t) for t in transactions]

    # ------------------------------------------------------------------ maintenance

    async def expire_stale_payments(self, *, limit: int = 200) -> int:
        """Fail created/pending payments older than the expiry window.

        Uses the same compare-and-swap as callbacks: whichever commits first wins.
        """
        cutoff = self._clock() - self._expiry_window
        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.payment_repository.list_stale(cutoff, limit)
        expired = 0
        for payment in stale:
            try:
                result = await self.apply_event(payment.method.value, expiry_event(payment), tx_type=TransactionType.EXPIRE)
            except Exception as exc:
                logger.warning("payment_expiry_failed", payment_id=payment.id, error=str(exc), exc_info=True)
                continue
            if result.applied:
                expired += 1
                logger.info("payment_expired", payment_id=payment.id, created_at=payment.created_at.isoformat())
        return expired

    async def repair_unsettled_success(self, *, limit: int = 200) -> int:
        """Re-apply success side effects for success payments whose requests are still open."""
        async with self._uow_factory(readonly=True) as uow:
            candidates = await uow.payment_repository.list_unsettled_success(limit)
        repaired = 0
        for candidate in candidates:
            try:
                async with self._uow_factory() as uow:
                    payment = await uow.payment_repository.get(candidate.id)
                    if payment is None or payment.status != PaymentStatus.SUCCESS:
                        continue
                    await uow.payment_request_repository.get_many(payment.request_ids, for_update=True)
                    result = SettlementResult(payment_id=payment.id, status=payment.status.value, applied=True)
                    await self._apply_success(uow, payment, payment.completed_at or self._clock(), result)
                    await uow.payment_transaction_repository.add(
                        PaymentTransaction(
                            id=new_id(),
                            payment_id=payment.id,
                            type=TransactionType.SYSTEM,
                            message="success side effects re-applied",
                            raw_data={"request_ids": result.paid_request_ids},
                            created_at=self._clock(),
                        )
                    )
            except Exception as exc:
                logger.warning("orphan_settlement_repair_failed", payment_id=candidate.id, error=str(exc), exc_info=True)
                continue
            if result.paid_request_ids:
                repaired += 1
                logger.info("orphan_settlement_repaired", payment_id=candidate.id, request_ids=result.paid_request_ids)
        return repaired
