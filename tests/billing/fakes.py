"""In-memory doubles for the billing ports.

The store mimics what the SQL repositories guarantee: compare-and-set writes
are atomic, each unit of work can roll back, and every repository call yields
to the event loop so concurrent use cases interleave.
"""
from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from application.dtos.billing import BranchInfo, ClassInfo, StudentProfile
from domain.billing.entity import (
    OPEN_PAYMENT_STATUSES,
    CampaignStatus,
    ClassPaymentRequest,
    Order,
    OrderStatus,
    Payment,
    PaymentRequest,
    PaymentStatus,
    PaymentTransaction,
    RequestStatus,
)
from domain.billing.events import SettlementEvent, SettlementOutcome
from domain.billing.exceptions import DirectoryUnavailableException, InvalidSignatureException
from domain.billing.repository import (
    ClassPaymentRequestRepository,
    OrderRepository,
    PaymentRepository,
    PaymentRequestRepository,
    PaymentTransactionRepository,
)
from domain.common.exceptions import TransientStoreException
from domain.common.unit_of_work import AbstractUnitOfWork


_MISSING = object()


class FixedClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class InMemoryStore:
    def __init__(self) -> None:
        self.orders: dict[str, Order] = {}
        self.requests: dict[str, PaymentRequest] = {}
        self.campaigns: dict[str, ClassPaymentRequest] = {}
        self.payments: dict[str, Payment] = {}
        self.settlements: dict[str, str] = {}
        self.transactions: list[PaymentTransaction] = []
        # 注入故障：接下来 N 次提交抛出可重试异常
        self.fail_commits = 0
        self.commits = 0

    def transactions_for(self, payment_id: str) -> list[PaymentTransaction]:
        return [t for t in self.transactions if t.payment_id == payment_id]


class _Repo:
    def __init__(self, store: InMemoryStore, undo: list) -> None:
        self.store = store
        self._undo = undo

    def _put(self, table: dict, key: str, value: Any) -> None:
        self._undo.append((table, key, table.get(key, _MISSING)))
        table[key] = value

    @staticmethod
    async def _yield() -> None:
        await asyncio.sleep(0)


class FakeOrderRepository(_Repo, OrderRepository):
    async def add(self, order: Order) -> Order:
        await self._yield()
        self._put(self.store.orders, order.id, copy.deepcopy(order))
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        await self._yield()
        order = self.store.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def list_by_student(self, student_id: str, status: Optional[OrderStatus] = None) -> list[Order]:
        await self._yield()
        return [
            copy.deepcopy(o)
            for o in self.store.orders.values()
            if o.student_id == student_id and (status is None or o.status == status)
        ]

    async def compare_and_set_status(self, order_id, expected, new, *, paid_at=None, cancelled_at=None, cancel_reason=None) -> bool:
        await self._yield()
        current = self.store.orders.get(order_id)
        if current is None or current.status not in set(expected):
            return False
        updated = copy.deepcopy(current)
        updated.status = new
        updated.paid_at = paid_at or updated.paid_at
        updated.cancelled_at = cancelled_at or updated.cancelled_at
        updated.cancel_reason = cancel_reason or updated.cancel_reason
        self._put(self.store.orders, order_id, updated)
        return True


class FakePaymentRequestRepository(_Repo, PaymentRequestRepository):
    async def add_many(self, requests: list[PaymentRequest]) -> list[PaymentRequest]:
        await self._yield()
        for req in requests:
            self._put(self.store.requests, req.id, copy.deepcopy(req))
        return requests

    async def get(self, request_id: str) -> Optional[PaymentRequest]:
        await self._yield()
        req = self.store.requests.get(request_id)
        return copy.deepcopy(req) if req else None

    async def get_many(self, request_ids: list[str], *, for_update: bool = False) -> list[PaymentRequest]:
        await self._yield()
        return [copy.deepcopy(self.store.requests[rid]) for rid in request_ids if rid in self.store.requests]

    async def list_by_order(self, order_id: str) -> list[PaymentRequest]:
        await self._yield()
        return [copy.deepcopy(r) for r in self.store.requests.values() if r.order_id == order_id]

    async def list_by_student(self, student_id: str, status: Optional[RequestStatus] = None) -> list[PaymentRequest]:
        await self._yield()
        return [
            copy.deepcopy(r)
            for r in self.store.requests.values()
            if r.student_id == student_id and (status is None or r.status == status)
        ]

    async def list_by_campaign(self, campaign_id: str) -> list[PaymentRequest]:
        await self._yield()
        return [copy.deepcopy(r) for r in self.store.requests.values() if r.class_payment_request_id == campaign_id]

    def _move_pending(self, request_ids: Iterable[str], **changes) -> list[str]:
        moved = []
        for rid in request_ids:
            current = self.store.requests.get(rid)
            if current is None or current.status != RequestStatus.PENDING:
                continue
            updated = copy.deepcopy(current)
            for key, value in changes.items():
                setattr(updated, key, value)
            self._put(self.store.requests, rid, updated)
            moved.append(rid)
        return moved

    async def mark_paid(self, request_ids: list[str], payment_id: Optional[str], paid_at: datetime) -> list[str]:
        await self._yield()
        return self._move_pending(request_ids, status=RequestStatus.PAID, paid_at=paid_at, payment_id=payment_id)

    async def cancel_pending(self, request_ids: list[str]) -> list[str]:
        await self._yield()
        return self._move_pending(request_ids, status=RequestStatus.CANCELLED)

    async def list_missing_snapshot(self, limit: int) -> list[PaymentRequest]:
        await self._yield()
        found = [r for r in self.store.requests.values() if r.class_name is None or r.class_subject is None]
        return [copy.deepcopy(r) for r in found[:limit]]

    async def update_snapshot(self, request_id: str, *, class_name: Optional[str], class_subject: Optional[str]) -> None:
        await self._yield()
        updated = copy.deepcopy(self.store.requests[request_id])
        updated.class_name = class_name
        updated.class_subject = class_subject
        self._put(self.store.requests, request_id, updated)


class FakeClassPaymentRequestRepository(_Repo, ClassPaymentRequestRepository):
    async def add(self, campaign: ClassPaymentRequest) -> ClassPaymentRequest:
        await self._yield()
        self._put(self.store.campaigns, campaign.id, copy.deepcopy(campaign))
        return campaign

    async def get(self, campaign_id: str) -> Optional[ClassPaymentRequest]:
        await self._yield()
        campaign = self.store.campaigns.get(campaign_id)
        return copy.deepcopy(campaign) if campaign else None

    async def list_by_class(self, class_id: str) -> list[ClassPaymentRequest]:
        await self._yield()
        return [copy.deepcopy(c) for c in self.store.campaigns.values() if c.class_id == class_id]

    async def compare_and_set_status(self, campaign_id: str, expected: CampaignStatus, new: CampaignStatus) -> bool:
        await self._yield()
        current = self.store.campaigns.get(campaign_id)
        if current is None or current.status != expected:
            return False
        updated = copy.deepcopy(current)
        updated.status = new
        self._put(self.store.campaigns, campaign_id, updated)
        return True

    async def refresh_stats(self, campaign_id: str) -> Optional[ClassPaymentRequest]:
        await self._yield()
        current = self.store.campaigns.get(campaign_id)
        if current is None:
            return None
        paid = [
            r for r in self.store.requests.values()
            if r.class_payment_request_id == campaign_id and r.status == RequestStatus.PAID
        ]
        updated = copy.deepcopy(current)
        updated.paid_count = len(paid)
        updated.total_collected = sum(r.final_amount for r in paid)
        self._put(self.store.campaigns, campaign_id, updated)
        return copy.deepcopy(updated)


class FakePaymentRepository(_Repo, PaymentRepository):
    async def add(self, payment: Payment) -> Payment:
        await self._yield()
        self._put(self.store.payments, payment.id, copy.deepcopy(payment))
        return payment

    async def get(self, payment_id: str) -> Optional[Payment]:
        await self._yield()
        payment = self.store.payments.get(payment_id)
        return copy.deepcopy(payment) if payment else None

    async def list_by_student(self, student_id: str, status: Optional[PaymentStatus] = None) -> list[Payment]:
        await self._yield()
        return [
            copy.deepcopy(p)
            for p in self.store.payments.values()
            if p.student_id == student_id and (status is None or p.status == status)
        ]

    async def list_for_requests(self, request_ids, statuses=None) -> list[Payment]:
        await self._yield()
        wanted = set(request_ids)
        allowed = set(statuses) if statuses is not None else None
        return [
            copy.deepcopy(p)
            for p in self.store.payments.values()
            if wanted.intersection(p.request_ids) and (allowed is None or p.status in allowed)
        ]

    async def compare_and_set_status(
        self, payment_id, expected, new, *, external_ref=None, failure_reason=None, completed_at=None, confirmed_by=None
    ) -> bool:
        await self._yield()
        current = self.store.payments.get(payment_id)
        if current is None or current.status not in set(expected):
            return False
        updated = copy.deepcopy(current)
        updated.status = new
        updated.external_ref = external_ref or updated.external_ref
        updated.failure_reason = failure_reason or updated.failure_reason
        updated.completed_at = completed_at or updated.completed_at
        updated.confirmed_by = confirmed_by or updated.confirmed_by
        self._put(self.store.payments, payment_id, updated)
        return True

    async def record_settlements(self, payment_id: str, request_ids: list[str]) -> None:
        await self._yield()
        for rid in request_ids:
            if rid in self.store.settlements:
                raise AssertionError(f"request {rid} settled twice")
            self._put(self.store.settlements, rid, payment_id)

    async def settled_by(self, request_ids: list[str]) -> dict[str, str]:
        await self._yield()
        return {rid: self.store.settlements[rid] for rid in request_ids if rid in self.store.settlements}

    async def update_snapshot(self, payment_id: str, *, branch_name: Optional[str], subject_name: Optional[str]) -> None:
        await self._yield()
        updated = copy.deepcopy(self.store.payments[payment_id])
        updated.branch_name = branch_name
        updated.subject_name = subject_name
        self._put(self.store.payments, payment_id, updated)

    async def list_missing_snapshot(self, limit: int) -> list[Payment]:
        await self._yield()
        found = [p for p in self.store.payments.values() if p.branch_name is None or p.subject_name is None]
        return [copy.deepcopy(p) for p in found[:limit]]

    async def list_stale(self, created_before: datetime, limit: int) -> list[Payment]:
        await self._yield()
        found = [
            p for p in self.store.payments.values()
            if p.status in OPEN_PAYMENT_STATUSES and p.created_at < created_before
        ]
        return [copy.deepcopy(p) for p in found[:limit]]

    async def list_unsettled_success(self, limit: int) -> list[Payment]:
        await self._yield()
        found = []
        for p in self.store.payments.values():
            if p.status != PaymentStatus.SUCCESS:
                continue
            if any(
                rid in self.store.requests
                and self.store.requests[rid].status == RequestStatus.PENDING
                and rid not in self.store.settlements
                for rid in p.request_ids
            ):
                found.append(copy.deepcopy(p))
        return found[:limit]


class FakePaymentTransactionRepository(_Repo, PaymentTransactionRepository):
    async def add(self, transaction: PaymentTransaction) -> PaymentTransaction:
        await self._yield()
        self.store.transactions.append(transaction)
        self._undo.append((None, transaction, None))
        return transaction

    async def list_by_payment(self, payment_id: str) -> list[PaymentTransaction]:
        await self._yield()
        return self.store.transactions_for(payment_id)


class InMemoryUnitOfWork(AbstractUnitOfWork):
    def __init__(self, store: InMemoryStore, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self.store = store
        self._undo: list = []
        self.order_repository = FakeOrderRepository(store, self._undo)
        self.payment_request_repository = FakePaymentRequestRepository(store, self._undo)
        self.class_payment_request_repository = FakeClassPaymentRequestRepository(store, self._undo)
        self.payment_repository = FakePaymentRepository(store, self._undo)
        self.payment_transaction_repository = FakePaymentTransactionRepository(store, self._undo)

    async def commit(self) -> None:
        if self._readonly:
            self._committed = True
            return
        if self.store.fail_commits > 0:
            self.store.fail_commits -= 1
            await self.rollback()
            raise TransientStoreException("injected commit failure")
        self.store.commits += 1
        self._undo.clear()
        self._committed = True

    async def rollback(self) -> None:
        for table, key, previous in reversed(self._undo):
            if table is None:
                self.store.transactions.remove(key)
            elif previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous
        self._undo.clear()
        self._committed = False


def uow_factory(store: InMemoryStore):
    def _make(*, readonly: bool = False) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(store, readonly=readonly)

    return _make


class FakeDirectory:
    """Student directory backed by dicts; ``down`` simulates an outage."""

    def __init__(self) -> None:
        self.students: dict[str, StudentProfile] = {}
        self.classes: dict[str, ClassInfo] = {}
        self.branches: dict[str, BranchInfo] = {}
        self.down = False
        self.calls = 0

    def add_branch(self, branch_id: str, name: str) -> BranchInfo:
        self.branches[branch_id] = BranchInfo(id=branch_id, name=name)
        return self.branches[branch_id]

    def add_student(self, student_id: str, *, branch_id: Optional[str] = "b1", percent: int = 0, type: Optional[str] = None) -> StudentProfile:
        self.students[student_id] = StudentProfile(
            id=student_id,
            name=f"Student {student_id}",
            branch_id=branch_id,
            scholarship_percent=percent,
            scholarship_type=type,
        )
        return self.students[student_id]

    def add_class(self, class_id: str, fee: int, *, subject: Optional[str] = "Math", branch_id: Optional[str] = "b1", student_ids=()) -> ClassInfo:
        self.classes[class_id] = ClassInfo(
            id=class_id,
            name=f"Class {class_id}",
            subject=subject,
            branch_id=branch_id,
            fee=fee,
            student_ids=list(student_ids),
        )
        return self.classes[class_id]

    def _check(self) -> None:
        self.calls += 1
        if self.down:
            raise DirectoryUnavailableException()

    async def get_student(self, student_id: str) -> Optional[StudentProfile]:
        self._check()
        return self.students.get(student_id)

    async def get_class(self, class_id: str) -> Optional[ClassInfo]:
        self._check()
        return self.classes.get(class_id)

    async def get_branch(self, branch_id: str) -> Optional[BranchInfo]:
        self._check()
        return self.branches.get(branch_id)


class FakeGatewayChannel:
    """Redirect channel whose callbacks are plain dicts with a shared secret."""

    method = "gateway_x"
    initial_status = PaymentStatus.CREATED
    accepts_callbacks = True
    secret = "ok"

    def __init__(self) -> None:
        self.initiated: list[str] = []

    async def initiate(self, payment: Payment, *, client_ip: Optional[str] = None) -> Optional[str]:
        self.initiated.append(payment.id)
        return f"https://gateway.test/pay?ref={payment.id}"

    def verify_signature(self, raw: dict[str, Any]) -> bool:
        return raw.get("sig") == self.secret

    def parse_callback(self, raw: dict[str, Any]) -> SettlementEvent:
        if not self.verify_signature(raw):
            raise InvalidSignatureException(self.method)
        return SettlementEvent(
            payment_id=raw["payment_id"],
            outcome=SettlementOutcome(raw.get("outcome", "success")),
            external_ref=raw.get("ref"),
            amount=raw.get("amount"),
            reason=raw.get("reason"),
            raw=dict(raw),
        )

    @classmethod
    def callback(cls, payment_id: str, outcome: str = "success", **extra) -> dict[str, Any]:
        return {"payment_id": payment_id, "outcome": outcome, "sig": cls.secret, **extra}


def channel_factory(gateway: Optional[FakeGatewayChannel] = None):
    from infrastructure.external.payments.cash import CashChannel

    gateway = gateway or FakeGatewayChannel()
    cash = CashChannel()

    def _get(name: str):
        return gateway if name == "gateway_x" else cash

    return _get
