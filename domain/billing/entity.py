"""
Billing entities: Order, PaymentRequest, ClassPaymentRequest, Payment.

Entities carry the display snapshots (class name/subject, branch name) taken at
creation time; live directory data is only a fallback when a snapshot is empty.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from domain.billing.money import compute_discount, compute_final, line_discount_bounds
from domain.common.exceptions import DomainValidationException


DEFAULT_CURRENCY = "VND"


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RequestStatus(str, Enum):
    """Status of a single student billing line.

    OVERDUE is never stored, it is derived from PENDING and the due date.
    """
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    CREATED = "created"      # redirect issued, gateway not yet reported
    PENDING = "pending"      # awaiting completion (cash, or gateway in progress)
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.SUCCESS, PaymentStatus.CANCELLED, PaymentStatus.FAILED}
)
OPEN_PAYMENT_STATUSES = frozenset({PaymentStatus.CREATED, PaymentStatus.PENDING})


class PaymentMethod(str, Enum):
    GATEWAY_X = "gateway_x"
    CASH = "cash"


class CampaignStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    CREATE = "create"
    CALLBACK = "callback"
    CASH_CONFIRM = "cash_confirm"
    EXPIRE = "expire"
    SYSTEM = "system"


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _check_pricing(base: int, percent: int, discount: int, final: int, *, split_line: bool = False) -> None:
    # 订单拆出的行可能分到一个舍入单位
    low, high = line_discount_bounds(base, percent) if split_line else (compute_discount(base, percent),) * 2
    if not low <= discount <= high or final != compute_final(base, discount):
        raise DomainValidationException(
            "Inconsistent pricing",
            field="final_amount",
            details={"base": base, "percent": percent, "discount": discount, "final": final},
        )


@dataclass
class OrderItem:
    class_id: str
    class_name: str
    class_subject: Optional[str]
    class_fee: int


@dataclass
class Order:
    """
    Aggregated checkout for one student.

    Rules:
    1. discount = floor(base * percent / 100), final = max(base - discount, 0)
    2. only pending_payment may move; paid/failed/cancelled are terminal
    """

    id: str
    student_id: str
    branch_id: Optional[str]
    items: list[OrderItem]
    base_amount: int
    scholarship_percent: int
    scholarship_type: Optional[str]
    discount_amount: int
    final_amount: int
    currency: str = DEFAULT_CURRENCY
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    request_ids: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    note: Optional[str] = None

    def __post_init__(self):
        _check_pricing(self.base_amount, self.scholarship_percent, self.discount_amount, self.final_amount)
        self.status = OrderStatus(self.status)
        self.created_at = _ensure_utc(self.created_at) or utcnow()
        self.paid_at = _ensure_utc(self.paid_at)
        self.cancelled_at = _ensure_utc(self.cancelled_at)

    def is_final_status(self) -> bool:
        return self.status != OrderStatus.PENDING_PAYMENT

    def mark_paid(self, at: Optional[datetime] = None) -> None:
        if self.status != OrderStatus.PENDING_PAYMENT:
            raise DomainValidationException(f"Cannot mark order {self.status.value} as paid", field="status")
        self.status = OrderStatus.PAID
        self.paid_at = at or utcnow()

    def mark_cancelled(self, reason: Optional[str] = None, at: Optional[datetime] = None) -> None:
        if self.status != OrderStatus.PENDING_PAYMENT:
            raise DomainValidationException(f"Cannot cancel order in status {self.status.value}", field="status")
        self.status = OrderStatus.CANCELLED
        self.cancelled_at = at or utcnow()
        self.cancel_reason = reason

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "final_amount": self.final_amount,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


@dataclass
class PaymentRequest:
    """One billing line: a student owes one class fee (after scholarship)."""

    id: str
    student_id: str
    class_id: str
    class_name: Optional[str]
    class_subject: Optional[str]
    title: str
    base_amount: int
    scholarship_percent: int
    scholarship_type: Optional[str]
    discount_amount: int
    final_amount: int
    currency: str = DEFAULT_CURRENCY
    status: RequestStatus = RequestStatus.PENDING
    order_id: Optional[str] = None
    class_payment_request_id: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_id: Optional[str] = None
    student_name: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        _check_pricing(self.base_amount, self.scholarship_percent, self.discount_amount, self.final_amount, split_line=True)
        self.status = RequestStatus(self.status)
        if self.status == RequestStatus.OVERDUE:
            self.status = RequestStatus.PENDING
        self.created_at = _ensure_utc(self.created_at) or utcnow()
        self.due_date = _ensure_utc(self.due_date)
        self.paid_at = _ensure_utc(self.paid_at)

    def effective_status(self, now: Optional[datetime] = None) -> RequestStatus:
        if self.status == RequestStatus.PENDING and self.due_date is not None:
            if self.due_date < (now or utcnow()):
                return RequestStatus.OVERDUE
        return self.status

    def is_payable(self) -> bool:
        # pending and overdue share the stored status
        return self.status == RequestStatus.PENDING

    def mark_paid(self, payment_id: Optional[str], at: Optional[datetime] = None) -> None:
        if self.status != RequestStatus.PENDING:
            raise DomainValidationException(f"Cannot mark request {self.status.value} as paid", field="status")
        self.status = RequestStatus.PAID
        self.paid_at = at or utcnow()
        self.payment_id = payment_id


@dataclass
class ClassPaymentRequest:
    """Administrative campaign billing every student of one class."""

    id: str
    class_id: str
    title: str
    amount: int
    created_by: str
    class_name: Optional[str] = None
    class_subject: Optional[str] = None
    description: Optional[str] = None
    currency: str = DEFAULT_CURRENCY
    due_date: Optional[datetime] = None
    status: CampaignStatus = CampaignStatus.ACTIVE
    total_students: int = 0
    paid_count: int = 0
    total_collected: int = 0
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException("Campaign amount must be greater than 0", field="amount")
        self.status = CampaignStatus(self.status)
        self.created_at = _ensure_utc(self.created_at) or utcnow()
        self.due_date = _ensure_utc(self.due_date)

    def mark_cancelled(self) -> None:
        if self.status == CampaignStatus.CANCELLED:
            return
        self.status = CampaignStatus.CANCELLED


@dataclass
class Payment:
    """
    One attempt to collect money for one or more PaymentRequests.

    Snapshot fields (branch_name, subject_name) are written at creation and
    backfilled by reconciliation when empty.
    """

    id: str
    request_ids: list[str]
    student_id: str
    paid_by: str
    method: PaymentMethod
    amount: int
    currency: str = DEFAULT_CURRENCY
    status: PaymentStatus = PaymentStatus.CREATED
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    subject_name: Optional[str] = None
    external_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    confirmed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(f"Payment amount must be greater than 0: {self.amount}", field="amount")
        if not self.request_ids:
            raise DomainValidationException("Payment must cover at least one request", field="request_ids")
        self.method = PaymentMethod(self.method)
        self.status = PaymentStatus(self.status)
        self.created_at = _ensure_utc(self.created_at) or utcnow()
        self.completed_at = _ensure_utc(self.completed_at)

    def is_final_status(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    @property
    def snapshot_complete(self) -> bool:
        return bool(self.branch_name) and bool(self.subject_name)

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "amount": self.amount,
            "external_ref": self.external_ref,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class PaymentTransaction:
    """Append-only audit record of what happened to a payment."""

    id: str
    payment_id: str
    type: TransactionType
    message: Optional[str] = None
    raw_data: dict = field(default_factory=dict)
    performed_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = TransactionType(self.type)
        self.created_at = _ensure_utc(self.created_at) or utcnow()
        if self.raw_data is None:
            self.raw_data = {}
