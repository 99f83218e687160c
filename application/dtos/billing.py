"""
Billing DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from domain.billing.entity import (
    CampaignStatus,
    ClassPaymentRequest,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentRequest,
    PaymentTransaction,
)
from domain.billing.events import SettlementResult


# --- directory records (consumed) ---------------------------------------------------

class StudentProfile(BaseModel):
    id: str
    name: Optional[str] = None
    branch_id: Optional[str] = None
    scholarship_percent: int = Field(default=0, ge=0, le=100)
    scholarship_type: Optional[str] = None


class ClassInfo(BaseModel):
    id: str
    name: str
    subject: Optional[str] = None
    branch_id: Optional[str] = None
    fee: int = Field(default=0, ge=0)
    student_ids: list[str] = Field(default_factory=list)


class BranchInfo(BaseModel):
    id: str
    name: str


# --- commands ----------------------------------------------------------------------

class CreateOrder(BaseModel):
    student_id: Optional[str] = None
    class_ids: list[str]
    note: Optional[str] = None


class CancelOrder(BaseModel):
    reason: Optional[str] = None


class InitiatePayment(BaseModel):
    request_ids: list[str] = Field(min_length=1)
    method: PaymentMethod = PaymentMethod.GATEWAY_X
    student_id: Optional[str] = None

    @field_validator("request_ids")
    @classmethod
    def _dedupe(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))


class CreateClassPaymentRequest(BaseModel):
    class_id: str
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    amount: Optional[int] = Field(default=None, gt=0)
    due_date: Optional[datetime] = None


# --- views -------------------------------------------------------------------------

class OrderItemDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    class_id: str
    class_name: str
    class_subject: Optional[str] = None
    class_fee: int


class OrderDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    branch_id: Optional[str] = None
    items: list[OrderItemDTO]
    base_amount: int
    scholarship_percent: int
    scholarship_type: Optional[str] = None
    discount_amount: int
    final_amount: int
    currency: str
    status: OrderStatus
    request_ids: list[str]
    created_at: datetime
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    note: Optional[str] = None

    @classmethod
    def from_entity(cls, order: Order) -> "OrderDTO":
        return cls.model_validate(order, from_attributes=True)


class PaymentRequestDTO(BaseModel):
    id: str
    order_id: Optional[str] = None
    class_payment_request_id: Optional[str] = None
    student_id: str
    student_name: Optional[str] = None
    class_id: str
    class_name: Optional[str] = None
    class_subject: Optional[str] = None
    title: str
    description: Optional[str] = None
    base_amount: int
    scholarship_percent: int
    scholarship_type: Optional[str] = None
    discount_amount: int
    final_amount: int
    currency: str
    due_date: Optional[datetime] = None
    status: str
    paid_at: Optional[datetime] = None
    payment_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entity(cls, req: PaymentRequest, now: Optional[datetime] = None) -> "PaymentRequestDTO":
        return cls(
            id=req.id,
            order_id=req.order_id,
            class_payment_request_id=req.class_payment_request_id,
            student_id=req.student_id,
            student_name=req.student_name,
            class_id=req.class_id,
            class_name=req.class_name,
            class_subject=req.class_subject,
            title=req.title,
            description=req.description,
            base_amount=req.base_amount,
            scholarship_percent=req.scholarship_percent,
            scholarship_type=req.scholarship_type,
            discount_amount=req.discount_amount,
            final_amount=req.final_amount,
            currency=req.currency,
            due_date=req.due_date,
            status=req.effective_status(now).value,
            paid_at=req.paid_at,
            payment_id=req.payment_id,
            created_at=req.created_at,
        )


class PaymentDTO(BaseModel):
    id: str
    request_ids: list[str]
    student_id: str
    paid_by: str
    method: str
    amount: int
    currency: str
    status: str
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    subject_name: Optional[str] = None
    external_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    confirmed_by: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentDTO":
        return cls(
            id=payment.id,
            request_ids=list(payment.request_ids),
            student_id=payment.student_id,
            paid_by=payment.paid_by,
            method=payment.method.value,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status.value,
            branch_id=payment.branch_id,
            branch_name=payment.branch_name,
            subject_name=payment.subject_name,
            external_ref=payment.external_ref,
            failure_reason=payment.failure_reason,
            confirmed_by=payment.confirmed_by,
            created_at=payment.created_at,
            completed_at=payment.completed_at,
        )


class PaymentTransactionDTO(BaseModel):
    id: str
    payment_id: str
    type: str
    message: Optional[str] = None
    raw_data: dict = Field(default_factory=dict)
    performed_by: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entity(cls, tx: PaymentTransaction) -> "PaymentTransactionDTO":
        return cls(
            id=tx.id,
            payment_id=tx.payment_id,
            type=tx.type.value,
            message=tx.message,
            raw_data=dict(tx.raw_data),
            performed_by=tx.performed_by,
            created_at=tx.created_at,
        )


class PaymentInitiation(BaseModel):
    payment_id: str
    method: str
    status: str
    amount: int
    currency: str
    redirect_url: Optional[str] = None


class SettlementOutcomeDTO(BaseModel):
    payment_id: str
    status: str
    applied: bool
    duplicate: bool
    paid_request_ids: list[str] = Field(default_factory=list)
    paid_order_ids: list[str] = Field(default_factory=list)
    already_settled_request_ids: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: SettlementResult) -> "SettlementOutcomeDTO":
        return cls(
            payment_id=result.payment_id,
            status=result.status,
            applied=result.applied,
            duplicate=result.duplicate,
            paid_request_ids=list(result.paid_request_ids),
            paid_order_ids=list(result.paid_order_ids),
            already_settled_request_ids=list(result.already_settled_request_ids),
        )


class ReconciliationReport(BaseModel):
    scanned: int = 0
    repaired: int = 0
    skipped: int = 0
    requests_repaired: int = 0
    expired: int = 0
    orphans_repaired: int = 0


class ClassPaymentRequestDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    class_id: str
    class_name: Optional[str] = None
    class_subject: Optional[str] = None
    title: str
    description: Optional[str] = None
    amount: int
    currency: str
    due_date: Optional[datetime] = None
    created_by: str
    status: CampaignStatus
    total_students: int
    paid_count: int
    total_collected: int
    created_at: datetime

    @classmethod
    def from_entity(cls, campaign: ClassPaymentRequest) -> "ClassPaymentRequestDTO":
        return cls.model_validate(campaign, from_attributes=True)


class CampaignSummary(BaseModel):
    campaign: ClassPaymentRequestDTO
    paid_count: int
    pending_count: int
    overdue_count: int
    cancelled_count: int
    total_collected: int
    total_outstanding: int
