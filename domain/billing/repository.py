"""
Billing repository interfaces.

Status changes go through compare_and_set style methods: the write only
happens when the stored status is still one of the expected values, and the
caller learns whether it won. This is the only mutual exclusion the settlement
core relies on.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from .entity import (
    ClassPaymentRequest,
    CampaignStatus,
    Order,
    OrderStatus,
    Payment,
    PaymentRequest,
    PaymentStatus,
    PaymentTransaction,
    RequestStatus,
)


class OrderRepository(ABC):
    @abstractmethod
    async def add(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_by_student(self, student_id: str, status: Optional[OrderStatus] = None) -> list[Order]:
        pass

    @abstractmethod
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
        pass


class PaymentRequestRepository(ABC):
    @abstractmethod
    async def add_many(self, requests: list[PaymentRequest]) -> list[PaymentRequest]:
        pass

    @abstractmethod
    async def get(self, request_id: str) -> Optional[PaymentRequest]:
        pass

    @abstractmethod
    async def get_many(self, request_ids: list[str], *, for_update: bool = False) -> list[PaymentRequest]:
        """Return the found requests in the order of ``request_ids``.

        With ``for_update`` the rows are locked (in id order) until the
        transaction ends.
        """

    @abstractmethod
    async def list_by_order(self, order_id: str) -> list[PaymentRequest]:
        pass

    @abstractmethod
    async def list_by_student(self, student_id: str, status: Optional[RequestStatus] = None) -> list[PaymentRequest]:
        pass

    @abstractmethod
    async def list_by_campaign(self, campaign_id: str) -> list[PaymentRequest]:
        pass

    @abstractmethod
    async def mark_paid(self, request_ids: list[str], payment_id: Optional[str], paid_at: datetime) -> list[str]:
        """pending -> paid for each id; return the ids that actually moved."""

    @abstractmethod
    async def cancel_pending(self, request_ids: list[str]) -> list[str]:
        pass

    @abstractmethod
    async def list_missing_snapshot(self, limit: int) -> list[PaymentRequest]:
        pass

    @abstractmethod
    async def update_snapshot(self, request_id: str, *, class_name: Optional[str], class_subject: Optional[str]) -> None:
        pass


class ClassPaymentRequestRepository(ABC):
    @abstractmethod
    async def add(self, campaign: ClassPaymentRequest) -> ClassPaymentRequest:
        pass

    @abstractmethod
    async def get(self, campaign_id: str) -> Optional[ClassPaymentRequest]:
        pass

    @abstractmethod
    async def list_by_class(self, class_id: str) -> list[ClassPaymentRequest]:
        pass

    @abstractmethod
    async def compare_and_set_status(self, campaign_id: str, expected: CampaignStatus, new: CampaignStatus) -> bool:
        pass

    @abstractmethod
    async def refresh_stats(self, campaign_id: str) -> Optional[ClassPaymentRequest]:
        """Recount paid_count/total_collected from the campaign's requests."""


class PaymentRepository(ABC):
    @abstractmethod
    async def add(self, payment: Payment) -> Payment:
        pass

    @abstractmethod
    async def get(self, payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list_by_student(self, student_id: str, status: Optional[PaymentStatus] = None) -> list[Payment]:
        pass

    @abstractmethod
    async def list_for_requests(
        self, request_ids: list[str], statuses: Optional[Iterable[PaymentStatus]] = None
    ) -> list[Payment]:
        """Payments linked to any of ``request_ids``."""

    @abstractmethod
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
        pass

    @abstractmethod
    async def record_settlements(self, payment_id: str, request_ids: list[str]) -> None:
        """Write ledger rows; a request may be settled by at most one payment."""

    @abstractmethod
    async def settled_by(self, request_ids: list[str]) -> dict[str, str]:
        """request_id -> payment_id for requests already in the ledger."""

    @abstractmethod
    async def update_snapshot(self, payment_id: str, *, branch_name: Optional[str], subject_name: Optional[str]) -> None:
        pass

    @abstractmethod
    async def list_missing_snapshot(self, limit: int) -> list[Payment]:
        pass

    @abstractmethod
    async def list_stale(self, created_before: datetime, limit: int) -> list[Payment]:
        """created/pending payments created before the cutoff."""

    @abstractmethod
    async def list_unsettled_success(self, limit: int) -> list[Payment]:
        """success payments with a linked request that is neither paid nor settled elsewhere."""


class PaymentTransactionRepository(ABC):
    @abstractmethod
    async def add(self, transaction: PaymentTransaction) -> PaymentTransaction:
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: str) -> list[PaymentTransaction]:
        pass
