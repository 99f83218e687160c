"""
Payment state machine.

    created -> pending -> {success | cancelled | failed}

Cash payments start at pending. The functions here only decide; applying a
decision (the compare-and-swap plus side effects) is the settlement service's job.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable

from domain.billing.entity import (
    OPEN_PAYMENT_STATUSES,
    Payment,
    PaymentRequest,
    PaymentStatus,
    RequestStatus,
)
from domain.billing.events import SettlementEvent, SettlementOutcome


OUTCOME_TO_STATUS = {
    SettlementOutcome.SUCCESS: PaymentStatus.SUCCESS,
    SettlementOutcome.FAILED: PaymentStatus.FAILED,
    SettlementOutcome.CANCELLED: PaymentStatus.CANCELLED,
    SettlementOutcome.PENDING: PaymentStatus.PENDING,
}

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset(
        {PaymentStatus.PENDING, PaymentStatus.SUCCESS, PaymentStatus.CANCELLED, PaymentStatus.FAILED}
    ),
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.SUCCESS, PaymentStatus.CANCELLED, PaymentStatus.FAILED}
    ),
}


class DecisionKind(str, Enum):
    APPLY = "apply"
    DUPLICATE = "duplicate"  # payment already terminal, replay the stored outcome
    NOOP = "noop"            # non-terminal and nothing to change (pending -> pending)


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    from_status: PaymentStatus
    to_status: PaymentStatus

    @property
    def settles(self) -> bool:
        return self.kind == DecisionKind.APPLY and self.to_status == PaymentStatus.SUCCESS


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def decide(payment: Payment, event: SettlementEvent) -> Decision:
    target = OUTCOME_TO_STATUS[event.outcome]
    if payment.is_final_status():
        return Decision(DecisionKind.DUPLICATE, payment.status, payment.status)
    if not can_transition(payment.status, target):
        return Decision(DecisionKind.NOOP, payment.status, payment.status)
    return Decision(DecisionKind.APPLY, payment.status, target)


def is_expired(payment: Payment, now: datetime, window: timedelta) -> bool:
    return payment.status in OPEN_PAYMENT_STATUSES and payment.created_at + window <= now


def all_paid(requests: Iterable[PaymentRequest]) -> bool:
    requests = list(requests)
    return bool(requests) and all(r.status == RequestStatus.PAID for r in requests)


def expiry_event(payment: Payment) -> SettlementEvent:
    return SettlementEvent(
        payment_id=payment.id,
        outcome=SettlementOutcome.FAILED,
        reason="expired",
    )
