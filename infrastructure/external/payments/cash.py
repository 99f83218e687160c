"""
Cash channel: payment starts pending and is completed by an administrator.

The confirming administrator's identity plays the role of the signature.
"""
from __future__ import annotations

from typing import Any, Optional

from domain.billing.entity import Payment, PaymentMethod, PaymentStatus
from domain.billing.events import SettlementEvent
from domain.billing.exceptions import MalformedCallbackException
from infrastructure.external.payments.base import BasePaymentChannel


class CashChannel(BasePaymentChannel):
    method = PaymentMethod.CASH.value
    initial_status = PaymentStatus.PENDING
    accepts_callbacks = False

    async def initiate(self, payment: Payment, *, client_ip: Optional[str] = None) -> Optional[str]:
        self._log("cash_payment_awaiting_confirmation", payment_id=payment.id, amount=payment.amount)
        return None

    def verify_signature(self, raw: dict[str, Any]) -> bool:
        return bool(raw.get("confirmed_by"))

    def _to_event(self, raw: dict[str, Any]) -> SettlementEvent:
        payment_id = self._require(raw, "payment_id")
        status = raw.get("status", "confirmed")
        outcome = self._map_status(status)
        if outcome is None:
            raise MalformedCallbackException(self.method, f"unknown cash status {status!r}")
        note = raw.get("note")
        return SettlementEvent(
            payment_id=payment_id,
            outcome=outcome,
            reason=None if status == "confirmed" else (note or "rejected by administrator"),
            performed_by=str(raw["confirmed_by"]),
            raw=dict(raw),
        )
