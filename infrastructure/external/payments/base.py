"""
Base payment channel implementing shared concerns: logging, status mapping.

Concrete channels subclass and implement channel-specific signing and parsing.
"""
from __future__ import annotations

from typing import Any, Optional

from core.logging_config import get_logger
from domain.billing.entity import Payment, PaymentStatus
from domain.billing.events import SettlementEvent, SettlementOutcome
from domain.billing.exceptions import InvalidSignatureException, MalformedCallbackException
from shared.codes.payment_codes import CHANNEL_STATUS_TO_OUTCOME


logger = get_logger(__name__)


class BasePaymentChannel:
    method: str = "base"
    initial_status: PaymentStatus = PaymentStatus.CREATED
    accepts_callbacks: bool = True

    async def initiate(self, payment: Payment, *, client_ip: Optional[str] = None) -> Optional[str]:
        raise NotImplementedError

    def verify_signature(self, raw: dict[str, Any]) -> bool:
        raise NotImplementedError

    def parse_callback(self, raw: dict[str, Any]) -> SettlementEvent:
        if not self.verify_signature(raw):
            self._log("callback_signature_invalid", payment_id=raw.get("payment_id") or raw.get("vnp_TxnRef"))
            raise InvalidSignatureException(self.method)
        return self._to_event(raw)

    def _to_event(self, raw: dict[str, Any]) -> SettlementEvent:
        raise NotImplementedError

    # Helpers
    def _map_status(self, channel_status: Optional[str]) -> Optional[SettlementOutcome]:
        mapping = CHANNEL_STATUS_TO_OUTCOME.get(self.method, {})
        outcome = mapping.get(channel_status or "")
        return SettlementOutcome(outcome) if outcome else None

    def _require(self, raw: dict[str, Any], key: str) -> str:
        value = raw.get(key)
        if value is None or str(value).strip() == "":
            raise MalformedCallbackException(self.method, f"missing {key}")
        return str(value)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            channel=self.method,
            **kwargs,
        )
