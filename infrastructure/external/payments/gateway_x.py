"""
Redirect gateway adapter speaking the VNPay 2.1 protocol.

The redirect URL carries the payment id as ``vnp_TxnRef`` and the amount
multiplied by 100. Return/IPN callbacks are signed with HMAC-SHA512 over the
alphabetically sorted, form-encoded parameters.
"""
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode

from core.settings import GatewayXSettings, payment_settings
from domain.billing.entity import Payment, PaymentMethod, PaymentStatus
from domain.billing.events import SettlementEvent, SettlementOutcome
from domain.billing.exceptions import MalformedCallbackException
from infrastructure.external.payments.base import BasePaymentChannel
from shared.codes.payment_codes import GATEWAY_X_RESPONSE_MESSAGES


# 网关按越南时间 (GMT+7) 校验 vnp_CreateDate
GATEWAY_TZ = timezone(timedelta(hours=7))
HASH_KEYS = ("vnp_SecureHash", "vnp_SecureHashType")
# vnp_TransactionStatus=01: 交易尚未完成
PENDING_TRANSACTION_STATUS = "01"


def _canonical(params: dict[str, Any]) -> str:
    items = sorted((k, str(v)) for k, v in params.items() if v is not None and str(v) != "")
    return urlencode(items)


def sign(params: dict[str, Any], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), _canonical(params).encode("utf-8"), hashlib.sha512).hexdigest()


class GatewayXChannel(BasePaymentChannel):
    method = PaymentMethod.GATEWAY_X.value
    initial_status = PaymentStatus.CREATED

    def __init__(self, config: Optional[GatewayXSettings] = None, *, clock=None) -> None:
        self._cfg = config or payment_settings.gateway_x
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build_params(self, payment: Payment, *, client_ip: Optional[str] = None) -> dict[str, str]:
        created = self._clock().astimezone(GATEWAY_TZ)
        return {
            "vnp_Version": self._cfg.version,
            "vnp_Command": "pay",
            "vnp_TmnCode": self._cfg.tmn_code,
            "vnp_Locale": self._cfg.locale,
            "vnp_CurrCode": payment.currency,
            "vnp_TxnRef": payment.id,
            "vnp_OrderInfo": f"Tuition payment {payment.id}",
            "vnp_OrderType": self._cfg.order_type,
            "vnp_Amount": str(payment.amount * 100),
            "vnp_ReturnUrl": self._cfg.return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": created.strftime("%Y%m%d%H%M%S"),
        }

    async def initiate(self, payment: Payment, *, client_ip: Optional[str] = None) -> Optional[str]:
        params = self.build_params(payment, client_ip=client_ip)
        query = _canonical(params)
        secure_hash = sign(params, self._cfg.hash_secret)
        self._log("gateway_redirect_built", payment_id=payment.id, amount=payment.amount)
        return f"{self._cfg.pay_url}?{query}&{urlencode({'vnp_SecureHash': secure_hash})}"

    def verify_signature(self, raw: dict[str, Any]) -> bool:
        received = raw.get("vnp_SecureHash")
        if not received:
            return False
        params = {k: v for k, v in raw.items() if k not in HASH_KEYS}
        expected = sign(params, self._cfg.hash_secret)
        return hmac.compare_digest(expected.lower(), str(received).lower())

    def _to_event(self, raw: dict[str, Any]) -> SettlementEvent:
        payment_id = self._require(raw, "vnp_TxnRef")
        code = self._require(raw, "vnp_ResponseCode")
        try:
            amount = int(self._require(raw, "vnp_Amount")) // 100
        except ValueError:
            raise MalformedCallbackException(self.method, "vnp_Amount is not an integer")

        outcome = self._map_status(code)
        reason = None
        if outcome is None:
            if raw.get("vnp_TransactionStatus") == PENDING_TRANSACTION_STATUS:
                outcome = SettlementOutcome.PENDING
            else:
                outcome = SettlementOutcome.FAILED
        if outcome != SettlementOutcome.SUCCESS:
            reason = GATEWAY_X_RESPONSE_MESSAGES.get(code, f"Gateway response code {code}")

        self._log("gateway_callback_parsed", payment_id=payment_id, response_code=code, outcome=outcome.value)
        return SettlementEvent(
            payment_id=payment_id,
            outcome=outcome,
            external_ref=raw.get("vnp_TransactionNo") or None,
            amount=amount,
            reason=reason,
            raw=dict(raw),
        )
