"""
Factory for payment channels.
"""
from __future__ import annotations

from typing import Optional

from core.settings import payment_settings
from application.ports.payment_gateway import PaymentChannel
from domain.billing.exceptions import UnsupportedPaymentMethodException


def get_payment_channel(method: Optional[str] = None) -> PaymentChannel:
    name = (method or "gateway_x").lower()
    if name not in {m.lower() for m in payment_settings.enabled_methods}:
        raise UnsupportedPaymentMethodException(name)
    if name == "gateway_x":
        from .gateway_x import GatewayXChannel
        return GatewayXChannel()
    if name == "cash":
        from .cash import CashChannel
        return CashChannel()
    raise UnsupportedPaymentMethodException(name)
