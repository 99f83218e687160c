"""
Payment channel settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so channel secrets load on their own,
e.g. PAYMENT__GATEWAY_X__HASH_SECRET.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class GatewayXSettings(BaseModel):
    """Redirect gateway (VNPay compatible protocol)."""
    tmn_code: str = "DEMO1234"
    hash_secret: str = "DEMOSECRET1234567890ABCDEF"
    pay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    return_url: str = "http://localhost:3000/payments/return"
    version: str = "2.1.0"
    locale: str = "vn"
    order_type: str = "other"


class WebhookSettings(BaseModel):
    ip_allowlist: Optional[list[str]] = None  # Optional IPs/CIDRs allowed to call back


class PaymentSettings(BaseSettings):
    enabled_methods: list[str] = Field(default_factory=lambda: ["gateway_x", "cash"])
    gateway_x: GatewayXSettings = Field(default_factory=GatewayXSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
