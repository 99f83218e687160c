"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import OrderModel
from .payment_request import ClassPaymentRequestModel, PaymentRequestModel
from .payment import (
    PaymentModel,
    PaymentRequestLinkModel,
    PaymentSettlementModel,
    PaymentTransactionModel,
)

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "ClassPaymentRequestModel",
    "PaymentRequestModel",
    "PaymentModel",
    "PaymentRequestLinkModel",
    "PaymentSettlementModel",
    "PaymentTransactionModel",
]
