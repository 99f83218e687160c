"""
Billing errors, grouped under the shared families from domain.common.exceptions.
"""
from __future__ import annotations

from typing import Any, Optional

from domain.common.exceptions import (
    BusinessException,
    ConflictException,
    DomainValidationException,
    ExternalGatewayException,
    NotFoundException,
    TransientStoreException,
)
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class EmptySelectionException(DomainValidationException):
    def __init__(self):
        super().__init__(
            "At least one class must be selected",
            code=PaymentCode.EMPTY_SELECTION,
            error_type="EmptySelection",
            field="class_ids",
        )


class DuplicateClassSelectionException(DomainValidationException):
    def __init__(self, class_ids: list[str]):
        super().__init__(
            "The same class was selected more than once",
            code=PaymentCode.DUPLICATE_CLASS,
            error_type="DuplicateClassSelection",
            field="class_ids",
            details={"class_ids": class_ids},
        )


class CrossBranchSelectionException(DomainValidationException):
    def __init__(self, class_id: str, class_branch_id: Optional[str], student_branch_id: Optional[str]):
        super().__init__(
            "Class belongs to a different branch than the student",
            code=PaymentCode.CROSS_BRANCH,
            error_type="CrossBranchSelection",
            field="class_ids",
            details={
                "class_id": class_id,
                "class_branch_id": class_branch_id,
                "student_branch_id": student_branch_id,
            },
        )


class InvalidAmountException(DomainValidationException):
    def __init__(self, field: str, value: Any, *, reason: str = "must not be negative"):
        super().__init__(
            f"{field} {reason}",
            code=PaymentCode.INVALID_AMOUNT,
            error_type="InvalidAmount",
            field=field,
            details={"value": value},
        )


class RequestNotPayableException(DomainValidationException):
    def __init__(self, request_ids: list[str], reason: str):
        super().__init__(
            reason,
            code=PaymentCode.REQUEST_NOT_PAYABLE,
            error_type="RequestNotPayable",
            field="request_ids",
            details={"request_ids": request_ids},
        )


class UnsupportedPaymentMethodException(DomainValidationException):
    def __init__(self, method: str):
        super().__init__(
            f"Unsupported payment method: {method}",
            code=PaymentCode.UNSUPPORTED_METHOD,
            error_type="UnsupportedPaymentMethod",
            field="method",
            details={"method": method},
        )


class StudentNotFoundException(NotFoundException):
    def __init__(self, student_id: str):
        super().__init__("Student", student_id)


class ClassNotFoundException(NotFoundException):
    def __init__(self, class_id: str):
        super().__init__("Class", class_id)


class OrderNotFoundException(NotFoundException):
    def __init__(self, order_id: str):
        super().__init__("Order", order_id)


class PaymentNotFoundException(NotFoundException):
    def __init__(self, payment_id: str):
        super().__init__("Payment", payment_id)


class PaymentRequestNotFoundException(NotFoundException):
    def __init__(self, request_id: str):
        super().__init__("PaymentRequest", request_id)


class CampaignNotFoundException(NotFoundException):
    def __init__(self, campaign_id: str):
        super().__init__("ClassPaymentRequest", campaign_id, error_type="CampaignNotFound")


class AlreadySettledException(ConflictException):
    def __init__(self, message: str = "Already settled", *, current: Optional[dict] = None):
        super().__init__(
            message,
            current=current,
            code=PaymentCode.ALREADY_SETTLED,
            error_type="AlreadySettled",
        )


class InvalidStateTransitionException(ConflictException):
    def __init__(self, entity: str, from_status: str, to_status: str, *, current: Optional[dict] = None):
        super().__init__(
            f"{entity} cannot move from {from_status} to {to_status}",
            current=current,
            code=BusinessCode.INVALID_STATE,
            error_type="InvalidStateTransition",
        )


class InvalidSignatureException(ExternalGatewayException):
    def __init__(self, channel: str, details: Optional[dict] = None):
        super().__init__(
            "Callback signature verification failed",
            code=PaymentCode.SIGNATURE_ERROR,
            error_type="InvalidSignature",
            channel=channel,
            details=details,
        )


class CallbackNotAcceptedException(ExternalGatewayException):
    """Channel settles only through an administrator, never by callback."""

    def __init__(self, channel: str):
        super().__init__(
            f"Channel {channel} does not accept callbacks",
            code=PaymentCode.UNSUPPORTED_METHOD,
            error_type="CallbackNotAccepted",
            channel=channel,
        )


class MalformedCallbackException(ExternalGatewayException):
    def __init__(self, channel: str, reason: str):
        super().__init__(
            f"Malformed callback: {reason}",
            code=PaymentCode.MALFORMED_CALLBACK,
            error_type="MalformedCallback",
            channel=channel,
        )


class AmountMismatchException(ExternalGatewayException):
    def __init__(self, channel: str, payment_id: str, expected: int, received: int):
        super().__init__(
            "Callback amount does not match the payment amount",
            code=PaymentCode.AMOUNT_MISMATCH,
            error_type="AmountMismatch",
            channel=channel,
            details={"payment_id": payment_id, "expected": expected, "received": received},
        )


class DirectoryUnavailableException(TransientStoreException):
    def __init__(self, message: str = "Student directory unavailable", details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.DIRECTORY_UNAVAILABLE,
            error_type="DirectoryUnavailable",
            details=details,
        )


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransientStoreException)


__all__ = [
    "BusinessException",
    "CallbackNotAcceptedException",
    "EmptySelectionException",
    "DuplicateClassSelectionException",
    "CrossBranchSelectionException",
    "InvalidAmountException",
    "RequestNotPayableException",
    "UnsupportedPaymentMethodException",
    "StudentNotFoundException",
    "ClassNotFoundException",
    "OrderNotFoundException",
    "PaymentNotFoundException",
    "PaymentRequestNotFoundException",
    "CampaignNotFoundException",
    "AlreadySettledException",
    "InvalidStateTransitionException",
    "InvalidSignatureException",
    "MalformedCallbackException",
    "AmountMismatchException",
    "DirectoryUnavailableException",
    "TransientStoreException",
    "is_retryable",
]
