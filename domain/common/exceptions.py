"""领域层异常族。

HTTP 层只认识下面五个族（校验/不存在/冲突/网关/存储暂不可用），
具体的结算错误定义在 ``domain.billing.exceptions``。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        code: int = BusinessCode.PARAM_VALIDATION_ERROR,
        error_type: str = "DomainValidationError",
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(code, message, error_type, details, field)


class NotFoundException(BusinessException):
    def __init__(self, resource: str, resource_id: Optional[str] = None, *, error_type: Optional[str] = None):
        details = {"resource": resource}
        if resource_id is not None:
            details["id"] = resource_id
        super().__init__(BusinessCode.NOT_FOUND, f"{resource} not found", error_type or f"{resource}NotFound", details)


class ConflictException(BusinessException):
    """Lost against the stored state; ``details['current']`` carries that state."""

    def __init__(
        self,
        message: str,
        *,
        current: Optional[dict] = None,
        code: int = BusinessCode.CONFLICT,
        error_type: str = "Conflict",
    ):
        details = {"current": current} if current is not None else None
        super().__init__(code, message, error_type, details)


class ExternalGatewayException(BusinessException):
    """Callback or redirect problem attributable to a payment channel."""

    def __init__(self, message: str, *, code: int, error_type: str, channel: str, details: Optional[dict] = None):
        super().__init__(code, message, error_type, {"channel": channel, **(details or {})})


class TransientStoreException(BusinessException):
    """Store or upstream briefly unavailable; the same call may be repeated."""

    def __init__(
        self,
        message: str = "Store temporarily unavailable",
        *,
        code: int = BusinessCode.SERVICE_UNAVAILABLE,
        error_type: str = "TransientStoreError",
        details: Optional[dict] = None,
    ):
        super().__init__(code, message, error_type, details)
