"""
身份异常与全局异常处理器

领域异常按族映射 HTTP 状态码，响应体统一为 core.response 的信封。
"""
import traceback
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status as http_status

from core.logging_config import get_logger
from core.response import error_response, exception_response
from domain.common.exceptions import (
    BusinessException,
    ConflictException,
    DomainValidationException,
    ExternalGatewayException,
    NotFoundException,
    TransientStoreException,
)
from shared.codes import BusinessCode


class UnauthorizedException(BusinessException):
    """会话层没有注入调用者身份"""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(BusinessCode.UNAUTHORIZED, message, "Unauthorized")


class ForbiddenException(BusinessException):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(BusinessCode.FORBIDDEN, message, "Forbidden")


# 顺序有意义：TransientStore 先于其它族匹配
_FAMILY_TO_STATUS = (
    (TransientStoreException, http_status.HTTP_503_SERVICE_UNAVAILABLE),
    (ConflictException, http_status.HTTP_409_CONFLICT),
    (NotFoundException, http_status.HTTP_404_NOT_FOUND),
    (ExternalGatewayException, http_status.HTTP_400_BAD_REQUEST),
    (DomainValidationException, http_status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UnauthorizedException, http_status.HTTP_401_UNAUTHORIZED),
    (ForbiddenException, http_status.HTTP_403_FORBIDDEN),
)

_CODE_TO_STATUS = {
    BusinessCode.INVALID_STATE: http_status.HTTP_409_CONFLICT,
    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
}

_HTTP_TO_CODE = {
    401: BusinessCode.UNAUTHORIZED,
    403: BusinessCode.FORBIDDEN,
    404: BusinessCode.NOT_FOUND,
    409: BusinessCode.CONFLICT,
    503: BusinessCode.SERVICE_UNAVAILABLE,
}


def business_exception_to_http_status(exc: BusinessException) -> int:
    for family, status_code in _FAMILY_TO_STATUS:
        if isinstance(exc, family):
            return status_code
    return _CODE_TO_STATUS.get(exc.code, http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or uuid.uuid4().hex


def register_exception_handlers(app: FastAPI):
    logger = get_logger(__name__)

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        status_code = business_exception_to_http_status(exc)
        if isinstance(exc, ExternalGatewayException):
            # 验签/报文问题都要留痕
            logger.warning("gateway_error", error_type=exc.error_type, code=int(exc.code), details=exc.details)
        elif status_code >= 500:
            logger.error("business_exception", error_type=exc.error_type, code=int(exc.code), message=exc.message)
        body = exception_response(exc, _request_id(request)).model_dump(mode="json")
        headers = {"Retry-After": "5"} if status_code == http_status.HTTP_503_SERVICE_UNAVAILABLE else None
        return JSONResponse(status_code=status_code, content=body, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        body = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": [{k: v for k, v in e.items() if k != "ctx"} for e in errors]},
            field=".".join(str(loc) for loc in first.get("loc", [])[1:]),
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, content=body.model_dump(mode="json"))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        body = error_response(
            code=_HTTP_TO_CODE.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(mode="json"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.error("unhandled_exception", request_id=request_id, error=str(exc), exc_info=True)
        details = {"exception": str(exc), "traceback": traceback.format_exc()} if app.debug else None
        body = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )
        return JSONResponse(status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump(mode="json"))
