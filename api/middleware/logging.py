"""
访问日志中间件

每个请求结束时输出一条 structlog 事件（状态码决定级别），并回写 X-Process-Time。
支付回调无论开关如何都会记录脱敏后的参数，其它写请求按配置记录请求体片段。
"""
import json
import time
from typing import Any
from urllib.parse import parse_qsl

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from api.middleware.request_id import CALLBACK_PREFIX
from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)

SKIP_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})
# 比较时统一小写
MASKED_KEYS = frozenset({"vnp_securehash", "hash_secret", "token", "authorization", "secret"})


def mask(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: "***" if str(k).lower() in MASKED_KEYS else mask(v) for k, v in data.items()}
    if isinstance(data, list):
        return [mask(v) for v in data]
    return data


def decode_body(raw: bytes, content_type: str) -> Any:
    text = raw.decode("utf-8", errors="ignore")
    if "application/json" in content_type:
        try:
            return json.loads(text)
        except ValueError:
            return text
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text))
    return text


class LoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.body_by_default = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_bytes = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in SKIP_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        fields = {"method": request.method, "path": path}
        is_callback = path.startswith(CALLBACK_PREFIX)
        if is_callback:
            # 网关既可能 GET 也可能 POST，两种参数都保留
            if request.query_params:
                fields["params"] = mask(dict(request.query_params))
        elif request.query_params:
            fields["query"] = dict(request.query_params)
        if request.method in ("POST", "PUT", "PATCH") and (is_callback or self._wants_body(request)):
            body = await request.body()
            if body:
                content_type = request.headers.get("content-type", "").lower()
                fields["body"] = mask(decode_body(body[: self.max_body_bytes], content_type))

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=round(time.perf_counter() - started, 4),
                error_type=type(exc).__name__,
                exc_info=True,
                **fields,
            )
            raise

        duration = time.perf_counter() - started
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        status = response.status_code
        if status >= 500:
            log = logger.error
        elif status >= 400:
            log = logger.warning
        else:
            log = logger.info
        log("request_completed", status_code=status, duration=round(duration, 4), **fields)
        return response

    def _wants_body(self, request: Request) -> bool:
        # X-Log-Body 请求头优先于配置
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in ("true", "1", "yes"):
            return True
        if header in ("false", "0", "no"):
            return False
        return bool(self.body_by_default and settings.DEBUG)
