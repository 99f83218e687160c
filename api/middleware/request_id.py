"""
请求上下文中间件

为每个请求确定追踪ID、来源IP与调用者身份，写入 contextvars 供日志与回调 IP 白名单使用。
网关回调路径额外绑定 channel，便于按渠道检索结算日志。
"""
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

CALLBACK_PREFIX = "/api/v1/payments/callbacks/"


def resolve_client_ip(request: Request) -> str:
    """X-Forwarded-For 第一跳 > X-Real-IP > 直连地址"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


class RequestIDMiddleware(BaseHTTPMiddleware):
    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or uuid.uuid4().hex
        client_ip = resolve_client_ip(request)
        caller = request.headers.get("X-User-Id")

        request.state.request_id = request_id
        request.state.client_ip = client_ip
        request_id_var.set(request_id)
        client_ip_var.set(client_ip)
        user_id_var.set(caller)

        structlog.contextvars.clear_contextvars()
        bound = {"request_id": request_id, "client_ip": client_ip}
        if caller:
            bound["user_id"] = caller
            bound["role"] = request.headers.get("X-User-Role", "student")
        path = request.url.path
        if path.startswith(CALLBACK_PREFIX):
            # 网关回调无调用者身份，以渠道名区分
            bound["channel"] = path[len(CALLBACK_PREFIX):].strip("/")
        structlog.contextvars.bind_contextvars(**bound)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def get_client_ip() -> Optional[str]:
    """当前请求的来源IP；不在请求上下文中时为 None"""
    return client_ip_var.get()


def get_user_id() -> Optional[str]:
    return user_id_var.get()
