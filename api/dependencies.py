"""
API依赖项 - 身份与服务装配
"""
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from fastapi import Depends, Header

from application.ports.directory import StudentDirectory
from application.services.order_service import OrderService
from application.services.payment_request_service import PaymentRequestService
from application.services.reconciliation_service import ReconciliationService
from application.services.settlement_service import SettlementService
from core.exceptions import ForbiddenException, UnauthorizedException
from infrastructure.bootstrap import (
    build_directory,
    build_order_service,
    build_payment_request_service,
    build_reconciliation_service,
    build_settlement_service,
)
from infrastructure.tasks.utils.dispatcher import TaskDispatcher

ADMIN_ROLES = {"admin", "superadmin"}


@dataclass(frozen=True)
class Identity:
    """会话层注入的调用者身份（本服务不做校验）"""
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


async def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Identity:
    """从 X-User-Id / X-User-Role 请求头读取身份"""
    if not x_user_id:
        raise UnauthorizedException("Missing X-User-Id header")
    return Identity(user_id=x_user_id, role=(x_user_role or "student").lower())


async def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise ForbiddenException("Administrator role required")
    return identity


def resolve_student_id(identity: Identity, student_id: Optional[str]) -> str:
    """学生只能操作自己；管理员/家长可代为指定 student_id"""
    if student_id and student_id != identity.user_id:
        if identity.role == "student":
            raise ForbiddenException("Students may only act on their own records")
        return student_id
    return student_id or identity.user_id


async def get_directory() -> AsyncIterator[StudentDirectory]:
    directory = build_directory()
    try:
        yield directory
    finally:
        await directory.close()


async def get_order_service(directory: StudentDirectory = Depends(get_directory)) -> OrderService:
    return build_order_service(directory)


async def get_payment_request_service(
    directory: StudentDirectory = Depends(get_directory),
) -> PaymentRequestService:
    return build_payment_request_service(directory)


async def get_settlement_service(directory: StudentDirectory = Depends(get_directory)) -> SettlementService:
    return build_settlement_service(directory)


async def get_reconciliation_service(
    directory: StudentDirectory = Depends(get_directory),
) -> ReconciliationService:
    return build_reconciliation_service(directory)


def get_task_dispatcher() -> TaskDispatcher:
    return TaskDispatcher()
