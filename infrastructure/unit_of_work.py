"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Optional, Callable
import inspect

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import TransientStoreException
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.order_repository import SQLAlchemyOrderRepository
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentRepository,
    SQLAlchemyPaymentTransactionRepository,
)
from infrastructure.repositories.payment_request_repository import (
    SQLAlchemyClassPaymentRequestRepository,
    SQLAlchemyPaymentRequestRepository,
)


logger = get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """连接中断、锁超时、死锁等可重试的数据库错误"""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and bool(getattr(exc, "connection_invalidated", False))


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work

    可重试的数据库错误统一转换为 TransientStoreException，交由上层重试
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    def _bind_repositories(self, session: Optional[AsyncSession]) -> None:
        if session is None:
            self.order_repository = None
            self.payment_request_repository = None
            self.class_payment_request_repository = None
            self.payment_repository = None
            self.payment_transaction_repository = None
            return
        self.order_repository = SQLAlchemyOrderRepository(session)
        self.payment_request_repository = SQLAlchemyPaymentRequestRepository(session)
        self.class_payment_request_repository = SQLAlchemyClassPaymentRequestRepository(session)
        self.payment_repository = SQLAlchemyPaymentRepository(session)
        self.payment_transaction_repository = SQLAlchemyPaymentTransactionRepository(session)

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self._bind_repositories(self.session)
        # 仅在非只读模式下显式开启事务
        if not self._readonly:
            try:
                self._transaction = await self.session.begin()
            except (OperationalError, InterfaceError) as exc:
                await self._close_session()
                raise TransientStoreException(details={"error": str(exc)}) from exc
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        except Exception as commit_exc:
            if _is_transient(commit_exc):
                logger.warning("uow_commit_transient_error", error=str(commit_exc))
                raise TransientStoreException(details={"error": str(commit_exc)}) from commit_exc
            raise
        finally:
            # 事务在 commit/rollback 后通常会结束，这里仅在仍然活动时做安全关闭
            tx = getattr(self, "_transaction", None)
            if tx is not None and getattr(tx, "is_active", False):
                close = getattr(tx, "close", None)
                if callable(close):
                    res = close()
                    if inspect.isawaitable(res):
                        await res
            await self._close_session()
        if exc is not None and _is_transient(exc):
            logger.warning("uow_transient_error", error=str(exc))
            raise TransientStoreException(details={"error": str(exc)}) from exc

    async def _close_session(self) -> None:
        if self._external_session is None and self.session is not None:
            await self.session.close()
            self.session = None
        self._bind_repositories(None)

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False
