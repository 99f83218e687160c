"""
服务装配：API 依赖与 Celery 任务共用

应用服务只依赖端口（UoW、目录、支付渠道），这里按配置注入具体实现
"""
from __future__ import annotations

from datetime import timedelta
from typing import Callable, Optional

from application.ports.directory import StudentDirectory
from application.services.order_service import OrderService
from application.services.payment_request_service import PaymentRequestService
from application.services.reconciliation_service import ReconciliationService
from application.services.settlement_service import SettlementService
from core.config import settings
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.external.api_clients.directory import HttpStudentDirectory
from infrastructure.external.payments import get_payment_channel
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

UowFactory = Callable[..., AbstractUnitOfWork]


def build_directory() -> HttpStudentDirectory:
    cfg = settings.directory
    return HttpStudentDirectory(
        base_url=cfg.base_url,
        timeout=cfg.timeout,
        max_retries=cfg.max_retries,
        retry_delay=cfg.retry_delay,
        auth_token=cfg.api_token,
    )


def build_order_service(directory: StudentDirectory, uow_factory: Optional[UowFactory] = None) -> OrderService:
    return OrderService(uow_factory or SQLAlchemyUnitOfWork, directory, currency=settings.billing.currency)


def build_payment_request_service(
    directory: StudentDirectory, uow_factory: Optional[UowFactory] = None
) -> PaymentRequestService:
    return PaymentRequestService(uow_factory or SQLAlchemyUnitOfWork, directory, currency=settings.billing.currency)


def build_settlement_service(directory: StudentDirectory, uow_factory: Optional[UowFactory] = None) -> SettlementService:
    return SettlementService(
        uow_factory or SQLAlchemyUnitOfWork,
        directory,
        get_payment_channel,
        expiry_window=timedelta(minutes=settings.billing.payment_expiry_minutes),
        retry_attempts=settings.billing.callback_retry_attempts,
    )


def build_reconciliation_service(
    directory: StudentDirectory, uow_factory: Optional[UowFactory] = None
) -> ReconciliationService:
    return ReconciliationService(
        uow_factory or SQLAlchemyUnitOfWork,
        directory,
        build_settlement_service(directory, uow_factory),
        batch_size=settings.billing.reconciliation_batch_size,
    )
