"""Billing Celery tasks: scheduled reconciliation and deferred callbacks.

Each task runs its coroutine with asyncio.run on a dedicated engine, so
pooled connections never outlive the event loop that opened them.
"""
from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Awaitable, Callable

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..utils.base_task import BaseTask
from application.dtos.billing import SettlementOutcomeDTO
from core.config import settings
from core.logging_config import get_logger
from domain.billing.exceptions import is_retryable
from domain.common.exceptions import BusinessException, TransientStoreException
from infrastructure.bootstrap import (
    build_directory,
    build_reconciliation_service,
    build_settlement_service,
)
from infrastructure.database import build_engine
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

logger = get_logger(__name__)


def _run_with_services(fn: Callable[[Any, Any], Awaitable[Any]]) -> Any:
    async def _run():
        engine = build_engine(settings.database.url, echo=settings.database.echo)
        sessions = async_sessionmaker(bind=engine, expire_on_commit=False)
        directory = build_directory()
        try:
            return await fn(directory, partial(SQLAlchemyUnitOfWork, sessions))
        finally:
            await directory.close()
            await engine.dispose()

    return asyncio.run(_run())


@shared_task(name="billing.run_reconciliation", bind=True, base=BaseTask)
def run_reconciliation(self) -> dict:
    """Backfill snapshots, expire stuck payments and repair orphaned successes."""

    async def _reconcile(directory, uow_factory):
        service = build_reconciliation_service(directory, uow_factory)
        return await service.run_reconciliation()

    report = _run_with_services(_reconcile)
    return report.model_dump()


@shared_task(
    name="billing.apply_callback",
    bind=True,
    base=BaseTask,
    autoretry_for=(TransientStoreException,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 8},
)
def apply_callback(self, channel: str, raw: dict) -> dict:
    """Replay a gateway callback that could not be applied in-process."""

    async def _apply(directory, uow_factory):
        service = build_settlement_service(directory, uow_factory)
        return await service.handle_gateway_callback(channel, raw)

    try:
        result = _run_with_services(_apply)
    except BusinessException as exc:
        if is_retryable(exc):
            raise
        # 签名错误、金额不符等重放也不会成功
        logger.warning(
            "deferred_callback_rejected",
            channel=channel,
            code=int(exc.code),
            error=exc.message,
        )
        return {"rejected": True, "code": int(exc.code), "message": exc.message}
    return SettlementOutcomeDTO.from_result(result).model_dump(mode="json")
