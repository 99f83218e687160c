"""
Payments API routes.

Initiation, reads and the channel callback endpoint. Keep this thin: signing,
state transitions and idempotency live in the settlement service.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool

from api.dependencies import (
    Identity,
    get_identity,
    get_settlement_service,
    get_task_dispatcher,
    resolve_student_id,
)
from api.middleware.request_id import get_client_ip
from api.utils.callbacks import ip_allowed, read_callback_params
from application.dtos.billing import (
    InitiatePayment,
    PaymentDTO,
    PaymentInitiation,
    PaymentTransactionDTO,
    SettlementOutcomeDTO,
)
from application.services.settlement_service import SettlementService
from core.exceptions import ForbiddenException
from core.logging_config import get_logger
from core.response import Response as ApiResponse, success_response
from core.settings import payment_settings
from domain.billing.entity import PaymentMethod, PaymentStatus
from domain.common.exceptions import TransientStoreException
from infrastructure.tasks.utils.dispatcher import TaskDispatcher


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post("", summary="Initiate payment", response_model=ApiResponse[PaymentInitiation])
async def initiate_payment(
    payload: InitiatePayment,
    identity: Identity = Depends(get_identity),
    service: SettlementService = Depends(get_settlement_service),
):
    student_id = resolve_student_id(identity, payload.student_id)
    initiation = await service.initiate_payment(
        payload.request_ids,
        payload.method,
        student_id,
        paid_by=identity.user_id,
        client_ip=get_client_ip(),
    )
    return success_response(data=initiation, message="Payment initiated")


@router.get("", summary="List payments", response_model=ApiResponse[list[PaymentDTO]])
async def list_payments(
    student_id: Optional[str] = Query(default=None),
    status: Optional[PaymentStatus] = Query(default=None),
    identity: Identity = Depends(get_identity),
    service: SettlementService = Depends(get_settlement_service),
):
    payments = await service.list_payments(resolve_student_id(identity, student_id), status)
    return success_response(data=payments)


async def _handle_callback(
    channel: str,
    request: Request,
    service: SettlementService,
    dispatcher: TaskDispatcher,
):
    if channel.lower() == PaymentMethod.CASH.value:
        # 现金只能由管理员在 /admin/payments/{id}/confirm-cash 确认
        logger.warning("callback_cash_refused", client_ip=get_client_ip())
        raise ForbiddenException("Cash payments are confirmed by an administrator")
    if not ip_allowed(get_client_ip(), payment_settings.webhook.ip_allowlist):
        logger.warning("callback_ip_rejected", channel=channel, client_ip=get_client_ip())
        raise ForbiddenException("Callback source not allowed")

    raw = await read_callback_params(request)
    try:
        result = await service.handle_gateway_callback(channel, raw)
    except TransientStoreException:
        # 进程内重试耗尽，交给 worker 继续重放
        task_id = await run_in_threadpool(dispatcher.enqueue_callback, channel, raw)
        return success_response(data={"queued": True, "task_id": task_id}, message="Callback queued")

    outcome = SettlementOutcomeDTO.from_result(result)
    message = "Duplicate callback ignored" if outcome.duplicate else "Callback processed"
    return success_response(data=outcome, message=message)


@router.get("/callbacks/{channel}", summary="Channel return callback")
async def payment_callback_get(
    channel: str,
    request: Request,
    service: SettlementService = Depends(get_settlement_service),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
):
    return await _handle_callback(channel, request, service, dispatcher)


@router.post("/callbacks/{channel}", summary="Channel notify callback")
async def payment_callback_post(
    channel: str,
    request: Request,
    service: SettlementService = Depends(get_settlement_service),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
):
    return await _handle_callback(channel, request, service, dispatcher)


@router.get("/{payment_id}", summary="Get payment", response_model=ApiResponse[PaymentDTO])
async def get_payment(
    payment_id: str,
    identity: Identity = Depends(get_identity),
    service: SettlementService = Depends(get_settlement_service),
):
    payment = await service.get_payment(payment_id)
    if identity.role == "student" and payment.student_id != identity.user_id:
        raise ForbiddenException("Payment belongs to another student")
    return success_response(data=payment)


@router.get(
    "/{payment_id}/transactions",
    summary="Payment audit trail",
    response_model=ApiResponse[list[PaymentTransactionDTO]],
)
async def list_payment_transactions(
    payment_id: str,
    identity: Identity = Depends(get_identity),
    service: SettlementService = Depends(get_settlement_service),
):
    payment = await service.get_payment(payment_id)
    if not identity.is_admin and payment.student_id != identity.user_id:
        raise ForbiddenException("Payment belongs to another student")
    return success_response(data=await service.list_payment_transactions(payment_id))
