"""
管理API路由 - 对账、现金确认、班级收费活动
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.dependencies import (
    Identity,
    get_payment_request_service,
    get_reconciliation_service,
    get_settlement_service,
    require_admin,
)
from application.dtos.billing import (
    CampaignSummary,
    ClassPaymentRequestDTO,
    CreateClassPaymentRequest,
    ReconciliationReport,
    SettlementOutcomeDTO,
)
from application.services.payment_request_service import PaymentRequestService
from application.services.reconciliation_service import ReconciliationService
from application.services.settlement_service import SettlementService
from core.response import Response as ApiResponse, success_response

router = APIRouter(
    prefix="/admin",
    tags=["管理"],
    dependencies=[Depends(require_admin)],
)


class ConfirmCash(BaseModel):
    note: Optional[str] = None


@router.post("/reconciliation", summary="执行对账", response_model=ApiResponse[ReconciliationReport])
async def run_reconciliation(service: ReconciliationService = Depends(get_reconciliation_service)):
    """回填缺失快照、过期滞留支付、修复成功但未结算的支付；可重复执行"""
    report = await service.run_reconciliation()
    return success_response(data=report, message="Reconciliation finished")


@router.post(
    "/payments/{payment_id}/confirm-cash",
    summary="确认现金收款",
    response_model=ApiResponse[SettlementOutcomeDTO],
)
async def confirm_cash_payment(
    payment_id: str,
    payload: Optional[ConfirmCash] = None,
    admin: Identity = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    result = await service.confirm_cash_payment(
        payment_id, admin.user_id, note=payload.note if payload else None
    )
    outcome = SettlementOutcomeDTO.from_result(result)
    return success_response(
        data=outcome,
        message="Duplicate confirmation ignored" if outcome.duplicate else "Cash payment confirmed",
    )


@router.post("/campaigns", summary="创建班级收费", response_model=ApiResponse[ClassPaymentRequestDTO])
async def create_campaign(
    payload: CreateClassPaymentRequest,
    admin: Identity = Depends(require_admin),
    service: PaymentRequestService = Depends(get_payment_request_service),
):
    campaign = await service.create_class_payment_request(payload, created_by=admin.user_id)
    return success_response(data=campaign, message="Campaign created")


@router.get(
    "/classes/{class_id}/campaigns",
    summary="班级收费列表",
    response_model=ApiResponse[list[ClassPaymentRequestDTO]],
)
async def list_campaigns(class_id: str, service: PaymentRequestService = Depends(get_payment_request_service)):
    return success_response(data=await service.list_class_payment_requests(class_id))


@router.get("/campaigns/{campaign_id}/summary", summary="班级收费汇总", response_model=ApiResponse[CampaignSummary])
async def campaign_summary(campaign_id: str, service: PaymentRequestService = Depends(get_payment_request_service)):
    return success_response(data=await service.get_campaign_summary(campaign_id))


@router.post("/campaigns/{campaign_id}/cancel", summary="取消班级收费", response_model=ApiResponse[ClassPaymentRequestDTO])
async def cancel_campaign(campaign_id: str, service: PaymentRequestService = Depends(get_payment_request_service)):
    campaign = await service.cancel_class_payment_request(campaign_id)
    return success_response(data=campaign, message="Campaign cancelled")
