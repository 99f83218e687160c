"""
缴费请求API路由 - 学生查看自己的应缴项
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import Identity, get_identity, get_payment_request_service, resolve_student_id
from application.dtos.billing import PaymentRequestDTO
from application.services.payment_request_service import PaymentRequestService
from core.exceptions import ForbiddenException
from core.response import Response as ApiResponse, success_response
from domain.billing.entity import RequestStatus

router = APIRouter(
    prefix="/payment-requests",
    tags=["缴费请求"]
)


@router.get("", summary="学生缴费请求列表", response_model=ApiResponse[list[PaymentRequestDTO]])
async def list_student_requests(
    student_id: Optional[str] = Query(default=None),
    status: Optional[RequestStatus] = Query(default=None, description="overdue 为推导状态"),
    identity: Identity = Depends(get_identity),
    service: PaymentRequestService = Depends(get_payment_request_service),
):
    requests = await service.list_student_requests(resolve_student_id(identity, student_id), status)
    return success_response(data=requests)


@router.get("/{request_id}", summary="缴费请求详情", response_model=ApiResponse[PaymentRequestDTO])
async def get_request(
    request_id: str,
    identity: Identity = Depends(get_identity),
    service: PaymentRequestService = Depends(get_payment_request_service),
):
    request = await service.get_request(request_id)
    if identity.role == "student" and request.student_id != identity.user_id:
        raise ForbiddenException("Payment request belongs to another student")
    return success_response(data=request)
