"""
订单API路由 - 选课下单、取消、查询
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import Identity, get_identity, get_order_service, resolve_student_id
from application.dtos.billing import CancelOrder, CreateOrder, OrderDTO, PaymentRequestDTO
from application.services.order_service import OrderService
from core.exceptions import ForbiddenException
from core.response import Response as ApiResponse, success_response
from domain.billing.entity import OrderStatus

router = APIRouter(
    prefix="/orders",
    tags=["订单"]
)


def _ensure_owner(identity: Identity, order: OrderDTO) -> None:
    if identity.role == "student" and order.student_id != identity.user_id:
        raise ForbiddenException("Order belongs to another student")


@router.post("", summary="创建订单", response_model=ApiResponse[OrderDTO])
async def create_order(
    payload: CreateOrder,
    identity: Identity = Depends(get_identity),
    service: OrderService = Depends(get_order_service),
):
    """
    为学生选中的班级下单，同一事务内生成每个班级的缴费请求

    - **class_ids**: 班级ID列表（不可为空、不可重复、必须与学生同分校）
    - **student_id**: 代为下单的学生（学生本人可省略）
    """
    student_id = resolve_student_id(identity, payload.student_id)
    order = await service.create_order(student_id, payload.class_ids, note=payload.note)
    return success_response(data=order, message="Order created")


@router.get("", summary="订单列表", response_model=ApiResponse[list[OrderDTO]])
async def list_orders(
    student_id: Optional[str] = Query(default=None),
    status: Optional[OrderStatus] = Query(default=None),
    identity: Identity = Depends(get_identity),
    service: OrderService = Depends(get_order_service),
):
    orders = await service.list_orders(resolve_student_id(identity, student_id), status)
    return success_response(data=orders)


@router.get("/{order_id}", summary="订单详情", response_model=ApiResponse[OrderDTO])
async def get_order(
    order_id: str,
    identity: Identity = Depends(get_identity),
    service: OrderService = Depends(get_order_service),
):
    order = await service.get_order(order_id)
    _ensure_owner(identity, order)
    return success_response(data=order)


@router.get("/{order_id}/requests", summary="订单缴费请求", response_model=ApiResponse[list[PaymentRequestDTO]])
async def list_order_requests(
    order_id: str,
    identity: Identity = Depends(get_identity),
    service: OrderService = Depends(get_order_service),
):
    _ensure_owner(identity, await service.get_order(order_id))
    return success_response(data=await service.list_order_requests(order_id))


@router.post("/{order_id}/cancel", summary="取消订单", response_model=ApiResponse[OrderDTO])
async def cancel_order(
    order_id: str,
    payload: Optional[CancelOrder] = None,
    identity: Identity = Depends(get_identity),
    service: OrderService = Depends(get_order_service),
):
    """取消待支付订单；若覆盖的支付已成功则返回 409 并附带订单当前状态"""
    _ensure_owner(identity, await service.get_order(order_id))
    order = await service.cancel_order(order_id, reason=payload.reason if payload else None)
    return success_response(data=order, message="Order cancelled")
