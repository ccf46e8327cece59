"""
订单API路由 - FastAPI表现层
"""
from typing import List

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import CurrentUser, get_current_user, get_order_service
from application.dtos.orders import OrderCreateDTO, OrderResponseDTO
from application.services.order_service import OrderApplicationService
from core.response import success_response, Response as ApiResponse

router = APIRouter(
    prefix="/orders",
    tags=["订单"]
)


@router.post(
    "",
    summary="下单",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[OrderResponseDTO],
)
async def create_order(
    data: OrderCreateDTO,
    current_user: CurrentUser = Depends(get_current_user),
    service: OrderApplicationService = Depends(get_order_service),
):
    """
    创建订单（状态 pending），金额由明细汇总

    - **branch**: 履约门店
    - **items**: 商品明细 [{product_id, quantity, price}]
    - **delivery_address** / **delivery_location**: 配送信息（可选）
    """
    order = await service.create_order(current_user.id, data)
    return success_response(data=order, message="Order created")


@router.get("", summary="我的订单", response_model=ApiResponse[List[OrderResponseDTO]])
async def list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    current_user: CurrentUser = Depends(get_current_user),
    service: OrderApplicationService = Depends(get_order_service),
):
    orders = await service.list_orders(current_user.id, skip, limit)
    return success_response(data=orders)


@router.get("/{order_id}", summary="订单详情", response_model=ApiResponse[OrderResponseDTO])
async def get_order(
    order_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: OrderApplicationService = Depends(get_order_service),
):
    order = await service.get_order(order_id, current_user.id, is_admin=current_user.is_admin)
    return success_response(data=order)


@router.post("/{order_id}/cancel", summary="取消订单", response_model=ApiResponse[OrderResponseDTO])
async def cancel_order(
    order_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: OrderApplicationService = Depends(get_order_service),
):
    """仅 pending 状态的订单可取消"""
    order = await service.cancel_order(order_id, current_user.id)
    return success_response(data=order, message="Order cancelled")
