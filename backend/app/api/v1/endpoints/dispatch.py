"""
发货管理API端点（后台）
"""
from typing import List
from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_back_office, get_current_actor, get_order_service
from app.core.database import get_db
from app.core.middleware import AccessDeniedException
from app.schemas.common import Actor
from app.schemas.order import (
    OrderResponse, DispatchRequest, DispatchUpdateRequest, DeliveredRequest,
    TrackingResponse, DispatchStatsResponse
)
from app.services.order_service import OrderService

router = APIRouter()


@router.get("/ready", response_model=List[OrderResponse])
async def list_ready_orders(
    actor: Actor = Depends(require_back_office),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """待发货订单"""
    orders = await service.list_ready_for_dispatch(db)
    return [OrderResponse.from_order(o) for o in orders]


@router.get("/stats/overview", response_model=DispatchStatsResponse)
async def dispatch_stats(
    actor: Actor = Depends(require_back_office),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """发货统计"""
    return await service.dispatch_stats(db)


@router.post("/{order_id}", response_model=OrderResponse)
async def dispatch_order(
    order_id: UUID,
    data: DispatchRequest,
    actor: Actor = Depends(require_back_office),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """发货"""
    return OrderResponse.from_order(await service.dispatch(db, order_id, data))


@router.put("/{order_id}", response_model=OrderResponse)
async def update_dispatch(
    order_id: UUID,
    data: DispatchUpdateRequest,
    actor: Actor = Depends(require_back_office),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """修改发货信息"""
    return OrderResponse.from_order(await service.update_dispatch_details(db, order_id, data))


@router.post("/{order_id}/delivered", response_model=OrderResponse)
async def mark_delivered(
    order_id: UUID,
    data: DeliveredRequest,
    actor: Actor = Depends(require_back_office),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """确认签收"""
    order = await service.mark_delivered(db, order_id, data.actual_delivery, data.notes)
    return OrderResponse.from_order(order)


@router.get("/{order_id}/tracking", response_model=TrackingResponse)
async def get_tracking(
    order_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """物流跟踪"""
    order = await service.get_order(db, order_id)
    if not actor.is_back_office and order.customer_id != actor.user_id:
        raise AccessDeniedException("无权访问该订单")
    return await service.get_tracking(db, order_id)
