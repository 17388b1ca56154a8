"""
订单API端点（后台）
"""
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_actor, require_back_office, get_order_service
from app.core.database import get_db
from app.core.middleware import AccessDeniedException
from app.schemas.common import Actor
from app.schemas.order import (
    OrderResponse, OrderStatusUpdateRequest, PaginatedOrderListResponse, DashboardStatsResponse
)
from app.services.order_service import OrderService

router = APIRouter()


@router.get("", response_model=PaginatedOrderListResponse)
async def list_orders(
    status: Optional[str] = Query(None, description="状态筛选"),
    page: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(20, ge=1, le=100, description="每页数量"),
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """订单列表：客户只能看到自己的订单"""
    customer_id = None if actor.is_back_office else actor.user_id
    return await service.list_orders(db, status=status, customer_id=customer_id, page=page, page_size=page_size)


@router.get("/dashboard/stats", response_model=DashboardStatsResponse)
async def get_dashboard_stats(
    actor: Actor = Depends(require_back_office),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """后台首页统计"""
    return await service.dashboard_stats(db)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """订单详情"""
    order = await service.get_order(db, order_id)
    if not actor.is_back_office and order.customer_id != actor.user_id:
        raise AccessDeniedException("无权访问该订单")
    return OrderResponse.from_order(order)


@router.put("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: UUID,
    data: OrderStatusUpdateRequest,
    actor: Actor = Depends(require_back_office),
    service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """
    更新订单状态

    进入 confirmed 及之后的履约状态会同时把付款标记为已完成；
    跳级推进需要 manual_override=true
    """
    order = await service.update_status(
        db,
        order_id,
        data.status,
        notes=data.notes,
        estimated_delivery=data.estimated_delivery,
        manual_override=data.manual_override
    )
    return OrderResponse.from_order(order)
