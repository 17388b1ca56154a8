"""
付款API端点
"""
from typing import List
from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_actor, require_back_office, get_payment_service
from app.core.database import get_db
from app.schemas.common import Actor
from app.schemas.order import OrderResponse
from app.schemas.payment import (
    PaymentInitializeRequest, PaymentConfirmRequest, RefundRequest,
    PaymentStatusResponse, PaymentHistoryResponse, PaymentMethodInfo
)
from app.services.payment_service import PaymentService

router = APIRouter()


@router.get("/methods", response_model=List[PaymentMethodInfo])
async def list_payment_methods(
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    """可选付款方式"""
    return service.list_methods()


@router.post("/initialize", response_model=OrderResponse)
async def initialize_payment(
    data: PaymentInitializeRequest,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service),
    db: AsyncSession = Depends(get_db)
):
    """发起付款（金额必须与订单金额一致）"""
    service.ensure_access(await service.orders.get_order(db, data.order_id), actor)
    order = await service.initialize(db, data.order_id, data.payment_method, data.amount)
    return OrderResponse.from_order(order)


@router.post("/confirm", response_model=OrderResponse)
async def confirm_payment(
    data: PaymentConfirmRequest,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service),
    db: AsyncSession = Depends(get_db)
):
    """确认付款（同一交易号重复提交不会重复处理）"""
    service.ensure_access(await service.orders.get_order(db, data.order_id), actor)
    order = await service.confirm(db, data.order_id, data.transaction_id, data.amount, data.gateway)
    return OrderResponse.from_order(order)


@router.post("/{order_id}/fail", response_model=OrderResponse)
async def fail_payment(
    order_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service),
    db: AsyncSession = Depends(get_db)
):
    """标记付款失败"""
    service.ensure_access(await service.orders.get_order(db, order_id), actor)
    return OrderResponse.from_order(await service.fail(db, order_id))


@router.post("/{order_id}/refund", response_model=OrderResponse)
async def refund_payment(
    order_id: UUID,
    data: RefundRequest,
    actor: Actor = Depends(require_back_office),
    service: PaymentService = Depends(get_payment_service),
    db: AsyncSession = Depends(get_db)
):
    """退款（后台）"""
    order = await service.refund(db, order_id, data.reason, data.amount)
    return OrderResponse.from_order(order)


@router.get("/{order_id}/status", response_model=PaymentStatusResponse)
async def get_payment_status(
    order_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service),
    db: AsyncSession = Depends(get_db)
):
    """付款状态"""
    service.ensure_access(await service.orders.get_order(db, order_id), actor)
    return await service.get_payment_status(db, order_id)


@router.get("/{order_id}/history", response_model=PaymentHistoryResponse)
async def get_payment_history(
    order_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service),
    db: AsyncSession = Depends(get_db)
):
    """付款历史"""
    service.ensure_access(await service.orders.get_order(db, order_id), actor)
    return await service.get_payment_history(db, order_id)
