"""
报价单API端点
"""
from typing import Optional, List
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_actor, require_back_office, get_quotation_service
from app.core.database import get_db
from app.core.middleware import NotFoundException
from app.schemas.common import Actor
from app.schemas.order import OrderResponse
from app.schemas.quotation import (
    QuotationCreateRequest, QuotationResponseRequest, QuotationDetailResponse,
    QuotationListResponse, PaginatedQuotationListResponse,
    QuotationRespondResult, ExpireOverdueResult
)
from app.services.quotation_service import QuotationService

router = APIRouter()


@router.post("", response_model=QuotationDetailResponse, status_code=201)
async def create_quotation(
    data: QuotationCreateRequest,
    actor: Actor = Depends(require_back_office),
    service: QuotationService = Depends(get_quotation_service),
    db: AsyncSession = Depends(get_db)
):
    """
    为询价单创建报价单

    同一询价单已有草稿时更新草稿；已发送的报价单不能重复创建（409）
    """
    quotation = await service.create_quotation(db, data, prepared_by=actor.user_id)
    return await service.get_quotation_detail(db, quotation.quotation_id)


@router.get("", response_model=PaginatedQuotationListResponse)
async def list_quotations(
    status: Optional[str] = Query(None, description="状态筛选"),
    page: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(20, ge=1, le=100, description="每页数量"),
    actor: Actor = Depends(require_back_office),
    service: QuotationService = Depends(get_quotation_service),
    db: AsyncSession = Depends(get_db)
):
    """报价单列表（后台）"""
    return await service.list_quotations(db, status=status, page=page, page_size=page_size)


@router.get("/customer", response_model=List[QuotationListResponse])
async def list_customer_quotations(
    status: Optional[str] = Query(None, description="状态筛选"),
    actor: Actor = Depends(get_current_actor),
    service: QuotationService = Depends(get_quotation_service),
    db: AsyncSession = Depends(get_db)
):
    """当前客户收到的报价单"""
    return await service.list_customer_quotations(db, actor.user_id, status=status)


@router.post("/expire-overdue", response_model=ExpireOverdueResult)
async def expire_overdue(
    actor: Actor = Depends(require_back_office),
    service: QuotationService = Depends(get_quotation_service),
    db: AsyncSession = Depends(get_db)
):
    """把已过有效期的报价单批量标记为过期"""
    return ExpireOverdueResult(expired=await service.expire_overdue(db))


@router.get("/inquiry/{inquiry_id}", response_model=QuotationDetailResponse)
async def get_quotation_for_inquiry(
    inquiry_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: QuotationService = Depends(get_quotation_service),
    db: AsyncSession = Depends(get_db)
):
    """按询价单查询报价单"""
    quotation = await service.get_quotation_for_inquiry(db, inquiry_id)
    if not quotation:
        raise NotFoundException("报价单")
    return await service.get_quotation_detail(db, quotation.quotation_id, actor)


@router.get("/{quotation_id}", response_model=QuotationDetailResponse)
async def get_quotation(
    quotation_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: QuotationService = Depends(get_quotation_service),
    db: AsyncSession = Depends(get_db)
):
    """获取报价单详情"""
    return await service.get_quotation_detail(db, quotation_id, actor)


@router.post("/{quotation_id}/send", response_model=QuotationDetailResponse)
async def send_quotation(
    quotation_id: UUID,
    actor: Actor = Depends(require_back_office),
    service: QuotationService = Depends(get_quotation_service),
    db: AsyncSession = Depends(get_db)
):
    """发送报价单给客户"""
    await service.send_quotation(db, quotation_id)
    return await service.get_quotation_detail(db, quotation_id)


@router.post("/{quotation_id}/response", response_model=QuotationRespondResult)
async def respond_quotation(
    quotation_id: UUID,
    data: QuotationResponseRequest,
    actor: Actor = Depends(get_current_actor),
    service: QuotationService = Depends(get_quotation_service),
    db: AsyncSession = Depends(get_db)
):
    """
    客户答复报价单

    - **accepted**: 生成订单（重复提交返回同一订单）
    - **rejected**: 记录拒绝原因
    """
    _, order = await service.respond(db, quotation_id, actor, data.response, data.notes)
    return QuotationRespondResult(
        quotation=await service.get_quotation_detail(db, quotation_id),
        order=OrderResponse.from_order(order) if order else None
    )
