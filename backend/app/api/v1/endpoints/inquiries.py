"""
询价单API端点
"""
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_actor, require_back_office, get_inquiry_service
from app.core.database import get_db
from app.schemas.common import Actor, SuccessResponse
from app.schemas.inquiry import (
    InquiryCreateRequest, InquiryUpdateRequest, InquiryResponse, PaginatedInquiryListResponse
)
from app.services.inquiry_service import InquiryService

router = APIRouter()


@router.post("", response_model=InquiryResponse, status_code=201)
async def create_inquiry(
    data: InquiryCreateRequest,
    actor: Actor = Depends(get_current_actor),
    service: InquiryService = Depends(get_inquiry_service),
    db: AsyncSession = Depends(get_db)
):
    """
    提交询价单

    零件列表、收货地址、文件列表可以是JSON对象，也可以是JSON字符串
    """
    return await service.create_inquiry(db, actor.user_id, data)


@router.get("", response_model=PaginatedInquiryListResponse)
async def list_inquiries(
    status: Optional[str] = Query(None, description="状态筛选"),
    page: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(20, ge=1, le=100, description="每页数量"),
    actor: Actor = Depends(get_current_actor),
    service: InquiryService = Depends(get_inquiry_service),
    db: AsyncSession = Depends(get_db)
):
    """询价单列表：客户只能看到自己的询价单"""
    customer_id = None if actor.is_back_office else actor.user_id
    return await service.list_inquiries(db, customer_id=customer_id, status=status, page=page, page_size=page_size)


@router.get("/{inquiry_id}", response_model=InquiryResponse)
async def get_inquiry(
    inquiry_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: InquiryService = Depends(get_inquiry_service),
    db: AsyncSession = Depends(get_db)
):
    """获取询价单详情"""
    return await service.get_inquiry(db, inquiry_id, actor)


@router.put("/{inquiry_id}", response_model=InquiryResponse)
async def update_inquiry(
    inquiry_id: UUID,
    data: InquiryUpdateRequest,
    actor: Actor = Depends(get_current_actor),
    service: InquiryService = Depends(get_inquiry_service),
    db: AsyncSession = Depends(get_db)
):
    """修改询价单（仅待处理/已查看状态）"""
    return await service.update_inquiry(db, inquiry_id, actor, data)


@router.delete("/{inquiry_id}", response_model=SuccessResponse)
async def delete_inquiry(
    inquiry_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: InquiryService = Depends(get_inquiry_service),
    db: AsyncSession = Depends(get_db)
):
    """删除询价单（仅待处理状态）"""
    await service.delete_inquiry(db, inquiry_id, actor)
    return SuccessResponse(message="询价单已删除")


@router.post("/{inquiry_id}/review", response_model=InquiryResponse)
async def review_inquiry(
    inquiry_id: UUID,
    actor: Actor = Depends(require_back_office),
    service: InquiryService = Depends(get_inquiry_service),
    db: AsyncSession = Depends(get_db)
):
    """后台标记询价单已查看"""
    return await service.mark_reviewed(db, inquiry_id)
