"""
询价单管理服务
"""
from typing import Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, delete, desc
from loguru import logger

from app.core.database import guarded_update
from app.core.middleware import (
    NotFoundException, InvalidStateTransitionException, AccessDeniedException
)
from app.models.inquiry import Inquiry
from app.models.user import User
from app.schemas.common import Actor
from app.schemas.inquiry import (
    InquiryStatus, InquiryCreateRequest, InquiryUpdateRequest,
    InquiryResponse, PaginatedInquiryListResponse
)
from app.services.notification_service import Notifier, WorkflowEvents
from app.services.numbering import NumberGenerator


# 客户仍可修改询价单的状态
EDITABLE_STATUSES = (InquiryStatus.PENDING, InquiryStatus.REVIEWED)


class InquiryService:
    """询价单管理服务"""

    def __init__(self, notifier: Notifier, numbers: Optional[NumberGenerator] = None):
        self.events = WorkflowEvents(notifier)
        self.numbers = numbers or NumberGenerator()

    async def create_inquiry(
        self,
        db: AsyncSession,
        customer_id: UUID,
        data: InquiryCreateRequest
    ) -> Inquiry:
        """客户提交询价单"""
        customer = await db.get(User, customer_id)
        if not customer:
            raise NotFoundException("客户", customer_id)

        try:
            inquiry = Inquiry(
                inquiry_no=await self.numbers.inquiry_no(db),
                customer_id=customer_id,
                parts=[part.model_dump() for part in data.parts],
                files=[f.model_dump() for f in data.files],
                delivery_address=data.delivery_address.model_dump(),
                special_instructions=data.special_instructions,
                expected_delivery_date=data.expected_delivery_date,
                status=InquiryStatus.PENDING,
            )
            db.add(inquiry)
            await db.commit()
            await db.refresh(inquiry)
        except Exception as e:
            await db.rollback()
            logger.error(f"创建询价单失败: {e}")
            raise

        logger.info(f"询价单已创建: {inquiry.inquiry_no} | 零件数: {len(inquiry.parts)}")
        await self.events.inquiry_received(db, inquiry, customer)
        return inquiry

    async def get_inquiry(
        self,
        db: AsyncSession,
        inquiry_id: UUID,
        actor: Optional[Actor] = None
    ) -> Inquiry:
        """获取询价单；传入 actor 时校验访问权限"""
        inquiry = await db.get(Inquiry, inquiry_id)
        if not inquiry:
            raise NotFoundException("询价单", inquiry_id)
        if actor and not actor.is_back_office and inquiry.customer_id != actor.user_id:
            raise AccessDeniedException("无权访问该询价单")
        return inquiry

    async def update_inquiry(
        self,
        db: AsyncSession,
        inquiry_id: UUID,
        actor: Actor,
        data: InquiryUpdateRequest
    ) -> Inquiry:
        """客户修改询价单（仅待处理/已查看状态）"""
        inquiry = await db.get(Inquiry, inquiry_id)
        if not inquiry:
            raise NotFoundException("询价单", inquiry_id)
        if inquiry.customer_id != actor.user_id:
            raise AccessDeniedException("只能修改自己的询价单")

        values = {"parts": [part.model_dump() for part in data.parts]}
        if data.special_instructions is not None:
            values["special_instructions"] = data.special_instructions
        if data.expected_delivery_date is not None:
            values["expected_delivery_date"] = data.expected_delivery_date

        try:
            updated = await guarded_update(
                db, Inquiry, Inquiry.inquiry_id, inquiry_id, EDITABLE_STATUSES, values
            )
            if not updated:
                await db.rollback()
                await db.refresh(inquiry)
                raise InvalidStateTransitionException("询价单", inquiry.status, "update")
            await db.commit()
            await db.refresh(inquiry)
        except InvalidStateTransitionException:
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"更新询价单失败: {e}")
            raise

        logger.info(f"询价单已更新: {inquiry.inquiry_no}")
        return inquiry

    async def mark_reviewed(self, db: AsyncSession, inquiry_id: UUID) -> Inquiry:
        """后台标记询价单已查看"""
        inquiry = await db.get(Inquiry, inquiry_id)
        if not inquiry:
            raise NotFoundException("询价单", inquiry_id)
        if inquiry.status == InquiryStatus.REVIEWED:
            return inquiry

        updated = await guarded_update(
            db, Inquiry, Inquiry.inquiry_id, inquiry_id,
            (InquiryStatus.PENDING,), {"status": InquiryStatus.REVIEWED}
        )
        if not updated:
            await db.rollback()
            await db.refresh(inquiry)
            raise InvalidStateTransitionException("询价单", inquiry.status, InquiryStatus.REVIEWED)
        await db.commit()
        await db.refresh(inquiry)
        return inquiry

    async def delete_inquiry(self, db: AsyncSession, inquiry_id: UUID, actor: Actor) -> bool:
        """删除询价单（仅本人，且仅待处理状态）"""
        inquiry = await db.get(Inquiry, inquiry_id)
        if not inquiry:
            raise NotFoundException("询价单", inquiry_id)
        if inquiry.customer_id != actor.user_id:
            raise AccessDeniedException("只能删除自己的询价单")

        result = await db.execute(
            delete(Inquiry).where(
                Inquiry.inquiry_id == inquiry_id,
                Inquiry.status == InquiryStatus.PENDING
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            await db.refresh(inquiry)
            raise InvalidStateTransitionException("询价单", inquiry.status, "delete")
        await db.commit()
        db.expunge(inquiry)

        logger.info(f"询价单已删除: {inquiry.inquiry_no}")
        return True

    async def list_inquiries(
        self,
        db: AsyncSession,
        customer_id: Optional[UUID] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> PaginatedInquiryListResponse:
        """分页查询询价单"""
        query = select(Inquiry)
        if customer_id:
            query = query.where(Inquiry.customer_id == customer_id)
        if status:
            query = query.where(Inquiry.status == status)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await db.execute(count_query)).scalar() or 0

        query = query.order_by(desc(Inquiry.created_at))
        query = query.offset((page - 1) * page_size).limit(page_size)
        result = await db.execute(query)
        inquiries = result.scalars().all()

        return PaginatedInquiryListResponse(
            total=total,
            page=page,
            page_size=page_size,
            data=[InquiryResponse.model_validate(i) for i in inquiries]
        )
