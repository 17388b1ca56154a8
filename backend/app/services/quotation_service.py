"""
报价单管理服务

draft → sent → accepted → order_created
             → rejected
             → expired
"""
from typing import List, Optional, Tuple
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update, delete, desc
from sqlalchemy.exc import IntegrityError
from loguru import logger

from app.core.config import settings
from app.core.database import guarded_update
from app.core.middleware import (
    NotFoundException, ValidationException, InvalidLineItemException,
    InvalidStateTransitionException, DuplicateResourceException,
    AccessDeniedException, QuotationExpiredException
)
from app.models.inquiry import Inquiry
from app.models.order import Order
from app.models.quotation import Quotation, QuotationItem
from app.models.user import User
from app.schemas.common import Actor
from app.schemas.inquiry import InquiryStatus
from app.schemas.quotation import (
    QuotationStatus, QuotationDecision, QuotationCreateRequest, LineItemInput,
    QuotationDetailResponse, QuotationItemResponse, QuotationListResponse,
    PaginatedQuotationListResponse
)
from app.services.notification_service import Notifier, WorkflowEvents
from app.services.numbering import NumberGenerator
from app.services.order_service import OrderService


CENT = Decimal("0.01")


def price_line_items(parts: List[LineItemInput]) -> Tuple[List[dict], Decimal]:
    """
    校验报价明细并计算小计与总金额

    返回 (明细字段列表, 总金额)；明细缺少材料/厚度/数量或单价非正时抛出 InvalidLineItemException
    """
    items = []
    total = Decimal("0")
    for index, part in enumerate(parts):
        if not part.material:
            raise InvalidLineItemException(f"第 {index + 1} 项缺少材料", index)
        if not part.thickness:
            raise InvalidLineItemException(f"第 {index + 1} 项缺少厚度", index)
        if part.quantity is None or part.quantity < 1:
            raise InvalidLineItemException(f"第 {index + 1} 项数量必须为正整数", index)
        if part.unit_price is None or part.unit_price <= 0:
            raise InvalidLineItemException(f"第 {index + 1} 项单价必须大于0", index)

        unit_price = Decimal(part.unit_price).quantize(CENT, rounding=ROUND_HALF_UP)
        total_price = (unit_price * part.quantity).quantize(CENT, rounding=ROUND_HALF_UP)
        total += total_price
        items.append({
            "part_ref": part.part_ref,
            "material": part.material,
            "thickness": part.thickness,
            "grade": part.grade,
            "quantity": part.quantity,
            "unit_price": unit_price,
            "total_price": total_price,
            "remarks": part.remarks,
            "sort_order": index,
        })
    return items, total


class QuotationService:
    """报价单管理服务"""

    def __init__(
        self,
        notifier: Notifier,
        numbers: Optional[NumberGenerator] = None,
        orders: Optional[OrderService] = None
    ):
        self.events = WorkflowEvents(notifier)
        self.numbers = numbers or NumberGenerator()
        self.orders = orders or OrderService(notifier, self.numbers)

    # ==================== 查询 ====================

    async def get_quotation(self, db: AsyncSession, quotation_id: UUID) -> Quotation:
        quotation = await db.get(Quotation, quotation_id)
        if not quotation:
            raise NotFoundException("报价单", quotation_id)
        return quotation

    async def get_quotation_for_inquiry(self, db: AsyncSession, inquiry_id: UUID) -> Optional[Quotation]:
        result = await db.execute(select(Quotation).where(Quotation.inquiry_id == inquiry_id))
        return result.scalars().first()

    async def get_quotation_detail(
        self,
        db: AsyncSession,
        quotation_id: UUID,
        actor: Optional[Actor] = None
    ) -> QuotationDetailResponse:
        """获取报价单完整详情"""
        quotation = await self.get_quotation(db, quotation_id)
        if actor is not None:
            inquiry = await db.get(Inquiry, quotation.inquiry_id)
            self.ensure_access(inquiry, actor)

        items_query = select(QuotationItem).where(
            QuotationItem.quotation_id == quotation_id
        ).order_by(QuotationItem.sort_order)
        items_result = await db.execute(items_query)

        detail = QuotationDetailResponse.model_validate(quotation)
        detail.items = [QuotationItemResponse.model_validate(i) for i in items_result.scalars().all()]
        return detail

    async def list_quotations(
        self,
        db: AsyncSession,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> PaginatedQuotationListResponse:
        """分页查询报价单（后台）"""
        query = select(Quotation)
        if status:
            query = query.where(Quotation.status == status)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await db.execute(count_query)).scalar() or 0

        query = query.order_by(desc(Quotation.created_at))
        query = query.offset((page - 1) * page_size).limit(page_size)
        result = await db.execute(query)

        return PaginatedQuotationListResponse(
            total=total,
            page=page,
            page_size=page_size,
            data=[QuotationListResponse.model_validate(q) for q in result.scalars().all()]
        )

    async def list_customer_quotations(
        self,
        db: AsyncSession,
        customer_id: UUID,
        status: Optional[str] = None
    ) -> List[QuotationListResponse]:
        """客户自己的报价单（草稿不可见）"""
        query = (
            select(Quotation)
            .join(Inquiry, Inquiry.inquiry_id == Quotation.inquiry_id)
            .where(Inquiry.customer_id == customer_id, Quotation.status != QuotationStatus.DRAFT)
        )
        if status:
            query = query.where(Quotation.status == status)
        result = await db.execute(query.order_by(desc(Quotation.created_at)))
        return [QuotationListResponse.model_validate(q) for q in result.scalars().all()]

    @staticmethod
    def ensure_access(inquiry: Inquiry, actor: Actor):
        """只有询价单客户本人或后台人员可以访问"""
        if actor.is_back_office:
            return
        if inquiry is None or inquiry.customer_id != actor.user_id:
            raise AccessDeniedException("无权访问该报价单")

    # ==================== 创建/更新草稿 ====================

    async def create_quotation(
        self,
        db: AsyncSession,
        data: QuotationCreateRequest,
        prepared_by: Optional[UUID] = None
    ) -> Quotation:
        """
        为询价单创建报价单

        同一询价单已有草稿时改为更新草稿；已有非草稿报价单时抛出 DuplicateResourceException。
        上传模式直接使用传入的总金额，不能同时提供明细。
        """
        inquiry = await db.get(Inquiry, data.inquiry_id)
        if not inquiry:
            raise NotFoundException("询价单", data.inquiry_id)

        if data.is_upload_quotation:
            if data.parts:
                raise ValidationException("上传文件报价不能同时提供报价明细")
            items = []
            total = Decimal(data.total_amount).quantize(CENT, rounding=ROUND_HALF_UP)
        else:
            if not data.parts:
                raise ValidationException("至少需要一项报价明细")
            items, total = price_line_items(data.parts)
            if data.total_amount is not None and abs(Decimal(data.total_amount) - total) > CENT:
                raise ValidationException(
                    "总金额与明细合计不一致",
                    details={"total_amount": str(data.total_amount), "computed": str(total)}
                )

        existing = await self.get_quotation_for_inquiry(db, data.inquiry_id)
        if existing:
            if existing.status != QuotationStatus.DRAFT:
                raise DuplicateResourceException(
                    f"询价单 {inquiry.inquiry_no} 已存在报价单 {existing.quotation_no}",
                    existing_id=existing.quotation_id,
                    details={"status": existing.status}
                )
            return await self._update_draft(db, existing, inquiry, items, total, data)

        inquiry_id = data.inquiry_id
        try:
            quotation = Quotation(
                quotation_no=await self.numbers.quotation_no(db),
                inquiry_id=inquiry_id,
                status=QuotationStatus.DRAFT,
                total_amount=total,
                currency=data.currency or settings.DEFAULT_CURRENCY,
                valid_until=data.valid_until or datetime.now() + timedelta(days=settings.QUOTATION_VALID_DAYS),
                terms=data.terms or settings.QUOTATION_DEFAULT_TERMS,
                notes=data.notes,
                is_upload_quotation=data.is_upload_quotation,
                prepared_by=prepared_by,
            )
            db.add(quotation)
            await db.flush()

            db.add_all([QuotationItem(quotation_id=quotation.quotation_id, **item) for item in items])

            inquiry.quotation_id = quotation.quotation_id
            inquiry.status = InquiryStatus.QUOTED

            await db.commit()
            await db.refresh(quotation)
        except IntegrityError:
            await db.rollback()
            existing = await self.get_quotation_for_inquiry(db, inquiry_id)
            if existing:
                raise DuplicateResourceException(
                    "该询价单已存在报价单",
                    existing_id=existing.quotation_id,
                    details={"status": existing.status}
                )
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"创建报价单失败: {e}")
            raise

        logger.info(f"报价单已创建: {quotation.quotation_no} | 询价单: {inquiry.inquiry_no} | 金额: {total}")
        return quotation

    async def _update_draft(
        self,
        db: AsyncSession,
        quotation: Quotation,
        inquiry: Inquiry,
        items: List[dict],
        total: Decimal,
        data: QuotationCreateRequest
    ) -> Quotation:
        """替换草稿的明细、金额与条款"""
        values = {
            "total_amount": total,
            "is_upload_quotation": data.is_upload_quotation,
            "updated_at": datetime.now(),
        }
        if data.currency:
            values["currency"] = data.currency
        if data.terms is not None:
            values["terms"] = data.terms
        if data.notes is not None:
            values["notes"] = data.notes
        if data.valid_until is not None:
            values["valid_until"] = data.valid_until

        quotation_id = quotation.quotation_id
        try:
            updated = await guarded_update(
                db, Quotation, Quotation.quotation_id, quotation_id,
                (QuotationStatus.DRAFT,), values
            )
            if not updated:
                await db.rollback()
                await db.refresh(quotation)
                raise DuplicateResourceException(
                    "报价单已发送，不能再修改",
                    existing_id=quotation_id,
                    details={"status": quotation.status}
                )

            await db.execute(delete(QuotationItem).where(QuotationItem.quotation_id == quotation_id))
            db.add_all([QuotationItem(quotation_id=quotation_id, **item) for item in items])

            inquiry.quotation_id = quotation_id
            inquiry.status = InquiryStatus.QUOTED

            await db.commit()
            await db.refresh(quotation)
        except DuplicateResourceException:
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"更新报价单草稿失败: {e}")
            raise

        logger.info(f"报价单草稿已更新: {quotation.quotation_no} | 金额: {total}")
        return quotation

    # ==================== 状态流转 ====================

    async def send_quotation(self, db: AsyncSession, quotation_id: UUID) -> Quotation:
        """发送报价单给客户：draft → sent"""
        quotation = await self.get_quotation(db, quotation_id)

        updated = await guarded_update(
            db, Quotation, Quotation.quotation_id, quotation_id,
            (QuotationStatus.DRAFT,),
            {"status": QuotationStatus.SENT, "sent_at": datetime.now()}
        )
        if not updated:
            await db.rollback()
            await db.refresh(quotation)
            raise InvalidStateTransitionException("报价单", quotation.status, QuotationStatus.SENT)
        await db.commit()
        await db.refresh(quotation)
        logger.info(f"报价单已发送: {quotation.quotation_no}")

        inquiry = await db.get(Inquiry, quotation.inquiry_id)
        customer = await db.get(User, inquiry.customer_id) if inquiry else None
        await self.events.quotation_sent(db, quotation, inquiry, customer)
        return quotation

    async def respond(
        self,
        db: AsyncSession,
        quotation_id: UUID,
        actor: Actor,
        decision: str,
        notes: Optional[str] = None
    ) -> Tuple[Quotation, Optional[Order]]:
        """
        客户答复报价单

        接受时创建订单（重复接受返回同一个订单）；拒绝时记录原因。
        已过期的报价单会被标记为 expired 并抛出 QuotationExpiredException。
        """
        if decision not in (QuotationDecision.ACCEPTED, QuotationDecision.REJECTED):
            raise ValidationException(f"无效的答复: {decision}")

        quotation = await self.get_quotation(db, quotation_id)
        inquiry = await db.get(Inquiry, quotation.inquiry_id)
        self.ensure_access(inquiry, actor)

        if quotation.status != QuotationStatus.SENT:
            return await self._respond_not_sent(db, quotation, inquiry, decision)

        now = datetime.now()
        valid_until = quotation.valid_until
        if valid_until and now > valid_until:
            await self._expire(db, quotation_id, now)
            raise QuotationExpiredException(quotation_id, valid_until)

        if decision == QuotationDecision.ACCEPTED:
            order, transitioned = await self._accept(db, quotation, inquiry, now)
            if not transitioned:
                # 并发答复中落败，决定已由另一请求通知过
                return quotation, order
        else:
            order = None
            await self._reject(db, quotation, inquiry, now, notes)

        logger.info(f"报价单 {quotation.quotation_no} 已被{'接受' if order else '拒绝'}")
        customer = await db.get(User, inquiry.customer_id)
        await self.events.quotation_decision(db, quotation, inquiry, customer, decision, notes)
        return quotation, order

    async def _respond_not_sent(
        self,
        db: AsyncSession,
        quotation: Quotation,
        inquiry: Inquiry,
        decision: str
    ) -> Tuple[Quotation, Optional[Order]]:
        """非 sent 状态：重复接受返回已有订单，其余情况报错"""
        accepted_states = (QuotationStatus.ACCEPTED, QuotationStatus.ORDER_CREATED)
        if decision != QuotationDecision.ACCEPTED or quotation.status not in accepted_states:
            raise InvalidStateTransitionException(
                "报价单", quotation.status, decision, error_code="QUOTATION_NOT_SENT"
            )

        order = await self.orders.get_order_for_quotation(db, quotation.quotation_id)
        if order is None:
            # 接受后订单未落库时补建
            order = await self.orders.create_from_accepted_quotation(db, quotation, inquiry)
            await db.commit()
            await db.refresh(order)
        logger.info(f"报价单 {quotation.quotation_no} 重复接受，返回订单 {order.order_no}")
        return quotation, order

    async def _expire(self, db: AsyncSession, quotation_id: UUID, now: datetime):
        expired = await guarded_update(
            db, Quotation, Quotation.quotation_id, quotation_id,
            (QuotationStatus.SENT,),
            {"status": QuotationStatus.EXPIRED, "expired_at": now}
        )
        if expired:
            await db.commit()
            logger.info(f"报价单已过期: {quotation_id}")
        else:
            await db.rollback()

    async def _accept(
        self,
        db: AsyncSession,
        quotation: Quotation,
        inquiry: Inquiry,
        now: datetime
    ) -> Tuple[Order, bool]:
        """sent → accepted 并建单；返回 (订单, 本次是否完成状态变更)"""
        quotation_id = quotation.quotation_id
        inquiry_id = inquiry.inquiry_id
        try:
            updated = await guarded_update(
                db, Quotation, Quotation.quotation_id, quotation_id,
                (QuotationStatus.SENT,),
                {"status": QuotationStatus.ACCEPTED, "accepted_at": now}
            )
            if not updated:
                # 并发答复：以数据库中的最新状态为准
                await db.rollback()
                await db.refresh(quotation)
                await db.refresh(inquiry)
                _, order = await self._respond_not_sent(db, quotation, inquiry, QuotationDecision.ACCEPTED)
                return order, False

            order = await self.orders.create_from_accepted_quotation(db, quotation, inquiry)
            await db.execute(
                update(Inquiry)
                .where(Inquiry.inquiry_id == inquiry_id)
                .values(status=InquiryStatus.ACCEPTED)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except InvalidStateTransitionException:
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"接受报价单失败: {e}")
            raise

        await db.refresh(quotation)
        await db.refresh(inquiry)
        await db.refresh(order)
        return order, True

    async def _reject(
        self,
        db: AsyncSession,
        quotation: Quotation,
        inquiry: Inquiry,
        now: datetime,
        notes: Optional[str]
    ):
        quotation_id = quotation.quotation_id
        try:
            updated = await guarded_update(
                db, Quotation, Quotation.quotation_id, quotation_id,
                (QuotationStatus.SENT,),
                {"status": QuotationStatus.REJECTED, "rejected_at": now, "rejection_reason": notes}
            )
            if not updated:
                await db.rollback()
                await db.refresh(quotation)
                raise InvalidStateTransitionException(
                    "报价单", quotation.status, QuotationDecision.REJECTED, error_code="QUOTATION_NOT_SENT"
                )
            await db.execute(
                update(Inquiry)
                .where(Inquiry.inquiry_id == inquiry.inquiry_id)
                .values(status=InquiryStatus.REJECTED)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except InvalidStateTransitionException:
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"拒绝报价单失败: {e}")
            raise

        await db.refresh(quotation)
        await db.refresh(inquiry)

    async def mark_order_created(
        self,
        db: AsyncSession,
        quotation_id: UUID,
        commit: bool = True
    ) -> bool:
        """
        标记报价单已生成订单：accepted → order_created（幂等）

        返回本次是否发生了状态变更。commit=False 时由调用方提交。
        """
        updated = await guarded_update(
            db, Quotation, Quotation.quotation_id, quotation_id,
            (QuotationStatus.ACCEPTED,),
            {"status": QuotationStatus.ORDER_CREATED, "order_created_at": datetime.now()}
        )
        if updated:
            if commit:
                await db.commit()
            logger.info(f"报价单已标记为已生成订单: {quotation_id}")
            return True

        current = (await db.execute(
            select(Quotation.status).where(Quotation.quotation_id == quotation_id)
        )).scalar()
        if current is None:
            raise NotFoundException("报价单", quotation_id)
        if current == QuotationStatus.ORDER_CREATED:
            return False
        raise InvalidStateTransitionException("报价单", current, QuotationStatus.ORDER_CREATED)

    async def expire_overdue(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """把所有已过有效期的 sent 报价单标记为 expired，返回数量"""
        now = now or datetime.now()
        try:
            result = await db.execute(
                update(Quotation)
                .where(Quotation.status == QuotationStatus.SENT, Quotation.valid_until < now)
                .values(status=QuotationStatus.EXPIRED, expired_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"批量过期报价单失败: {e}")
            raise

        count = result.rowcount or 0
        if count:
            logger.info(f"已过期报价单: {count} 张")
        return count
