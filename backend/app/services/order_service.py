"""
订单管理服务

订单在报价单被接受时创建（每个报价单最多一个订单），
之后由付款确认和后台操作推进：
pending → confirmed → in_production → ready_for_dispatch → dispatched → delivered
pending | confirmed | in_production → cancelled
"""
from typing import List, Optional, Dict, Any
from datetime import datetime
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update, desc
from sqlalchemy.exc import IntegrityError
from loguru import logger

from app.core.database import guarded_update
from app.core.middleware import (
    NotFoundException, ValidationException,
    InvalidStateTransitionException, InvalidStatusException
)
from app.models.inquiry import Inquiry
from app.models.order import Order
from app.models.quotation import Quotation, QuotationItem
from app.models.user import User
from app.schemas.inquiry import InquiryStatus
from app.schemas.order import (
    OrderStatus, OrderResponse, PaginatedOrderListResponse,
    DispatchRequest, DispatchUpdateRequest, DispatchInfo,
    TrackingResponse, DispatchStatsResponse, DashboardStatsResponse
)
from app.schemas.payment import PaymentStatus, PaymentMethod
from app.services.notification_service import Notifier, WorkflowEvents
from app.services.numbering import NumberGenerator
from app.services.status_rules import can_transition_order, build_status_update


ADDRESS_FIELDS = ("street", "city", "state", "country", "zip_code")

# 订单状态 → 询价单状态
INQUIRY_MIRROR = {
    OrderStatus.IN_PRODUCTION: InquiryStatus.IN_PRODUCTION,
    OrderStatus.DELIVERED: InquiryStatus.COMPLETED,
}

SHIPPED_STATUSES = (OrderStatus.DISPATCHED, OrderStatus.DELIVERED)
ACTIVE_STATUSES = (
    OrderStatus.CONFIRMED, OrderStatus.IN_PRODUCTION,
    OrderStatus.READY_FOR_DISPATCH, OrderStatus.DISPATCHED
)


def snapshot_address(address: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """收货地址快照，缺失字段一律为空字符串"""
    address = address or {}
    return {field: str(address.get(field) or "") for field in ADDRESS_FIELDS}


class OrderService:
    """订单管理服务"""

    def __init__(self, notifier: Notifier, numbers: Optional[NumberGenerator] = None):
        self.events = WorkflowEvents(notifier)
        self.numbers = numbers or NumberGenerator()

    # ==================== 查询 ====================

    async def get_order(self, db: AsyncSession, order_id: UUID) -> Order:
        """获取订单，不存在时抛出 NotFoundException"""
        order = await db.get(Order, order_id)
        if not order:
            raise NotFoundException("订单", order_id)
        return order

    async def get_order_for_quotation(self, db: AsyncSession, quotation_id: UUID) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.quotation_id == quotation_id))
        return result.scalars().first()

    async def list_orders(
        self,
        db: AsyncSession,
        status: Optional[str] = None,
        customer_id: Optional[UUID] = None,
        page: int = 1,
        page_size: int = 20
    ) -> PaginatedOrderListResponse:
        """分页查询订单"""
        query = select(Order)
        if status:
            query = query.where(Order.status == status)
        if customer_id:
            query = query.where(Order.customer_id == customer_id)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await db.execute(count_query)).scalar() or 0

        query = query.order_by(desc(Order.created_at))
        query = query.offset((page - 1) * page_size).limit(page_size)
        result = await db.execute(query)

        return PaginatedOrderListResponse(
            total=total,
            page=page,
            page_size=page_size,
            data=[OrderResponse.from_order(o) for o in result.scalars().all()]
        )

    async def list_ready_for_dispatch(self, db: AsyncSession) -> List[Order]:
        """待发货订单"""
        result = await db.execute(
            select(Order)
            .where(Order.status == OrderStatus.READY_FOR_DISPATCH)
            .order_by(Order.updated_at)
        )
        return list(result.scalars().all())

    # ==================== 创建 ====================

    async def create_from_accepted_quotation(
        self,
        db: AsyncSession,
        quotation: Quotation,
        inquiry: Optional[Inquiry] = None
    ) -> Order:
        """
        根据已接受的报价单创建订单（幂等）

        已存在订单时直接返回；明细、金额、地址均为快照，之后与报价单无关。
        只 flush 不提交，由调用方提交。并发插入触发唯一约束时回滚当前事务，
        返回先提交的那个订单。
        """
        quotation_id = quotation.quotation_id
        existing = await self.get_order_for_quotation(db, quotation_id)
        if existing:
            logger.info(f"报价单 {quotation.quotation_no} 已有订单 {existing.order_no}，直接返回")
            return existing

        if inquiry is None:
            inquiry = await db.get(Inquiry, quotation.inquiry_id)
            if not inquiry:
                raise NotFoundException("询价单", quotation.inquiry_id)

        items_result = await db.execute(
            select(QuotationItem)
            .where(QuotationItem.quotation_id == quotation_id)
            .order_by(QuotationItem.sort_order)
        )
        items = [
            {
                "part_ref": item.part_ref or "",
                "material": item.material,
                "thickness": item.thickness,
                "grade": item.grade or "",
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "total_price": str(item.total_price),
                "remarks": item.remarks or "",
            }
            for item in items_result.scalars().all()
        ]

        order = Order(
            order_no=await self.numbers.order_no(db),
            quotation_id=quotation_id,
            inquiry_id=inquiry.inquiry_id,
            customer_id=inquiry.customer_id,
            items=items,
            total_amount=quotation.total_amount,
            currency=quotation.currency,
            status=OrderStatus.PENDING,
            delivery_address=snapshot_address(inquiry.delivery_address),
            payment_method=PaymentMethod.PENDING,
            payment_status=PaymentStatus.PENDING,
        )
        db.add(order)
        try:
            await db.flush()
        except IntegrityError as e:
            await db.rollback()
            # 回滚会使会话内对象全部过期，调用方之后还要读取报价单与询价单
            await db.refresh(quotation)
            await db.refresh(inquiry)
            existing = await self.get_order_for_quotation(db, quotation_id)
            if existing:
                logger.warning(f"并发创建订单冲突，返回已存在订单: {existing.order_no}")
                return existing
            logger.error(f"创建订单失败: {e}")
            raise

        logger.info(f"订单已创建: {order.order_no} | 报价单: {quotation.quotation_no} | 金额: {order.total_amount}")
        return order

    # ==================== 状态流转 ====================

    async def update_status(
        self,
        db: AsyncSession,
        order_id: UUID,
        new_status: str,
        notes: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
        manual_override: bool = False
    ) -> Order:
        """
        后台更新订单状态

        付款、生产、发货字段按 status_rules.build_status_update 同步更新。
        不带 manual_override 时只能推进到下一状态。
        """
        if new_status not in OrderStatus.ALL:
            raise InvalidStatusException(new_status, OrderStatus.ALL)

        order = await self.get_order(db, order_id)
        current = order.status
        if not can_transition_order(current, new_status, manual_override):
            raise InvalidStateTransitionException("订单", current, new_status)

        values = build_status_update(order, new_status, datetime.now(), estimated_delivery)
        if notes:
            values["notes"] = notes

        await self._apply_transition(db, order, (current,), new_status, values)

        if manual_override:
            logger.warning(f"订单状态被后台强制推进: {order.order_no} | {current} → {new_status}")
        else:
            logger.info(f"订单状态已更新: {order.order_no} | {current} → {new_status}")

        if new_status != current:
            await self._notify_transition(db, order, new_status)
        return order

    async def dispatch(self, db: AsyncSession, order_id: UUID, data: DispatchRequest) -> Order:
        """发货：ready_for_dispatch → dispatched"""
        order = await self.get_order(db, order_id)
        if order.status != OrderStatus.READY_FOR_DISPATCH:
            raise InvalidStateTransitionException("订单", order.status, OrderStatus.DISPATCHED)

        values = build_status_update(order, OrderStatus.DISPATCHED, datetime.now())
        values.update(
            dispatch_courier=data.courier,
            dispatch_tracking_number=data.tracking_number,
            dispatch_estimated_delivery=data.estimated_delivery,
            dispatch_notes=data.notes,
        )
        await self._apply_transition(
            db, order, (OrderStatus.READY_FOR_DISPATCH,), OrderStatus.DISPATCHED, values
        )

        logger.info(f"订单已发货: {order.order_no} | {data.courier} {data.tracking_number}")
        await self.events.order_dispatched(db, order, await db.get(User, order.customer_id))
        return order

    async def mark_delivered(
        self,
        db: AsyncSession,
        order_id: UUID,
        actual_delivery: datetime,
        notes: Optional[str] = None
    ) -> Order:
        """签收：dispatched → delivered"""
        order = await self.get_order(db, order_id)
        if order.status != OrderStatus.DISPATCHED:
            raise InvalidStateTransitionException("订单", order.status, OrderStatus.DELIVERED)

        values = build_status_update(order, OrderStatus.DELIVERED, datetime.now())
        values["dispatch_actual_delivery"] = actual_delivery
        if notes:
            values["dispatch_notes"] = notes
        await self._apply_transition(db, order, (OrderStatus.DISPATCHED,), OrderStatus.DELIVERED, values)

        logger.info(f"订单已签收: {order.order_no}")
        await self.events.order_delivered(db, order, await db.get(User, order.customer_id))
        return order

    async def update_dispatch_details(
        self,
        db: AsyncSession,
        order_id: UUID,
        data: DispatchUpdateRequest
    ) -> Order:
        """修改发货信息（仅已发货/已签收订单）"""
        order = await self.get_order(db, order_id)

        field_map = {
            "courier": "dispatch_courier",
            "tracking_number": "dispatch_tracking_number",
            "estimated_delivery": "dispatch_estimated_delivery",
            "notes": "dispatch_notes",
        }
        values = {
            field_map[key]: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if key in field_map
        }
        if not values:
            raise ValidationException("没有需要更新的发货信息")

        try:
            updated = await guarded_update(db, Order, Order.order_id, order_id, SHIPPED_STATUSES, values)
            if not updated:
                await db.rollback()
                await db.refresh(order)
                raise InvalidStateTransitionException("订单", order.status, "update_dispatch")
            await db.commit()
            await db.refresh(order)
        except InvalidStateTransitionException:
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"更新发货信息失败: {e}")
            raise

        logger.info(f"发货信息已更新: {order.order_no} | {list(values.keys())}")
        return order

    async def get_tracking(self, db: AsyncSession, order_id: UUID) -> TrackingResponse:
        """物流跟踪信息"""
        order = await self.get_order(db, order_id)
        if order.status not in SHIPPED_STATUSES:
            raise InvalidStateTransitionException("订单", order.status, "tracking")
        return TrackingResponse(
            order_no=order.order_no,
            status=order.status,
            dispatch=OrderResponse.from_order(order).dispatch,
        )

    async def dispatch_stats(self, db: AsyncSession) -> DispatchStatsResponse:
        """发货统计"""
        status_rows = (await db.execute(
            select(Order.status, func.count())
            .where(Order.status.in_(SHIPPED_STATUSES))
            .group_by(Order.status)
        )).all()
        counts = {status: count for status, count in status_rows}

        courier_rows = (await db.execute(
            select(Order.dispatch_courier, func.count())
            .where(Order.status.in_(SHIPPED_STATUSES), Order.dispatch_courier.is_not(None))
            .group_by(Order.dispatch_courier)
        )).all()

        in_transit = counts.get(OrderStatus.DISPATCHED, 0)
        delivered = counts.get(OrderStatus.DELIVERED, 0)
        return DispatchStatsResponse(
            total_dispatched=in_transit + delivered,
            total_delivered=delivered,
            total_in_transit=in_transit,
            couriers={courier: count for courier, count in courier_rows},
        )

    async def dashboard_stats(self, db: AsyncSession) -> DashboardStatsResponse:
        """后台首页统计：询价单、报价单总数与订单履约情况"""
        inquiries = (await db.execute(select(func.count()).select_from(Inquiry))).scalar() or 0
        quotations = (await db.execute(select(func.count()).select_from(Quotation))).scalar() or 0
        active = (await db.execute(
            select(func.count()).select_from(Order).where(Order.status.in_(ACTIVE_STATUSES))
        )).scalar() or 0
        completed = (await db.execute(
            select(func.count()).select_from(Order).where(Order.status == OrderStatus.DELIVERED)
        )).scalar() or 0
        return DashboardStatsResponse(
            inquiries=inquiries,
            quotations=quotations,
            active_orders=active,
            completed_orders=completed,
        )

    # ==================== 内部方法 ====================

    async def _apply_transition(
        self,
        db: AsyncSession,
        order: Order,
        expected: tuple,
        new_status: str,
        values: Dict[str, Any]
    ):
        """条件更新订单并同步询价单状态，提交后刷新 order"""
        try:
            updated = await guarded_update(db, Order, Order.order_id, order.order_id, expected, values)
            if not updated:
                await db.rollback()
                await db.refresh(order)
                raise InvalidStateTransitionException("订单", order.status, new_status)

            mirrored = INQUIRY_MIRROR.get(new_status)
            if mirrored:
                await db.execute(
                    update(Inquiry)
                    .where(Inquiry.inquiry_id == order.inquiry_id)
                    .values(status=mirrored)
                    .execution_options(synchronize_session=False)
                )

            await db.commit()
            await db.refresh(order)
        except InvalidStateTransitionException:
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"更新订单状态失败: {e}")
            raise

    async def _notify_transition(self, db: AsyncSession, order: Order, new_status: str):
        if new_status == OrderStatus.DISPATCHED:
            await self.events.order_dispatched(db, order, await db.get(User, order.customer_id))
        elif new_status == OrderStatus.DELIVERED:
            await self.events.order_delivered(db, order, await db.get(User, order.customer_id))
