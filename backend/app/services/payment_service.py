"""
付款对账服务

付款子记录平铺在订单表中（payment_*）。确认付款会把 pending 订单推进到 confirmed，
并把来源报价单标记为 order_created。
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update, or_, and_
from loguru import logger

from app.core.config import settings
from app.core.database import guarded_update
from app.core.middleware import (
    ValidationException, InvalidStateTransitionException, DuplicateResourceException,
    AmountMismatchException, AccessDeniedException, PaymentVerificationFailedException
)
from app.models.order import Order
from app.models.user import User
from app.schemas.common import Actor
from app.schemas.order import OrderStatus
from app.schemas.payment import (
    PaymentStatus, PaymentMethod, PaymentStatusResponse,
    PaymentHistoryEntry, PaymentHistoryResponse, PaymentMethodInfo
)
from app.services.notification_service import Notifier, WorkflowEvents
from app.services.order_service import OrderService
from app.services.quotation_service import QuotationService


# 尚未完成的付款状态，可以被确认
OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED)

# 付款方式展示信息
METHOD_DETAILS = {
    PaymentMethod.CREDIT_CARD: ("Credit Card", "Visa, MasterCard, American Express"),
    PaymentMethod.DEBIT_CARD: ("Debit Card", "Direct bank account debit"),
    PaymentMethod.BANK_TRANSFER: ("Bank Transfer", "Direct bank transfer"),
    PaymentMethod.PAYPAL: ("PayPal", "PayPal account payment"),
    PaymentMethod.RAZORPAY: ("Razorpay", "Indian payment gateway"),
}


@dataclass
class VerificationResult:
    """支付网关校验结果"""
    valid: bool
    gateway_payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    gateway: str = "razorpay"


class PaymentService:
    """付款对账服务"""

    def __init__(
        self,
        notifier: Notifier,
        orders: Optional[OrderService] = None,
        quotations: Optional[QuotationService] = None
    ):
        self.events = WorkflowEvents(notifier)
        self.orders = orders or OrderService(notifier)
        self.quotations = quotations or QuotationService(notifier, orders=self.orders)

    @staticmethod
    def ensure_access(order: Order, actor: Actor):
        if not actor.is_back_office and order.customer_id != actor.user_id:
            raise AccessDeniedException("无权操作该订单的付款")

    @staticmethod
    def check_amount(expected: Decimal, actual) -> None:
        """付款金额必须与订单金额一致（允许误差 PAYMENT_AMOUNT_TOLERANCE）"""
        tolerance = Decimal(str(settings.PAYMENT_AMOUNT_TOLERANCE))
        if abs(Decimal(str(actual)) - Decimal(str(expected))) > tolerance:
            raise AmountMismatchException(expected, actual)

    @staticmethod
    def list_methods() -> List[PaymentMethodInfo]:
        """可选付款方式，顺序与 PaymentMethod.ALL 一致"""
        return [
            PaymentMethodInfo(id=method, name=METHOD_DETAILS[method][0], description=METHOD_DETAILS[method][1])
            for method in PaymentMethod.ALL
        ]

    async def initialize(
        self,
        db: AsyncSession,
        order_id: UUID,
        method: str,
        amount: Decimal
    ) -> Order:
        """发起付款：记录付款方式与金额，付款状态置为 processing"""
        if method not in PaymentMethod.ALL:
            raise ValidationException(
                f"不支持的付款方式: {method}",
                details={"allowed": list(PaymentMethod.ALL)}
            )

        order = await self.orders.get_order(db, order_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidStateTransitionException("订单", order.status, "initialize_payment")
        self.check_amount(order.total_amount, amount)

        updated = await guarded_update(
            db, Order, Order.order_id, order_id, (OrderStatus.PENDING,),
            {
                "payment_method": method,
                "payment_status": PaymentStatus.PROCESSING,
                "payment_amount": amount,
            }
        )
        if not updated:
            await db.rollback()
            await db.refresh(order)
            raise InvalidStateTransitionException("订单", order.status, "initialize_payment")
        await db.commit()
        await db.refresh(order)

        logger.info(f"付款已发起: {order.order_no} | {method} | {amount}")
        return order

    async def confirm(
        self,
        db: AsyncSession,
        order_id: UUID,
        transaction_id: str,
        amount,
        gateway: str = "manual"
    ) -> Order:
        """
        确认付款（幂等）

        同一交易号重复确认不做任何修改；已用其他交易号完成付款时抛出 DuplicateResourceException。
        只有 pending 订单会被推进到 confirmed，已经更靠后的订单保持不变。
        """
        order = await self.orders.get_order(db, order_id)

        if order.payment_status == PaymentStatus.COMPLETED:
            if order.payment_transaction_id == transaction_id:
                logger.info(f"重复确认付款，忽略: {order.order_no} | {transaction_id}")
                return order
            if order.payment_transaction_id:
                raise DuplicateResourceException(
                    f"订单 {order.order_no} 已由其他交易完成付款",
                    existing_id=order.order_id,
                    details={"transaction_id": order.payment_transaction_id}
                )
        if order.payment_status == PaymentStatus.REFUNDED:
            raise InvalidStateTransitionException("付款", order.payment_status, PaymentStatus.COMPLETED)
        if order.status == OrderStatus.CANCELLED:
            raise InvalidStateTransitionException("订单", order.status, "confirm_payment")
        self.check_amount(order.total_amount, amount)

        now = datetime.now()
        values = {
            "payment_status": PaymentStatus.COMPLETED,
            "payment_transaction_id": transaction_id,
            "payment_amount": amount,
            "payment_paid_at": now,
            "payment_gateway": gateway,
        }
        if order.payment_method == PaymentMethod.PENDING:
            values["payment_method"] = gateway if gateway in PaymentMethod.ALL else PaymentMethod.BANK_TRANSFER

        try:
            result = await db.execute(
                update(Order)
                .where(
                    Order.order_id == order_id,
                    or_(
                        Order.payment_status.in_(OPEN_PAYMENT_STATUSES),
                        and_(
                            Order.payment_status == PaymentStatus.COMPLETED,
                            Order.payment_transaction_id.is_(None)
                        )
                    )
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # 并发确认：以最新记录为准
                await db.rollback()
                await db.refresh(order)
                if order.payment_transaction_id == transaction_id:
                    return order
                if order.payment_status == PaymentStatus.COMPLETED:
                    raise DuplicateResourceException(
                        f"订单 {order.order_no} 已由其他交易完成付款",
                        existing_id=order.order_id,
                        details={"transaction_id": order.payment_transaction_id}
                    )
                raise InvalidStateTransitionException("付款", order.payment_status, PaymentStatus.COMPLETED)

            await guarded_update(
                db, Order, Order.order_id, order_id, (OrderStatus.PENDING,),
                {"status": OrderStatus.CONFIRMED, "confirmed_at": now}
            )
            try:
                await self.quotations.mark_order_created(db, order.quotation_id, commit=False)
            except InvalidStateTransitionException as e:
                logger.warning(f"付款已确认，但报价单状态异常: {order.order_no} | {e.message}")

            await db.commit()
            await db.refresh(order)
        except (InvalidStateTransitionException, DuplicateResourceException):
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"确认付款失败: {e}")
            raise

        logger.info(f"付款已确认: {order.order_no} | {transaction_id} | {amount} | 订单状态: {order.status}")
        customer = await db.get(User, order.customer_id)
        await self.events.order_confirmed(db, order, customer, amount, transaction_id)
        return order

    async def fail(self, db: AsyncSession, order_id: UUID, reason: Optional[str] = None) -> Order:
        """付款失败：订单保持 pending，客户可重新付款"""
        order = await self.orders.get_order(db, order_id)
        if order.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise InvalidStateTransitionException("付款", order.payment_status, PaymentStatus.FAILED)

        result = await db.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.payment_status.in_(OPEN_PAYMENT_STATUSES))
            .values(payment_status=PaymentStatus.FAILED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            await db.refresh(order)
            raise InvalidStateTransitionException("付款", order.payment_status, PaymentStatus.FAILED)
        await db.commit()
        await db.refresh(order)

        logger.warning(f"付款失败: {order.order_no} | {reason or '-'}")
        return order

    async def refund(
        self,
        db: AsyncSession,
        order_id: UUID,
        reason: str,
        amount: Optional[Decimal] = None
    ) -> Order:
        """退款：默认全额退回已付金额"""
        order = await self.orders.get_order(db, order_id)
        if order.payment_status != PaymentStatus.COMPLETED:
            raise InvalidStateTransitionException("付款", order.payment_status, PaymentStatus.REFUNDED)

        paid = order.payment_amount if order.payment_amount is not None else order.total_amount
        refund_amount = amount if amount is not None else paid
        if Decimal(str(refund_amount)) > Decimal(str(paid)):
            raise ValidationException(
                "退款金额不能超过已付金额",
                details={"paid": str(paid), "refund": str(refund_amount)}
            )

        result = await db.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.payment_status == PaymentStatus.COMPLETED)
            .values(
                payment_status=PaymentStatus.REFUNDED,
                refund_amount=refund_amount,
                refund_reason=reason,
                refunded_at=datetime.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            await db.refresh(order)
            raise InvalidStateTransitionException("付款", order.payment_status, PaymentStatus.REFUNDED)
        await db.commit()
        await db.refresh(order)

        logger.info(f"已退款: {order.order_no} | {refund_amount} | {reason}")
        return order

    async def verify_gateway_payment(
        self,
        db: AsyncSession,
        order_id: UUID,
        verifier: Any,
        payload: Dict[str, Any]
    ) -> Order:
        """
        通过外部网关校验付款

        verifier 需提供 async verify(payload) -> VerificationResult。
        校验超时、出错或结果无效都视为校验失败，不修改任何状态。
        """
        order = await self.orders.get_order(db, order_id)
        try:
            result = await asyncio.wait_for(
                verifier.verify(payload),
                timeout=settings.PAYMENT_VERIFY_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning(f"支付校验超时: {order.order_no}")
            raise PaymentVerificationFailedException("支付校验超时", details={"order_id": str(order_id)})
        except Exception as e:
            logger.error(f"支付校验出错: {order.order_no} | {e}")
            raise PaymentVerificationFailedException(f"支付校验出错: {e}", details={"order_id": str(order_id)})

        if not result.valid or not result.gateway_payment_id:
            logger.warning(f"支付校验未通过: {order.order_no}")
            raise PaymentVerificationFailedException(details={"order_id": str(order_id)})

        amount = result.amount if result.amount is not None else order.total_amount
        return await self.confirm(db, order_id, result.gateway_payment_id, amount, result.gateway)

    async def get_payment_status(self, db: AsyncSession, order_id: UUID) -> PaymentStatusResponse:
        order = await self.orders.get_order(db, order_id)
        return PaymentStatusResponse(
            order_id=order.order_id,
            status=order.payment_status,
            method=order.payment_method,
            amount=order.payment_amount,
            transaction_id=order.payment_transaction_id,
            paid_at=order.payment_paid_at,
            gateway=order.payment_gateway,
        )

    async def get_payment_history(self, db: AsyncSession, order_id: UUID) -> PaymentHistoryResponse:
        """付款历史：发起、完成、退款"""
        order = await self.orders.get_order(db, order_id)
        history = [
            PaymentHistoryEntry(
                action="initiated",
                timestamp=order.created_at,
                status=PaymentStatus.PENDING,
                amount=order.total_amount,
                currency=order.currency,
            )
        ]
        if order.payment_paid_at:
            history.append(PaymentHistoryEntry(
                action="completed",
                timestamp=order.payment_paid_at,
                status=PaymentStatus.COMPLETED,
                amount=order.payment_amount,
                currency=order.currency,
                transaction_id=order.payment_transaction_id,
            ))
        if order.payment_status == PaymentStatus.REFUNDED:
            history.append(PaymentHistoryEntry(
                action="refunded",
                timestamp=order.refunded_at,
                status=PaymentStatus.REFUNDED,
                amount=order.refund_amount,
                currency=order.currency,
                reason=order.refund_reason,
            ))
        return PaymentHistoryResponse(order_id=order.order_id, history=history)
