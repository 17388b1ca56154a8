"""
通知服务

- Notifier：按渠道（邮件/短信/WebSocket）发送模板消息，失败只记录日志
- WorkflowEvents：把订单流转事件转换为渠道消息和站内通知记录

所有通知都在状态变更提交之后发送，任何失败都不会回滚状态变更。
"""
import asyncio
import smtplib
from collections import defaultdict
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

import httpx
from fastapi import WebSocket
from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from app.core.config import Settings, get_settings
from app.core.middleware import NotFoundException
from app.models.notification import Notification
from app.models.user import User
from app.schemas.notification import (
    NotificationChannel, NotificationTemplate, NotificationResponse, NotificationListResponse
)


@dataclass
class Recipient:
    """通知接收人"""
    user_id: Optional[UUID] = None
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Recipient":
        return cls(
            user_id=user.user_id,
            name=user.full_name or user.email,
            email=user.email,
            phone=user.phone_number,
        )


# 模板：(标题, 正文)
TEMPLATES: Dict[str, Tuple[str, str]] = {
    NotificationTemplate.INQUIRY_RECEIVED: (
        "New Inquiry Received",
        "Inquiry {inquiry_no} received from {customer_name}. "
        "{parts_count} parts, {files_count} files. Please review.",
    ),
    NotificationTemplate.QUOTATION_READY: (
        "Quotation {quotation_no} is ready",
        "Dear {customer_name}, your quotation {quotation_no} for inquiry {inquiry_no} "
        "has been prepared. Total amount: {currency} {total_amount}. "
        "Valid until {valid_until}. Please log in to review and respond.",
    ),
    NotificationTemplate.QUOTATION_DECISION: (
        "Quotation {quotation_no} {decision}",
        "Customer {customer_name} has {decision} quotation {quotation_no} "
        "(inquiry {inquiry_no}). {reason}",
    ),
    NotificationTemplate.ORDER_CONFIRMED: (
        "Order Confirmed - {order_no}",
        "Dear {customer_name}, your order {order_no} has been confirmed. "
        "Total amount: {currency} {total_amount}. We will keep you updated on the progress.",
    ),
    NotificationTemplate.PAYMENT_RECEIVED: (
        "Payment Received - Order {order_no}",
        "Payment of {currency} {amount} received for order {order_no}. "
        "Customer: {customer_name}. Transaction ID: {transaction_id}",
    ),
    NotificationTemplate.ORDER_DISPATCHED: (
        "Order Dispatched - {order_no}",
        "Your order {order_no} has been dispatched. Tracking Number: {tracking_number}, "
        "Courier: {courier}. Estimated delivery: {estimated_delivery}.",
    ),
    NotificationTemplate.ORDER_DELIVERED: (
        "Order Delivered - {order_no}",
        "Your order {order_no} was delivered on {actual_delivery}. Thank you for choosing Komacut!",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render_template(template: str, payload: Dict[str, Any]) -> Tuple[str, str]:
    """渲染模板，缺失字段原样保留"""
    if template not in TEMPLATES:
        raise KeyError(f"未知的通知模板: {template}")
    subject, body = TEMPLATES[template]
    values = _SafeDict({k: "" if v is None else v for k, v in payload.items()})
    return subject.format_map(values), body.format_map(values)


# ==================== 渠道 ====================

class EmailChannel:
    """SMTP 邮件渠道"""

    name = NotificationChannel.EMAIL

    def __init__(self, settings: Settings):
        self.host = settings.SMTP_HOST
        self.port = settings.SMTP_PORT
        self.user = settings.SMTP_USER
        self.password = settings.SMTP_PASSWORD
        self.sender = settings.SMTP_FROM

    @property
    def configured(self) -> bool:
        return bool(self.host)

    async def send(self, recipient: Recipient, subject: str, body: str, payload: Dict[str, Any]) -> bool:
        if not self.configured:
            logger.info(f"邮件服务未配置，跳过发送: {recipient.email} | {subject}")
            return False
        if not recipient.email:
            logger.info(f"接收人无邮箱，跳过邮件: {recipient.user_id}")
            return False

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient.email
        message["Subject"] = subject
        message.set_content(body)

        await asyncio.to_thread(self._send_sync, message)
        logger.info(f"邮件发送成功: {recipient.email} | {subject}")
        return True

    def _send_sync(self, message: EmailMessage):
        with smtplib.SMTP(self.host, self.port) as smtp:
            smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password or "")
            smtp.send_message(message)


class SmsChannel:
    """Twilio 短信渠道"""

    name = NotificationChannel.SMS

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.account_sid = settings.TWILIO_ACCOUNT_SID
        self.auth_token = settings.TWILIO_AUTH_TOKEN
        self.from_number = settings.TWILIO_FROM_NUMBER
        self.api_base = settings.TWILIO_API_BASE
        self.timeout = settings.NOTIFY_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(
            self.account_sid and self.auth_token and self.from_number
            and self.account_sid.startswith("AC")
        )

    async def send(self, recipient: Recipient, subject: str, body: str, payload: Dict[str, Any]) -> bool:
        if not self.configured:
            logger.info(f"短信服务未配置，跳过发送: {recipient.phone} | {subject}")
            return False
        if not recipient.phone:
            logger.info(f"接收人无手机号，跳过短信: {recipient.user_id}")
            return False

        to_number = recipient.phone if recipient.phone.startswith("+") else f"+{recipient.phone}"
        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                url,
                data={"To": to_number, "From": self.from_number, "Body": body},
                auth=(self.account_sid, self.auth_token),
            )
            response.raise_for_status()
            sid = response.json().get("sid")

        logger.info(f"短信发送成功: {to_number} | SID: {sid}")
        return True


class WebSocketChannel:
    """进程内 WebSocket 推送，按用户ID登记连接"""

    name = NotificationChannel.WEBSOCKET

    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def connect(self, user_id: str, websocket: WebSocket):
        await websocket.accept()
        self._connections[str(user_id)].add(websocket)
        logger.info(f"WebSocket 已连接: {user_id}")

    def disconnect(self, user_id: str, websocket: WebSocket):
        connections = self._connections.get(str(user_id))
        if connections:
            connections.discard(websocket)
            if not connections:
                self._connections.pop(str(user_id), None)
        logger.info(f"WebSocket 已断开: {user_id}")

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(str(user_id), ()))

    async def send(self, recipient: Recipient, subject: str, body: str, payload: Dict[str, Any]) -> bool:
        connections = list(self._connections.get(str(recipient.user_id), ()))
        if not connections:
            return False

        message = {"title": subject, "message": body, "payload": payload}
        for websocket in connections:
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"WebSocket 推送失败，移除连接: {recipient.user_id} | {e}")
                self.disconnect(str(recipient.user_id), websocket)
        return True


# ==================== Notifier ====================

class Notifier:
    """
    通知发送入口

    notify 永远不抛出异常：渠道未配置、发送失败、超时都只记录日志。
    """

    def __init__(self, channels: Iterable[Any], timeout: float = 10.0):
        self._channels = {channel.name: channel for channel in channels}
        self.timeout = timeout

    def channel(self, name: str):
        return self._channels.get(name)

    async def notify(
        self,
        channel: str,
        template: str,
        recipient: Recipient,
        payload: Dict[str, Any]
    ) -> bool:
        try:
            backend = self._channels.get(channel)
            if backend is None:
                logger.warning(f"未注册的通知渠道: {channel}")
                return False
            subject, body = render_template(template, payload)
            return await asyncio.wait_for(
                backend.send(recipient, subject, body, payload),
                timeout=self.timeout
            )
        except Exception as e:
            logger.error(f"通知发送失败 | {channel}/{template} -> {recipient.user_id}: {type(e).__name__}: {e}")
            return False


def build_notifier(settings: Settings = None) -> Notifier:
    """按配置构建 Notifier（应用启动时调用一次）"""
    settings = settings or get_settings()
    return Notifier(
        channels=[EmailChannel(settings), SmsChannel(settings), WebSocketChannel()],
        timeout=settings.NOTIFY_TIMEOUT_SECONDS,
    )


# ==================== 流转事件 ====================

class WorkflowEvents:
    """
    订单流转事件编排

    每个方法都必须在对应的状态变更提交之后调用；内部吞掉所有异常。
    """

    def __init__(self, notifier: Notifier, settings: Settings = None):
        self.notifier = notifier
        self.settings = settings or get_settings()

    # ---------- 事件 ----------

    async def inquiry_received(self, db: AsyncSession, inquiry, customer: Optional[User]):
        payload = {
            "inquiry_no": inquiry.inquiry_no,
            "customer_name": customer.full_name if customer else "Unknown",
            "customer_email": customer.email if customer else None,
            "parts_count": len(inquiry.parts or []),
            "files_count": len(inquiry.files or []),
        }
        back_office = await self._back_office_users(db)
        await self._broadcast(
            back_office, NotificationTemplate.INQUIRY_RECEIVED, payload,
            channels=(NotificationChannel.EMAIL, NotificationChannel.WEBSOCKET)
        )
        await self._record(
            db, [u.user_id for u in back_office], NotificationTemplate.INQUIRY_RECEIVED, payload,
            type_="info", entity_type="inquiry", entity_id=inquiry.inquiry_id
        )

    async def quotation_sent(self, db: AsyncSession, quotation, inquiry, customer: Optional[User]):
        payload = {
            "quotation_no": quotation.quotation_no,
            "inquiry_no": inquiry.inquiry_no,
            "customer_name": customer.full_name if customer else "Customer",
            "total_amount": str(quotation.total_amount),
            "currency": quotation.currency,
            "valid_until": quotation.valid_until.strftime("%Y-%m-%d") if quotation.valid_until else "",
        }
        if customer:
            await self._broadcast(
                [customer], NotificationTemplate.QUOTATION_READY, payload,
                channels=(NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.WEBSOCKET)
            )
            await self._record(
                db, [customer.user_id], NotificationTemplate.QUOTATION_READY, payload,
                type_="info", entity_type="quotation", entity_id=quotation.quotation_id
            )
        # 后台审计记录
        back_office = await self._back_office_users(db)
        await self._record(
            db, [u.user_id for u in back_office], NotificationTemplate.QUOTATION_READY, payload,
            type_="info", entity_type="quotation", entity_id=quotation.quotation_id
        )

    async def quotation_decision(
        self,
        db: AsyncSession,
        quotation,
        inquiry,
        customer: Optional[User],
        decision: str,
        notes: Optional[str] = None
    ):
        payload = {
            "quotation_no": quotation.quotation_no,
            "inquiry_no": inquiry.inquiry_no,
            "customer_name": customer.full_name if customer else "Unknown",
            "decision": decision,
            "reason": f"Reason: {notes}" if notes else "",
            "total_amount": str(quotation.total_amount),
        }
        back_office = await self._back_office_users(db)
        await self._broadcast(
            back_office, NotificationTemplate.QUOTATION_DECISION, payload,
            channels=(NotificationChannel.EMAIL, NotificationChannel.WEBSOCKET)
        )
        await self._record(
            db, [u.user_id for u in back_office], NotificationTemplate.QUOTATION_DECISION, payload,
            type_="success" if decision == "accepted" else "warning",
            entity_type="quotation", entity_id=quotation.quotation_id
        )

    async def order_confirmed(
        self,
        db: AsyncSession,
        order,
        customer: Optional[User],
        amount,
        transaction_id: Optional[str]
    ):
        payload = {
            "order_no": order.order_no,
            "customer_name": customer.full_name if customer else "Unknown",
            "total_amount": str(order.total_amount),
            "amount": str(amount),
            "currency": order.currency,
            "transaction_id": transaction_id or "-",
            "payment_method": order.payment_method,
        }
        back_office = await self._back_office_users(db)
        await self._broadcast(
            back_office, NotificationTemplate.PAYMENT_RECEIVED, payload,
            channels=(NotificationChannel.EMAIL, NotificationChannel.WEBSOCKET)
        )
        await self._record(
            db, [u.user_id for u in back_office], NotificationTemplate.PAYMENT_RECEIVED, payload,
            type_="success", entity_type="order", entity_id=order.order_id
        )
        if customer:
            await self._broadcast(
                [customer], NotificationTemplate.ORDER_CONFIRMED, payload,
                channels=(NotificationChannel.EMAIL, NotificationChannel.WEBSOCKET)
            )
            await self._record(
                db, [customer.user_id], NotificationTemplate.ORDER_CONFIRMED, payload,
                type_="success", entity_type="order", entity_id=order.order_id
            )

    async def order_dispatched(self, db: AsyncSession, order, customer: Optional[User]):
        payload = {
            "order_no": order.order_no,
            "customer_name": customer.full_name if customer else "Customer",
            "tracking_number": order.dispatch_tracking_number,
            "courier": order.dispatch_courier,
            "estimated_delivery": (
                order.dispatch_estimated_delivery.strftime("%Y-%m-%d")
                if order.dispatch_estimated_delivery else "-"
            ),
        }
        if customer:
            await self._broadcast(
                [customer], NotificationTemplate.ORDER_DISPATCHED, payload,
                channels=(NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.WEBSOCKET)
            )
            await self._record(
                db, [customer.user_id], NotificationTemplate.ORDER_DISPATCHED, payload,
                type_="success", entity_type="order", entity_id=order.order_id
            )

    async def order_delivered(self, db: AsyncSession, order, customer: Optional[User]):
        payload = {
            "order_no": order.order_no,
            "customer_name": customer.full_name if customer else "Customer",
            "actual_delivery": (
                order.dispatch_actual_delivery.strftime("%Y-%m-%d")
                if order.dispatch_actual_delivery else "-"
            ),
        }
        if customer:
            await self._broadcast(
                [customer], NotificationTemplate.ORDER_DELIVERED, payload,
                channels=(NotificationChannel.EMAIL, NotificationChannel.WEBSOCKET)
            )
            await self._record(
                db, [customer.user_id], NotificationTemplate.ORDER_DELIVERED, payload,
                type_="success", entity_type="order", entity_id=order.order_id
            )

    # ---------- 内部 ----------

    async def _back_office_users(self, db: AsyncSession) -> List[User]:
        try:
            result = await db.execute(
                select(User).where(
                    User.role.in_(self.settings.BACK_OFFICE_ROLES),
                    User.is_active.is_(True)
                )
            )
            return list(result.scalars().all())
        except Exception as e:
            logger.error(f"查询后台用户失败: {e}")
            return []

    async def _broadcast(
        self,
        users: Iterable[User],
        template: str,
        payload: Dict[str, Any],
        channels: Tuple[str, ...]
    ):
        for user in users:
            try:
                recipient = Recipient.from_user(user)
            except Exception as e:
                logger.error(f"通知收件人解析失败 | {template}: {type(e).__name__}: {e}")
                continue
            for channel in channels:
                try:
                    await self.notifier.notify(channel, template, recipient, payload)
                except Exception as e:
                    logger.error(f"通知发送异常 | {channel}/{template} -> {recipient.user_id}: {e}")

    async def _record(
        self,
        db: AsyncSession,
        user_ids: List[UUID],
        template: str,
        payload: Dict[str, Any],
        type_: str,
        entity_type: str,
        entity_id: UUID
    ):
        """
        写入站内通知

        使用独立会话提交，失败时只丢弃通知本身，调用方会话中已加载的业务对象不受影响。
        """
        if not user_ids:
            return
        try:
            title, message = render_template(template, payload)
            meta = {k: v for k, v in payload.items() if isinstance(v, (str, int, float, bool))}
            async with AsyncSession(db.bind, expire_on_commit=False) as inbox_db:
                inbox_db.add_all([
                    Notification(
                        user_id=user_id,
                        title=title,
                        message=message,
                        type=type_,
                        related_entity_type=entity_type,
                        related_entity_id=entity_id,
                        meta=meta,
                    )
                    for user_id in user_ids
                ])
                await inbox_db.commit()
        except Exception as e:
            logger.error(f"写入站内通知失败 | {template}: {type(e).__name__}: {e}")


# ==================== 站内通知 ====================

class NotificationInbox:
    """站内通知查询与已读标记"""

    async def list_notifications(
        self,
        db: AsyncSession,
        user_id: UUID,
        unread_only: bool = False,
        limit: int = 50
    ) -> NotificationListResponse:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))

        count_query = select(func.count()).select_from(query.subquery())
        total = (await db.execute(count_query)).scalar() or 0

        result = await db.execute(query.order_by(desc(Notification.created_at)).limit(limit))
        return NotificationListResponse(
            total=total,
            data=[NotificationResponse.model_validate(n) for n in result.scalars().all()]
        )

    async def mark_read(self, db: AsyncSession, notification_id: UUID, user_id: UUID) -> Notification:
        notification = await db.get(Notification, notification_id)
        if not notification or notification.user_id != user_id:
            raise NotFoundException("通知", notification_id)
        if not notification.is_read:
            notification.is_read = True
            await db.commit()
            await db.refresh(notification)
        return notification
