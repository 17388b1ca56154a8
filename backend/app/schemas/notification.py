"""
通知相关的Pydantic模式
"""
from typing import Optional, List
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class NotificationChannel:
    """通知渠道"""
    EMAIL = "email"
    SMS = "sms"
    WEBSOCKET = "websocket"


class NotificationTemplate:
    """通知模板"""
    INQUIRY_RECEIVED = "inquiry-received"
    QUOTATION_READY = "quotation-ready"
    QUOTATION_DECISION = "quotation-decision"
    ORDER_CONFIRMED = "order-confirmed"
    PAYMENT_RECEIVED = "payment-received"
    ORDER_DISPATCHED = "order-dispatched"
    ORDER_DELIVERED = "order-delivered"


class NotificationResponse(BaseModel):
    """站内通知响应"""
    model_config = ConfigDict(from_attributes=True)

    notification_id: UUID
    title: str
    message: str
    type: str
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[UUID] = None
    meta: Optional[dict] = None
    is_read: bool
    created_at: datetime


class NotificationListResponse(BaseModel):
    """站内通知列表"""
    total: int
    data: List[NotificationResponse]
