"""
API 依赖项

身份认证由网关完成，网关转发 X-User-Id / X-User-Role 请求头。
"""
from typing import Optional
from uuid import UUID
from fastapi import Depends, Header, Request

from app.core.middleware import AuthenticationException, AccessDeniedException
from app.schemas.common import Actor, UserRole
from app.services.inquiry_service import InquiryService
from app.services.notification_service import Notifier, NotificationInbox
from app.services.order_service import OrderService
from app.services.payment_service import PaymentService
from app.services.quotation_service import QuotationService


async def get_current_actor(
    x_user_id: Optional[str] = Header(None, description="当前用户ID"),
    x_user_role: str = Header(UserRole.CUSTOMER, description="当前用户角色")
) -> Actor:
    """从请求头构造当前操作人"""
    if not x_user_id:
        raise AuthenticationException("缺少用户身份信息")
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise AuthenticationException("无效的用户ID")
    return Actor(user_id=user_id, role=x_user_role.strip().lower())


async def require_back_office(actor: Actor = Depends(get_current_actor)) -> Actor:
    """仅后台人员可访问"""
    if not actor.is_back_office:
        raise AccessDeniedException("需要后台权限")
    return actor


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_inquiry_service(notifier: Notifier = Depends(get_notifier)) -> InquiryService:
    return InquiryService(notifier)


def get_order_service(notifier: Notifier = Depends(get_notifier)) -> OrderService:
    return OrderService(notifier)


def get_quotation_service(orders: OrderService = Depends(get_order_service)) -> QuotationService:
    return QuotationService(orders.events.notifier, orders=orders)


def get_payment_service(quotations: QuotationService = Depends(get_quotation_service)) -> PaymentService:
    return PaymentService(quotations.events.notifier, orders=quotations.orders, quotations=quotations)


def get_notification_inbox() -> NotificationInbox:
    return NotificationInbox()
