"""
API v1 路由汇总
"""
from fastapi import APIRouter

from app.api.v1.endpoints import dispatch, inquiries, notifications, orders, payments, quotations

api_router = APIRouter()

api_router.include_router(inquiries.router, prefix="/inquiries", tags=["询价单"])
api_router.include_router(quotations.router, prefix="/quotations", tags=["报价单"])
api_router.include_router(orders.router, prefix="/orders", tags=["订单"])
api_router.include_router(dispatch.router, prefix="/dispatch", tags=["发货"])
api_router.include_router(payments.router, prefix="/payments", tags=["付款"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["通知"])
