"""
订单与发货相关的Pydantic模式
"""
from typing import Optional, List, Dict
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.schemas.common import to_naive_local


# ===== 枚举值定义 =====
class OrderStatus:
    """订单状态"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PRODUCTION = "in_production"
    READY_FOR_DISPATCH = "ready_for_dispatch"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    ALL = (PENDING, CONFIRMED, IN_PRODUCTION, READY_FOR_DISPATCH, DISPATCHED, DELIVERED, CANCELLED)


# ===== 请求 Schema =====
class OrderStatusUpdateRequest(BaseModel):
    """后台更新订单状态请求（状态值由服务层校验）"""
    status: str = Field(..., description="目标状态")
    notes: Optional[str] = Field(None, description="备注")
    estimated_delivery: Optional[datetime] = Field(None, description="预计交期")
    manual_override: bool = Field(default=False, description="后台强制推进")

    @field_validator('estimated_delivery')
    @classmethod
    def normalize_delivery(cls, v):
        return to_naive_local(v)


class DispatchRequest(BaseModel):
    """发货请求"""
    courier: str = Field(..., min_length=1, description="承运商")
    tracking_number: str = Field(..., min_length=1, description="运单号")
    estimated_delivery: datetime = Field(..., description="预计送达")
    notes: Optional[str] = Field(None, description="发货备注")

    @field_validator('estimated_delivery')
    @classmethod
    def normalize_delivery(cls, v):
        return to_naive_local(v)


class DispatchUpdateRequest(BaseModel):
    """更新发货信息请求"""
    courier: Optional[str] = Field(None, min_length=1, description="承运商")
    tracking_number: Optional[str] = Field(None, min_length=1, description="运单号")
    estimated_delivery: Optional[datetime] = Field(None, description="预计送达")
    notes: Optional[str] = Field(None, description="发货备注")

    @field_validator('estimated_delivery')
    @classmethod
    def normalize_delivery(cls, v):
        return to_naive_local(v)


class DeliveredRequest(BaseModel):
    """签收请求"""
    actual_delivery: datetime = Field(..., description="实际送达时间")
    notes: Optional[str] = Field(None, description="备注")

    @field_validator('actual_delivery')
    @classmethod
    def normalize_delivery(cls, v):
        return to_naive_local(v)


# ===== 响应 Schema =====
class PaymentInfo(BaseModel):
    """付款子记录"""
    method: str
    status: str
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None
    gateway: Optional[str] = None


class ProductionInfo(BaseModel):
    """生产子记录"""
    start_date: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    actual_completion: Optional[datetime] = None


class DispatchInfo(BaseModel):
    """发货子记录"""
    courier: Optional[str] = None
    tracking_number: Optional[str] = None
    dispatched_at: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    notes: Optional[str] = None


class OrderResponse(BaseModel):
    """订单响应"""
    model_config = ConfigDict(from_attributes=True)

    order_id: UUID
    order_no: str
    quotation_id: UUID
    inquiry_id: UUID
    customer_id: UUID
    items: List[dict] = Field(default_factory=list)
    total_amount: Decimal
    currency: str
    status: str
    delivery_address: Dict[str, str] = Field(default_factory=dict)
    notes: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    payment: PaymentInfo
    production: ProductionInfo
    dispatch: DispatchInfo
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order) -> "OrderResponse":
        return cls(
            order_id=order.order_id,
            order_no=order.order_no,
            quotation_id=order.quotation_id,
            inquiry_id=order.inquiry_id,
            customer_id=order.customer_id,
            items=order.items or [],
            total_amount=order.total_amount,
            currency=order.currency,
            status=order.status,
            delivery_address=order.delivery_address or {},
            notes=order.notes,
            confirmed_at=order.confirmed_at,
            payment=PaymentInfo(
                method=order.payment_method,
                status=order.payment_status,
                transaction_id=order.payment_transaction_id,
                amount=order.payment_amount,
                paid_at=order.payment_paid_at,
                gateway=order.payment_gateway,
            ),
            production=ProductionInfo(
                start_date=order.production_start_date,
                estimated_completion=order.production_estimated_completion,
                actual_completion=order.production_actual_completion,
            ),
            dispatch=DispatchInfo(
                courier=order.dispatch_courier,
                tracking_number=order.dispatch_tracking_number,
                dispatched_at=order.dispatch_dispatched_at,
                estimated_delivery=order.dispatch_estimated_delivery,
                actual_delivery=order.dispatch_actual_delivery,
                notes=order.dispatch_notes,
            ),
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class PaginatedOrderListResponse(BaseModel):
    """分页订单列表响应"""
    total: int
    page: int
    page_size: int
    data: List[OrderResponse]


class TrackingResponse(BaseModel):
    """物流跟踪响应"""
    order_no: str
    status: str
    dispatch: DispatchInfo


class DispatchStatsResponse(BaseModel):
    """发货统计"""
    total_dispatched: int = 0
    total_delivered: int = 0
    total_in_transit: int = 0
    couriers: Dict[str, int] = Field(default_factory=dict)


class DashboardStatsResponse(BaseModel):
    """后台首页统计"""
    inquiries: int = Field(default=0, description="询价单总数")
    quotations: int = Field(default=0, description="报价单总数")
    active_orders: int = Field(default=0, description="履约中订单数")
    completed_orders: int = Field(default=0, description="已签收订单数")
