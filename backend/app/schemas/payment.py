"""
付款相关的Pydantic模式
"""
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from pydantic import BaseModel, Field


# ===== 枚举值定义 =====
class PaymentStatus:
    """付款状态"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod:
    """付款方式"""
    PENDING = "pending"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    RAZORPAY = "razorpay"

    ALL = (CREDIT_CARD, DEBIT_CARD, BANK_TRANSFER, PAYPAL, RAZORPAY)


# ===== 请求 Schema =====
class PaymentInitializeRequest(BaseModel):
    """发起付款请求"""
    order_id: UUID = Field(..., description="订单ID")
    payment_method: str = Field(..., description="付款方式")
    amount: Decimal = Field(..., gt=0, description="付款金额")


class PaymentConfirmRequest(BaseModel):
    """确认付款请求"""
    order_id: UUID = Field(..., description="订单ID")
    transaction_id: str = Field(..., min_length=1, description="交易流水号")
    amount: Decimal = Field(..., gt=0, description="付款金额")
    gateway: str = Field(default="manual", description="支付渠道")


class RefundRequest(BaseModel):
    """退款请求"""
    reason: str = Field(..., min_length=1, description="退款原因")
    amount: Optional[Decimal] = Field(None, gt=0, description="退款金额，默认全额")


# ===== 响应 Schema =====
class PaymentStatusResponse(BaseModel):
    """付款状态响应"""
    order_id: UUID
    status: str
    method: str
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    gateway: Optional[str] = None


class PaymentHistoryEntry(BaseModel):
    """付款历史条目"""
    action: str
    timestamp: Optional[datetime] = None
    status: str
    amount: Optional[Decimal] = None
    currency: str
    transaction_id: Optional[str] = None
    reason: Optional[str] = None


class PaymentHistoryResponse(BaseModel):
    """付款历史响应"""
    order_id: UUID
    history: List[PaymentHistoryEntry]


class PaymentMethodInfo(BaseModel):
    """可用付款方式"""
    id: str = Field(..., description="付款方式标识")
    name: str = Field(..., description="名称")
    description: str = Field(default="", description="说明")
    enabled: bool = Field(default=True, description="是否可用")
