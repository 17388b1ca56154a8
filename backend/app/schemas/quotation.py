"""
报价单相关的Pydantic模式
"""
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict

from app.schemas.common import decode_json_string, to_naive_local
from app.schemas.order import OrderResponse


# ===== 枚举值定义 =====
class QuotationStatus:
    """报价单状态"""
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    ORDER_CREATED = "order_created"


class QuotationDecision:
    """客户答复"""
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# ===== 请求 Schema =====
class LineItemInput(BaseModel):
    """报价明细输入（不在此处做业务校验，交由服务层统一判定）"""
    part_ref: str = Field(default="", description="零件编号")
    material: Optional[str] = Field(None, description="材料")
    thickness: Optional[str] = Field(None, description="厚度")
    grade: str = Field(default="", description="牌号")
    quantity: Optional[int] = Field(None, description="数量")
    unit_price: Optional[Decimal] = Field(None, description="单价")
    remarks: str = Field(default="", description="备注")

    @field_validator('thickness', 'material', mode='before')
    @classmethod
    def to_text(cls, v):
        if v is None:
            return None
        return str(v).strip()


class QuotationCreateRequest(BaseModel):
    """创建（或更新草稿）报价单请求"""
    inquiry_id: UUID = Field(..., description="询价单ID")
    parts: List[LineItemInput] = Field(default_factory=list, description="报价明细")
    total_amount: Optional[Decimal] = Field(None, ge=0, description="总金额（上传模式必填）")
    is_upload_quotation: bool = Field(default=False, description="是否为上传文件报价")
    currency: Optional[str] = Field(None, max_length=10, description="币种")
    terms: Optional[str] = Field(None, description="条款说明")
    notes: Optional[str] = Field(None, description="备注")
    valid_until: Optional[datetime] = Field(None, description="有效期")

    @field_validator('parts', mode='before')
    @classmethod
    def decode_json(cls, v):
        return decode_json_string(v)

    @field_validator('valid_until')
    @classmethod
    def normalize_valid_until(cls, v):
        return to_naive_local(v)

    @model_validator(mode='after')
    def check_upload_mode(self):
        if self.is_upload_quotation and self.total_amount is None:
            raise ValueError("上传模式必须提供总金额")
        return self


class QuotationResponseRequest(BaseModel):
    """客户答复报价单请求"""
    response: str = Field(..., description="accepted 或 rejected")
    notes: Optional[str] = Field(None, description="备注/拒绝原因")

    @field_validator('response')
    @classmethod
    def validate_response(cls, v):
        valid = [QuotationDecision.ACCEPTED, QuotationDecision.REJECTED]
        if v not in valid:
            raise ValueError(f"答复必须是以下之一: {', '.join(valid)}")
        return v


# ===== 响应 Schema =====
class QuotationItemResponse(BaseModel):
    """报价项响应"""
    model_config = ConfigDict(from_attributes=True)

    item_id: UUID = Field(..., description="明细ID")
    part_ref: Optional[str] = Field(None, description="零件编号")
    material: str = Field(..., description="材料")
    thickness: str = Field(..., description="厚度")
    grade: Optional[str] = Field(None, description="牌号")
    quantity: int = Field(..., description="数量")
    unit_price: Decimal = Field(..., description="单价")
    total_price: Decimal = Field(..., description="小计")
    remarks: Optional[str] = Field(None, description="备注")
    sort_order: int = Field(..., description="排序顺序")


class QuotationListResponse(BaseModel):
    """报价单列表项响应"""
    model_config = ConfigDict(from_attributes=True)

    quotation_id: UUID = Field(..., description="报价单ID")
    quotation_no: str = Field(..., description="报价单编号")
    inquiry_id: UUID = Field(..., description="询价单ID")
    status: str = Field(..., description="状态")
    total_amount: Decimal = Field(..., description="总金额")
    currency: str = Field(..., description="币种")
    valid_until: datetime = Field(..., description="有效期")
    created_at: datetime = Field(..., description="创建时间")
    updated_at: datetime = Field(..., description="更新时间")


class QuotationDetailResponse(QuotationListResponse):
    """报价单详情响应"""
    terms: Optional[str] = Field(None, description="条款说明")
    notes: Optional[str] = Field(None, description="备注")
    is_upload_quotation: bool = Field(..., description="是否为上传文件报价")
    rejection_reason: Optional[str] = Field(None, description="拒绝原因")
    sent_at: Optional[datetime] = Field(None, description="发送时间")
    accepted_at: Optional[datetime] = Field(None, description="接受时间")
    rejected_at: Optional[datetime] = Field(None, description="拒绝时间")
    expired_at: Optional[datetime] = Field(None, description="过期时间")
    order_created_at: Optional[datetime] = Field(None, description="生成订单时间")
    items: List[QuotationItemResponse] = Field(default_factory=list, description="报价项列表")


class PaginatedQuotationListResponse(BaseModel):
    """分页报价单列表响应"""
    total: int = Field(..., description="总记录数")
    page: int = Field(..., description="当前页码")
    page_size: int = Field(..., description="每页大小")
    data: List[QuotationListResponse] = Field(..., description="数据列表")


class QuotationRespondResult(BaseModel):
    """客户答复结果"""
    quotation: QuotationDetailResponse = Field(..., description="报价单")
    order: Optional[OrderResponse] = Field(None, description="接受时生成的订单")


class ExpireOverdueResult(BaseModel):
    """批量过期结果"""
    expired: int = Field(..., description="本次过期的报价单数量")
