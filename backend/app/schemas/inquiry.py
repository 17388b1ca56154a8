"""
询价单相关的Pydantic模式
"""
from typing import Optional, List
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field, field_validator, ConfigDict

from app.schemas.common import decode_json_string, to_naive_local


# ===== 枚举值定义 =====
class InquiryStatus:
    """询价单状态"""
    PENDING = "pending"
    REVIEWED = "reviewed"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PRODUCTION = "in_production"
    COMPLETED = "completed"


# ===== 请求 Schema =====
class PartSpec(BaseModel):
    """零件规格"""
    part_ref: str = Field(default="", max_length=100, description="零件编号")
    material: str = Field(..., min_length=1, max_length=100, description="材料")
    thickness: str = Field(..., min_length=1, max_length=50, description="厚度")
    grade: str = Field(default="", max_length=50, description="牌号")
    quantity: int = Field(..., ge=1, description="数量")
    remarks: str = Field(default="", description="备注")

    @field_validator('material', 'thickness', 'remarks', 'part_ref', 'grade', mode='before')
    @classmethod
    def strip_text(cls, v):
        if v is None:
            return ""
        return str(v).strip()


class DeliveryAddress(BaseModel):
    """收货地址"""
    street: str = Field(..., min_length=1, description="街道")
    city: str = Field(..., min_length=1, description="城市")
    state: str = Field(default="", description="州/省")
    country: str = Field(..., min_length=1, description="国家")
    zip_code: str = Field(default="", description="邮编")


class FileReference(BaseModel):
    """上传文件引用"""
    original_name: str = Field(..., description="原始文件名")
    file_name: str = Field(..., description="存储文件名")
    file_path: str = Field(default="", description="存储路径")
    file_size: int = Field(default=0, ge=0, description="文件大小")
    file_type: str = Field(default="", description="文件类型")


class InquiryCreateRequest(BaseModel):
    """创建询价单请求"""
    parts: List[PartSpec] = Field(..., min_length=1, description="零件列表")
    delivery_address: DeliveryAddress = Field(..., description="收货地址")
    files: List[FileReference] = Field(default_factory=list, description="文件列表")
    special_instructions: str = Field(default="", description="特殊说明")
    expected_delivery_date: Optional[datetime] = Field(None, description="期望交期")

    @field_validator('parts', 'delivery_address', 'files', mode='before')
    @classmethod
    def decode_json(cls, v):
        return decode_json_string(v)

    @field_validator('expected_delivery_date')
    @classmethod
    def normalize_date(cls, v):
        return to_naive_local(v)


class InquiryUpdateRequest(BaseModel):
    """更新询价单请求"""
    parts: List[PartSpec] = Field(..., min_length=1, description="零件列表")
    special_instructions: Optional[str] = Field(None, description="特殊说明")
    expected_delivery_date: Optional[datetime] = Field(None, description="期望交期")

    @field_validator('parts', mode='before')
    @classmethod
    def decode_json(cls, v):
        return decode_json_string(v)

    @field_validator('expected_delivery_date')
    @classmethod
    def normalize_date(cls, v):
        return to_naive_local(v)


# ===== 响应 Schema =====
class InquiryResponse(BaseModel):
    """询价单响应"""
    model_config = ConfigDict(from_attributes=True)

    inquiry_id: UUID = Field(..., description="询价单ID")
    inquiry_no: str = Field(..., description="询价单编号")
    customer_id: UUID = Field(..., description="客户ID")
    parts: List[dict] = Field(default_factory=list, description="零件列表")
    files: List[dict] = Field(default_factory=list, description="文件列表")
    delivery_address: dict = Field(default_factory=dict, description="收货地址")
    special_instructions: Optional[str] = Field(None, description="特殊说明")
    expected_delivery_date: Optional[datetime] = Field(None, description="期望交期")
    status: str = Field(..., description="状态")
    quotation_id: Optional[UUID] = Field(None, description="关联报价单")
    created_at: datetime = Field(..., description="创建时间")
    updated_at: datetime = Field(..., description="更新时间")


class PaginatedInquiryListResponse(BaseModel):
    """分页询价单列表响应"""
    total: int = Field(..., description="总记录数")
    page: int = Field(..., description="当前页码")
    page_size: int = Field(..., description="每页大小")
    data: List[InquiryResponse] = Field(..., description="数据列表")
