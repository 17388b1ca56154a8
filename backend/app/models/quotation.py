"""
报价单数据模型
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, Integer, ForeignKey, Index, Numeric, Text, Boolean, Uuid
)

from app.core.database import Base


class Quotation(Base):
    """报价单主表"""
    __tablename__ = "quotations"

    quotation_id = Column(Uuid, primary_key=True, default=uuid.uuid4, comment="报价单ID")
    quotation_no = Column(String(50), unique=True, nullable=False, comment="报价单编号")
    inquiry_id = Column(Uuid, ForeignKey('inquiries.inquiry_id'), unique=True, nullable=False, comment="所属询价单")
    status = Column(String(50), nullable=False, default="draft", comment="状态")
    total_amount = Column(Numeric(20, 2), nullable=False, comment="报价总金额")
    currency = Column(String(10), nullable=False, default="USD", comment="币种")
    valid_until = Column(DateTime, nullable=False, comment="报价有效期")
    terms = Column(Text, comment="条款说明")
    notes = Column(Text, comment="备注信息")
    is_upload_quotation = Column(Boolean, nullable=False, default=False, comment="是否为上传文件报价")
    prepared_by = Column(Uuid, ForeignKey('users.user_id'), comment="报价人")
    rejection_reason = Column(Text, comment="拒绝原因")
    sent_at = Column(DateTime, comment="发送时间")
    accepted_at = Column(DateTime, comment="接受时间")
    rejected_at = Column(DateTime, comment="拒绝时间")
    expired_at = Column(DateTime, comment="过期时间")
    order_created_at = Column(DateTime, comment="生成订单时间")
    created_at = Column(DateTime, default=datetime.now, comment="创建时间")
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, comment="更新时间")

    __table_args__ = (
        Index('ix_quotation_status', 'status'),
        Index('ix_quotation_created_at', 'created_at'),
        {'comment': '报价单主表'}
    )


class QuotationItem(Base):
    """报价明细表"""
    __tablename__ = "quotation_items"

    item_id = Column(Uuid, primary_key=True, default=uuid.uuid4, comment="明细ID")
    quotation_id = Column(Uuid, ForeignKey('quotations.quotation_id', ondelete='CASCADE'), nullable=False, comment="所属报价单")
    part_ref = Column(String(100), default="", comment="零件编号")
    material = Column(String(100), nullable=False, comment="材料")
    thickness = Column(String(50), nullable=False, comment="厚度")
    grade = Column(String(50), default="", comment="牌号")
    quantity = Column(Integer, nullable=False, comment="数量")
    unit_price = Column(Numeric(20, 2), nullable=False, comment="单价")
    total_price = Column(Numeric(20, 2), nullable=False, comment="小计")
    remarks = Column(Text, default="", comment="备注")
    sort_order = Column(Integer, nullable=False, default=0, comment="排序顺序")

    __table_args__ = (
        Index('ix_item_quotation', 'quotation_id'),
        Index('ix_item_sort_order', 'quotation_id', 'sort_order'),
        {'comment': '报价明细表'}
    )
