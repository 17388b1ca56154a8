"""
询价单数据模型
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, Text, JSON, Uuid

from app.core.database import Base


class Inquiry(Base):
    """询价单主表"""
    __tablename__ = "inquiries"

    inquiry_id = Column(Uuid, primary_key=True, default=uuid.uuid4, comment="询价单ID")
    inquiry_no = Column(String(50), unique=True, nullable=False, comment="询价单编号")
    customer_id = Column(Uuid, ForeignKey('users.user_id'), nullable=False, comment="客户")
    parts = Column(JSON, nullable=False, default=list, comment="零件规格列表")
    files = Column(JSON, nullable=False, default=list, comment="上传文件引用")
    delivery_address = Column(JSON, nullable=False, default=dict, comment="收货地址")
    special_instructions = Column(Text, default="", comment="特殊说明")
    expected_delivery_date = Column(DateTime, comment="期望交期")
    status = Column(String(50), nullable=False, default="pending", comment="状态")
    quotation_id = Column(Uuid, comment="关联报价单")
    created_at = Column(DateTime, default=datetime.now, comment="创建时间")
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, comment="更新时间")

    __table_args__ = (
        Index('ix_inquiry_customer', 'customer_id'),
        Index('ix_inquiry_status', 'status'),
        Index('ix_inquiry_created_at', 'created_at'),
        {'comment': '询价单主表'}
    )
