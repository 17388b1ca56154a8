"""
订单数据模型

付款、生产、发货三个子记录按前缀平铺在订单表中，
便于按状态做原子条件更新。
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, Numeric, Text, JSON, Uuid

from app.core.database import Base


class Order(Base):
    """订单主表"""
    __tablename__ = "orders"

    order_id = Column(Uuid, primary_key=True, default=uuid.uuid4, comment="订单ID")
    order_no = Column(String(50), unique=True, nullable=False, comment="订单编号")
    quotation_id = Column(Uuid, ForeignKey('quotations.quotation_id'), unique=True, nullable=False, comment="来源报价单")
    inquiry_id = Column(Uuid, ForeignKey('inquiries.inquiry_id'), nullable=False, comment="来源询价单")
    customer_id = Column(Uuid, ForeignKey('users.user_id'), nullable=False, comment="客户")
    items = Column(JSON, nullable=False, default=list, comment="报价明细快照")
    total_amount = Column(Numeric(20, 2), nullable=False, comment="订单总金额（快照）")
    currency = Column(String(10), nullable=False, comment="币种")
    status = Column(String(50), nullable=False, default="pending", comment="状态")
    delivery_address = Column(JSON, nullable=False, default=dict, comment="收货地址快照")
    notes = Column(Text, comment="备注")
    confirmed_at = Column(DateTime, comment="确认时间")

    # 付款
    payment_method = Column(String(50), nullable=False, default="pending", comment="付款方式")
    payment_status = Column(String(50), nullable=False, default="pending", comment="付款状态")
    payment_transaction_id = Column(String(255), comment="交易流水号")
    payment_amount = Column(Numeric(20, 2), comment="付款金额")
    payment_paid_at = Column(DateTime, comment="付款时间")
    payment_gateway = Column(String(50), comment="支付渠道")
    refund_amount = Column(Numeric(20, 2), comment="退款金额")
    refund_reason = Column(Text, comment="退款原因")
    refunded_at = Column(DateTime, comment="退款时间")

    # 生产
    production_start_date = Column(DateTime, comment="开始生产时间")
    production_estimated_completion = Column(DateTime, comment="预计完工时间")
    production_actual_completion = Column(DateTime, comment="实际完工时间")

    # 发货
    dispatch_courier = Column(String(100), comment="承运商")
    dispatch_tracking_number = Column(String(100), comment="运单号")
    dispatch_dispatched_at = Column(DateTime, comment="发货时间")
    dispatch_estimated_delivery = Column(DateTime, comment="预计送达")
    dispatch_actual_delivery = Column(DateTime, comment="实际送达")
    dispatch_notes = Column(Text, comment="发货备注")

    created_at = Column(DateTime, default=datetime.now, comment="创建时间")
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, comment="更新时间")

    __table_args__ = (
        Index('ix_order_status', 'status'),
        Index('ix_order_customer', 'customer_id'),
        Index('ix_order_created_at', 'created_at'),
        {'comment': '订单主表'}
    )
