"""
站内通知数据模型
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, Text, Boolean, JSON, Uuid

from app.core.database import Base


class Notification(Base):
    """站内通知表（只写审计/收件箱）"""
    __tablename__ = "notifications"

    notification_id = Column(Uuid, primary_key=True, default=uuid.uuid4, comment="通知ID")
    user_id = Column(Uuid, ForeignKey('users.user_id'), nullable=False, comment="接收人")
    title = Column(String(255), nullable=False, comment="标题")
    message = Column(Text, nullable=False, comment="内容")
    type = Column(String(20), nullable=False, default="info", comment="类型")
    related_entity_type = Column(String(50), comment="关联实体类型")
    related_entity_id = Column(Uuid, comment="关联实体ID")
    meta = Column("metadata", JSON, default=dict, comment="附加数据")
    is_read = Column(Boolean, nullable=False, default=False, comment="是否已读")
    created_at = Column(DateTime, default=datetime.now, comment="创建时间")

    __table_args__ = (
        Index('ix_notification_user', 'user_id', 'is_read'),
        {'comment': '站内通知表'}
    )
