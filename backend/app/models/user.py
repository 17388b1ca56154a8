"""
用户数据模型
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, Index, Uuid

from app.core.database import Base


class User(Base):
    """用户表（客户与后台人员）"""
    __tablename__ = "users"

    user_id = Column(Uuid, primary_key=True, default=uuid.uuid4, comment="用户ID")
    email = Column(String(255), unique=True, nullable=False, comment="邮箱")
    first_name = Column(String(100), nullable=False, default="", comment="名")
    last_name = Column(String(100), nullable=False, default="", comment="姓")
    company_name = Column(String(255), comment="公司名称")
    phone_number = Column(String(50), comment="手机号")
    role = Column(String(50), nullable=False, default="customer", comment="角色")
    is_active = Column(Boolean, nullable=False, default=True, comment="是否启用")
    created_at = Column(DateTime, default=datetime.now, comment="创建时间")

    __table_args__ = (
        Index('ix_user_role', 'role'),
        {'comment': '用户表'}
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()
