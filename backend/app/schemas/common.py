"""
通用 Schema
"""
import json
from dataclasses import dataclass
from typing import Any, Optional
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field

from app.core.config import settings


class UserRole:
    """用户角色"""
    CUSTOMER = "customer"
    ADMIN = "admin"
    BACKOFFICE = "backoffice"
    SUBADMIN = "subadmin"


class SuccessResponse(BaseModel):
    """成功响应"""
    success: bool = Field(default=True, description="是否成功")
    message: str = Field(default="操作成功", description="消息")


class ErrorResponse(BaseModel):
    """错误响应"""
    error_code: str = Field(..., description="错误码")
    message: str = Field(..., description="错误消息")
    details: Optional[dict] = Field(None, description="错误详情")
    timestamp: datetime = Field(default_factory=datetime.now, description="时间戳")


def to_naive_local(value: Optional[datetime]) -> Optional[datetime]:
    """带时区的时间转换为本地时间并去掉时区，与数据库中的 naive 时间保持一致"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def decode_json_string(value: Any) -> Any:
    """
    表单提交时部分字段以JSON字符串形式传入，
    在边界处解码后再交给模型校验
    """
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"无效的JSON数据: {e.msg}")
    return value


@dataclass(frozen=True)
class Actor:
    """当前操作人（由网关转发的身份头构造）"""
    user_id: UUID
    role: str = UserRole.CUSTOMER

    @property
    def is_back_office(self) -> bool:
        return self.role in settings.BACK_OFFICE_ROLES
