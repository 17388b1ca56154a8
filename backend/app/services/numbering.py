"""
业务单号生成

- 报价单：QT{YYMMDD}{3位序号}，配置 Redis 时为日内自增序号，否则为随机序号
- 订单：ORD{毫秒时间戳}
- 询价单：INQ{YYMMDD}{4位随机数}

所有编号写入前都会查库确认唯一，冲突时重新生成。
"""
import random
from datetime import datetime
from typing import Callable, Optional, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from app.core.middleware import AppException
from app.core.redis_client import get_redis
from app.models.inquiry import Inquiry
from app.models.order import Order
from app.models.quotation import Quotation


class NumberGenerationError(AppException):
    """重试后仍无法生成唯一编号"""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="NUMBER_GENERATION_FAILED", status_code=500)


class NumberGenerator:
    """业务单号生成器"""

    MAX_RETRIES = 5
    # 日序号key过期时间（2天）
    SEQUENCE_TTL_SECONDS = 172800

    def __init__(
        self,
        redis: Any = None,
        clock: Callable[[], datetime] = datetime.now,
        rng: Optional[random.Random] = None
    ):
        self._redis = redis
        self._clock = clock
        self._rng = rng or random.Random()

    async def _get_redis(self):
        if self._redis is not None:
            return self._redis
        return await get_redis()

    async def _next_quotation_suffix(self, day: str) -> int:
        redis = await self._get_redis()
        if redis is not None:
            key = f"quotation_no:{day}"
            seq = await redis.incr(key)
            await redis.expire(key, self.SEQUENCE_TTL_SECONDS)
            if seq <= 999:
                return seq
            logger.warning(f"报价单日序号已超过999，改用随机序号: {day}")
        return self._rng.randint(0, 999)

    async def quotation_no(self, db: AsyncSession) -> str:
        """生成唯一报价单编号"""
        day = self._clock().strftime("%y%m%d")
        for attempt in range(self.MAX_RETRIES):
            suffix = await self._next_quotation_suffix(day)
            candidate = f"QT{day}{suffix:03d}"
            if not await self._exists(db, Quotation.quotation_no, candidate):
                return candidate
            logger.warning(f"报价单编号 {candidate} 已存在，重试 ({attempt + 1}/{self.MAX_RETRIES})")
        raise NumberGenerationError("生成报价单编号失败：达到最大重试次数")

    async def order_no(self, db: AsyncSession) -> str:
        """生成唯一订单编号"""
        millis = int(self._clock().timestamp() * 1000)
        for attempt in range(self.MAX_RETRIES):
            candidate = f"ORD{millis + attempt}"
            if not await self._exists(db, Order.order_no, candidate):
                return candidate
            logger.warning(f"订单编号 {candidate} 已存在，重试 ({attempt + 1}/{self.MAX_RETRIES})")
        raise NumberGenerationError("生成订单编号失败：达到最大重试次数")

    async def inquiry_no(self, db: AsyncSession) -> str:
        """生成唯一询价单编号"""
        day = self._clock().strftime("%y%m%d")
        for attempt in range(self.MAX_RETRIES):
            candidate = f"INQ{day}{self._rng.randint(0, 9999):04d}"
            if not await self._exists(db, Inquiry.inquiry_no, candidate):
                return candidate
            logger.warning(f"询价单编号 {candidate} 已存在，重试 ({attempt + 1}/{self.MAX_RETRIES})")
        raise NumberGenerationError("生成询价单编号失败：达到最大重试次数")

    @staticmethod
    async def _exists(db: AsyncSession, column, value: str) -> bool:
        result = await db.execute(select(column).where(column == value))
        return result.first() is not None
