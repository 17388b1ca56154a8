"""
Redis 客户端
仅在配置了 REDIS_URL 时启用
"""
from typing import Optional

from redis import asyncio as aioredis
from loguru import logger

from app.core.config import settings


_redis: Optional[aioredis.Redis] = None


async def init_redis() -> Optional[aioredis.Redis]:
    """初始化 Redis 连接"""
    global _redis
    if not settings.REDIS_URL:
        logger.info("未配置 REDIS_URL，跳过 Redis 初始化")
        return None

    _redis = aioredis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    await _redis.ping()
    logger.info("Redis 连接成功")
    return _redis


async def get_redis() -> Optional[aioredis.Redis]:
    """获取 Redis 连接，未启用时返回 None"""
    return _redis


async def close_redis():
    """关闭 Redis 连接"""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
        logger.info("Redis 连接已关闭")
