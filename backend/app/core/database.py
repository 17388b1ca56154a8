"""
数据库连接与会话管理
"""
from typing import AsyncGenerator

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from loguru import logger

from app.core.config import settings


Base = declarative_base()

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    pool_pre_ping=True,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI依赖：获取数据库会话"""
    async with async_session_maker() as session:
        yield session


async def create_tables():
    """创建所有数据表"""
    # 导入所有模型以注册到 Base.metadata
    from app.models import inquiry, notification, order, quotation, user  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("数据库表创建完成")


async def close_db():
    """释放连接池"""
    await engine.dispose()
    logger.info("数据库连接已关闭")


async def guarded_update(
    db: AsyncSession,
    model,
    key_column,
    key,
    expected_statuses,
    values: dict
) -> bool:
    """
    条件更新（compare-and-set）

    仅当记录当前 status 属于 expected_statuses 时写入 values，
    返回是否恰好命中一行。调用方负责提交与刷新对象。
    """
    stmt = (
        update(model)
        .where(key_column == key, model.status.in_(list(expected_statuses)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1
