"""
Komacut 订单流转服务入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from app.api.v1.api import api_router
from app.core.config import settings
from app.core.database import create_tables, close_db
from app.core.middleware import setup_error_handling
from app.core.redis_client import init_redis, close_redis
from app.services.notification_service import build_notifier


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭"""
    logger.info(f"{settings.APP_NAME} 启动中 | 环境: {settings.ENVIRONMENT}")
    await init_redis()
    app.state.notifier = build_notifier(settings)
    if settings.AUTO_CREATE_TABLES:
        await create_tables()
    yield
    await close_redis()
    await close_db()
    logger.info(f"{settings.APP_NAME} 已关闭")


app = FastAPI(
    title="Komacut Order Workflow API",
    description="询价 → 报价 → 订单 → 付款 → 发货 全流程管理",
    version="1.0.0",
    lifespan=lifespan,
)

setup_error_handling(app)

app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/health", tags=["系统"])
async def health_check():
    """健康检查"""
    return {"status": "ok", "app": settings.APP_NAME, "environment": settings.ENVIRONMENT}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.ENVIRONMENT == "development")
