"""
统一异常处理和日志中间件

提供：
1. 订单流转各环节的业务异常类型
2. 全局异常捕获和统一错误响应
3. 请求/响应日志记录与请求追踪ID
4. 慢请求监控
"""
import os
import sys
import time
import uuid
import traceback
from typing import Callable, Any, Optional
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from loguru import logger

from app.core.config import settings


# ==================== 自定义异常类 ====================

class AppException(Exception):
    """应用基础异常类"""

    def __init__(
        self,
        message: str,
        error_code: str = "APP_ERROR",
        status_code: int = 500,
        details: dict = None
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationException(AppException):
    """数据验证异常"""

    def __init__(self, message: str, details: dict = None, error_code: str = "VALIDATION_ERROR"):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class InvalidLineItemException(ValidationException):
    """报价明细不合法（缺少材料/厚度/数量，或单价非正）"""

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(
            message=message,
            details={"index": index},
            error_code="INVALID_LINE_ITEM"
        )


class InvalidStatusException(ValidationException):
    """未知的订单状态值"""

    def __init__(self, status: str, allowed: list):
        super().__init__(
            message=f"无效的状态: {status}",
            details={"status": status, "allowed": list(allowed)},
            error_code="INVALID_STATUS"
        )


class NotFoundException(AppException):
    """资源不存在异常"""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource}不存在"
        if resource_id:
            message = f"{resource} [{resource_id}] 不存在"
        super().__init__(
            message=message,
            error_code="NOT_FOUND",
            status_code=404,
            details={"resource": resource, "resource_id": str(resource_id) if resource_id else None}
        )


class BusinessException(AppException):
    """业务逻辑异常"""

    def __init__(self, message: str, error_code: str = "BUSINESS_ERROR", details: dict = None, status_code: int = 400):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )


class InvalidStateTransitionException(BusinessException):
    """当前状态下不允许该操作"""

    def __init__(
        self,
        entity: str,
        current_status: Optional[str],
        target: str,
        error_code: str = "INVALID_STATE_TRANSITION"
    ):
        super().__init__(
            message=f"{entity}当前状态 {current_status} 不允许执行: {target}",
            error_code=error_code,
            status_code=409,
            details={"entity": entity, "current_status": current_status, "target": target}
        )
        self.current_status = current_status


class DuplicateResourceException(BusinessException):
    """唯一性约束冲突（报价单/订单已存在）"""

    def __init__(self, message: str, existing_id: Any = None, details: dict = None):
        merged = {"existing_id": str(existing_id) if existing_id else None}
        merged.update(details or {})
        super().__init__(
            message=message,
            error_code="DUPLICATE_RESOURCE",
            status_code=409,
            details=merged
        )
        self.existing_id = existing_id


class AmountMismatchException(BusinessException):
    """付款金额与订单金额不符"""

    def __init__(self, expected, actual):
        super().__init__(
            message=f"付款金额 {actual} 与订单金额 {expected} 不符",
            error_code="AMOUNT_MISMATCH",
            details={"expected": str(expected), "actual": str(actual)}
        )


class QuotationExpiredException(BusinessException):
    """报价单已过有效期"""

    def __init__(self, quotation_id: Any, valid_until: Optional[datetime]):
        super().__init__(
            message=f"报价单 [{quotation_id}] 已过期",
            error_code="QUOTATION_EXPIRED",
            details={
                "quotation_id": str(quotation_id),
                "valid_until": valid_until.isoformat() if valid_until else None
            }
        )


class PaymentVerificationFailedException(BusinessException):
    """支付网关校验失败"""

    def __init__(self, message: str = "支付校验失败", details: dict = None):
        super().__init__(
            message=message,
            error_code="PAYMENT_VERIFICATION_FAILED",
            details=details
        )


class AuthenticationException(AppException):
    """认证异常"""

    def __init__(self, message: str = "认证失败"):
        super().__init__(
            message=message,
            error_code="AUTHENTICATION_ERROR",
            status_code=401
        )


class AccessDeniedException(AppException):
    """授权异常"""

    def __init__(self, message: str = "无权限访问"):
        super().__init__(
            message=message,
            error_code="ACCESS_DENIED",
            status_code=403
        )


# ==================== 日志配置 ====================

def _bind_defaults(record) -> bool:
    # 请求外（启动、后台任务）的日志没有请求上下文
    record["extra"].setdefault("request_id", "-")
    record["extra"].setdefault("user_id", "-")
    return True


def configure_logging(app_name: str = None):
    """
    配置loguru日志

    控制台始终输出；LOG_TO_FILE 开启时按天切分普通日志和错误日志
    """
    app_name = app_name or settings.APP_NAME
    logger.remove()

    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
            "<blue>[{extra[request_id]}|{extra[user_id]}]</blue> - "
            "<level>{message}</level>"
        ),
        level=settings.LOG_LEVEL,
        colorize=True,
        filter=_bind_defaults
    )

    if not settings.LOG_TO_FILE:
        return logger

    file_format = (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | "
        "[{extra[request_id]}|{extra[user_id]}] | {message}"
    )
    for suffix, level, days in (
        ("", settings.LOG_LEVEL, settings.LOG_RETENTION_DAYS),
        ("_error", "ERROR", settings.ERROR_LOG_RETENTION_DAYS),
    ):
        logger.add(
            os.path.join(settings.LOG_DIR, f"{app_name}{suffix}_{{time:YYYY-MM-DD}}.log"),
            format=file_format,
            level=level,
            rotation="00:00",
            retention=f"{days} days",
            compression="gz",
            filter=_bind_defaults
        )

    return logger


# ==================== 中间件 ====================

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    请求日志中间件

    沿用网关传入的 X-Request-ID（没有则生成），并把 X-User-Id 绑定到本次请求的所有日志上，
    便于按操作人追踪报价、付款、发货操作。
    """

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        user_id = request.headers.get("X-User-Id") or "-"

        start = time.perf_counter()
        with logger.contextualize(request_id=request_id, user_id=user_id):
            logger.info(f"→ {request.method} {request.url.path}")
            try:
                response = await call_next(request)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                logger.error(f"✗ {request.method} {request.url.path} | {type(e).__name__}: {e} | {elapsed:.1f}ms")
                raise

            elapsed = (time.perf_counter() - start) * 1000
            logger.info(f"← {request.method} {request.url.path} | {response.status_code} | {elapsed:.1f}ms")

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.1f}ms"
        return response


class SlowRequestMiddleware(BaseHTTPMiddleware):
    """慢请求告警，阈值见 SLOW_REQUEST_THRESHOLD_MS"""

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        response = await call_next(request)

        elapsed = (time.perf_counter() - start) * 1000
        if elapsed > settings.SLOW_REQUEST_THRESHOLD_MS:
            with logger.contextualize(request_id=getattr(request.state, "request_id", "-")):
                logger.warning(f"慢请求 | {request.method} {request.url.path} | {elapsed:.1f}ms")
        return response


# ==================== 异常处理器 ====================

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "UNPROCESSABLE_ENTITY",
}


def create_error_response(
    request: Request,
    error_code: str,
    message: str,
    status_code: int,
    details: dict = None
) -> JSONResponse:
    """统一错误响应：{"success": false, "error": {...}}"""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {
                "code": error_code,
                "message": message,
                "details": details or {},
                "timestamp": datetime.now().isoformat(),
                "request_id": getattr(request.state, "request_id", "-"),
                "path": request.url.path,
            }
        }
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """业务异常：4xx 记 warning，5xx 记 error"""
    with logger.contextualize(request_id=getattr(request.state, "request_id", "-")):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(f"{exc.error_code} | {exc.message}")

    return create_error_response(request, exc.error_code, exc.message, exc.status_code, exc.details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    with logger.contextualize(request_id=getattr(request.state, "request_id", "-")):
        logger.warning(f"HTTP {exc.status_code} | {exc.detail}")

    return create_error_response(
        request,
        HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        str(exc.detail),
        exc.status_code
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求体/参数校验失败，逐项列出字段错误"""
    errors = [
        {
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

    with logger.contextualize(request_id=getattr(request.state, "request_id", "-")):
        logger.warning(f"参数校验失败 | {request.method} {request.url.path} | {len(errors)} 项")

    if len(errors) == 1:
        message = f"参数验证失败: {errors[0]['field']} - {errors[0]['message']}"
    else:
        message = "多个参数验证失败，请检查请求参数"

    return create_error_response(
        request, "VALIDATION_ERROR", message, 422, {"validation_errors": errors}
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """未捕获异常：记录完整堆栈，对外只返回通用信息"""
    with logger.contextualize(request_id=getattr(request.state, "request_id", "-")):
        logger.error(f"未捕获异常 | {type(exc).__name__}: {exc}\n{traceback.format_exc()}")

    details = {"exception_type": type(exc).__name__}
    if settings.ENVIRONMENT == "development":
        details["exception"] = str(exc)
    return create_error_response(
        request, "INTERNAL_SERVER_ERROR", "服务器内部错误，请稍后重试", 500, details
    )


# ==================== 注册函数 ====================

def setup_error_handling(app: FastAPI):
    """
    日志、中间件、异常处理器一次性注册

    中间件按添加的相反顺序执行：RequestLoggingMiddleware 在最外层
    """
    configure_logging()

    app.add_middleware(SlowRequestMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("日志与异常处理已初始化")
