"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import LoggingMiddleware, RequestDeadlineMiddleware, RequestIDMiddleware
from api.routes import orders as orders_routes
from api.routes import payments as payments_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from infrastructure.container import (
    build_order_financials_service,
    build_reconciliation_scheduler,
    redis_tick_lock,
    select_fanout,
)
from infrastructure.database import create_tables, dispose_engine
from infrastructure.external.cache import init_redis_client, shutdown_redis_client
from infrastructure.external.payments import build_provider_registry
from infrastructure.unit_of_work import sqlalchemy_uow_factory


# 初始化日志
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时创建数据库表（仅开发环境）
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")

    redis = None
    if settings.redis.url:
        try:
            redis = await init_redis_client()
            logger.info("redis_initialized")
        except Exception as exc:
            logger.error("redis_init_failed", error=str(exc))

    uow_factory = sqlalchemy_uow_factory()
    registry = build_provider_registry()
    fanout = select_fanout(redis=redis)
    app.state.provider_registry = registry
    app.state.order_fanout = fanout
    app.state.order_financials_service = build_order_financials_service(
        uow_factory, registry=registry, fanout=fanout
    )

    scheduler = None
    if settings.reconciliation.enabled:
        tick_lock = (
            redis_tick_lock(redis, settings.reconciliation.lock_timeout_seconds)
            if redis is not None else None
        )
        scheduler = build_reconciliation_scheduler(
            uow_factory, registry=registry, fanout=fanout, tick_lock=tick_lock
        )
        await scheduler.start()
    app.state.reconciliation_scheduler = scheduler

    yield

    # 关闭时的清理工作
    if scheduler is not None:
        await scheduler.stop()
    await registry.aclose()
    await fanout.aclose()
    if redis is not None:
        await shutdown_redis_client()
        logger.info("redis_shutdown")
    await dispose_engine()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="订单财务账本与在线支付对账服务",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. Request ID中间件（最先执行，为后续中间件提供request_id）
app.add_middleware(RequestIDMiddleware)

# 2. 日志中间件（依赖request_id）
app.add_middleware(LoggingMiddleware)

# 3. 请求截止时间
app.add_middleware(RequestDeadlineMiddleware, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS)

# 4. CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)


# 注册路由
app.include_router(orders_routes.router, prefix="/api/v1")
app.include_router(payments_routes.router, prefix="/api/v1")


# 根路径
@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
        message="Welcome"
    )


# 健康检查
@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message="ok")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
