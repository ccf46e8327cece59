"""
FastAPI应用主入口（组合根）
"""
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import orders as orders_routes
from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from application.services.order_reaper import StaleOrderReaper
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from infrastructure.database import create_tables
from infrastructure.external.payments import build_mpesa_gateway
from infrastructure.tasks.scheduler import PeriodicJob
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时创建数据库表（仅开发环境）。生产应使用 Alembic 迁移
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )

    # 缺少 M-Pesa 配置时直接启动失败（PaymentConfigError）
    gateway = build_mpesa_gateway()
    app.state.mpesa_gateway = gateway
    logger.info("mpesa_gateway_initialized", provider=gateway.provider)

    reaper_job = None
    if settings.reaper.mode == "inprocess":
        reaper = StaleOrderReaper(
            SQLAlchemyUnitOfWork,
            max_age=timedelta(seconds=settings.reaper.max_age_seconds),
        )
        reaper_job = PeriodicJob(
            "reap_stale_orders",
            reaper.sweep,
            interval_seconds=settings.reaper.interval_seconds,
        )
        reaper_job.start()
    else:
        logger.info("stale_order_reaper_external", mode=settings.reaper.mode)

    yield

    if reaper_job is not None:
        await reaper_job.stop()
    await gateway.aclose()
    app.state.mpesa_gateway = None
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="饮品商城订单与 M-Pesa 支付对账服务",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. Request ID中间件（最先执行，为后续中间件提供request_id）
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(orders_routes.router, prefix="/api/v1")
app.include_router(payments_routes.router, prefix="/api/v1")


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


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
