"""
学费结算服务入口：选课下单、支付发起、渠道回调结算与对账
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import admin as admin_routes
from api.routes import orders as orders_routes
from api.routes import payments as payments_routes
from api.routes import requests as requests_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from core.settings import payment_settings
from infrastructure.database import create_tables, engine


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DEBUG:
        # 仅开发环境自动建表，其它环境走 alembic upgrade head
        await create_tables()
        logger.info("database_tables_created")
    logger.info(
        "settlement_service_started",
        environment=settings.ENVIRONMENT,
        methods=payment_settings.enabled_methods,
        currency=settings.billing.currency,
        expiry_minutes=settings.billing.payment_expiry_minutes,
    )
    yield
    await engine.dispose()
    logger.info("settlement_service_stopped")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Tuition orders, payment requests, channel callbacks and reconciliation",
)

# 后添加的在外层：RequestID 需包住 Logging，日志才能带上 request_id
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

for module in (orders_routes, payments_routes, requests_routes, admin_routes):
    app.include_router(module.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    return success_response(
        data={"name": settings.PROJECT_NAME, "version": settings.VERSION, "docs": "/docs"},
        message="Welcome",
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """存活检查；数据库不可达时报告 degraded 而不是失败"""
    database = "ok"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_database_unreachable", error=str(exc))
        database = "unavailable"
    status = "healthy" if database == "ok" else "degraded"
    return success_response(data={"status": status, "database": database}, message="OK")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
