"""
支付服务入口

HTTP 面：/api/v1/payment/*（需 Bearer 令牌）与 /api/v1/webhooks/{provider}（网关签名）。
后台补偿任务见 infrastructure/tasks。
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import payments as payments_routes
from api.routes import webhooks as webhooks_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import error_response, success_response
from infrastructure.database import create_tables, engine
from shared.codes import BusinessCode


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DEBUG:
        await create_tables()
        logger.info("database_tables_created", environment=settings.ENVIRONMENT)
    else:
        logger.info("database_migrations_expected", hint="alembic upgrade head")
    yield
    await engine.dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="多网关订单支付服务：发起、确认、回调对账与退款",
)

# add_middleware 后加先执行：RequestID 最外层，日志可拿到 request_id
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)

register_exception_handlers(app)

app.include_router(payments_routes.router, prefix="/api/v1")
app.include_router(webhooks_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    return success_response(data={"name": settings.PROJECT_NAME, "version": settings.VERSION}, message="Welcome")


@app.get("/health", tags=["Health"])
async def health_check():
    """存活与数据库连通性检查"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_database_unavailable", error_type=type(exc).__name__)
        body = error_response(BusinessCode.SERVICE_UNAVAILABLE, "Database unavailable", error_type="ServiceUnavailable")
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
    return success_response(data={"status": "healthy"}, message="OK")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
