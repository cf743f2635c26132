"""
订阅引擎 HTTP 入口：中间件、统一错误格式、健康检查
"""
import logging
import uuid
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager

from subscription_engine.core.config import settings
from subscription_engine.core.exceptions import (
    GatewayError,
    PlanNotFoundError,
    QuotaBackendError,
    SubscriptionEngineError,
    SubscriptionError,
)
from subscription_engine.core.database import engine, Base, AsyncSessionLocal
from subscription_engine.api.v1 import api_router
from subscription_engine.core.logging import setup_logging
from subscription_engine.core.health import check_db, check_redis
from subscription_engine.services.plan_service import PlanService

logger = logging.getLogger(__name__)

# 路由未自行处理的领域异常按类型映射状态码，按顺序匹配
DOMAIN_ERROR_STATUS = (
    (PlanNotFoundError, 404),
    (SubscriptionError, 409),
    (QuotaBackendError, 503),
    (GatewayError, 502),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """启动：日志、建表、默认套餐；退出：释放连接池"""
    setup_logging()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        await PlanService(session).ensure_default_plans()

    logger.info("订阅引擎启动 mock_mode=%s wechat_configured=%s", settings.PAYMENT_MOCK_MODE, settings.wechat_configured)
    yield
    await engine.dispose()


app = FastAPI(
    title="订阅计费与配额引擎",
    description="订阅、配额、扫码支付对账与升级推荐API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """为每个请求生成或透传 X-Request-ID，并写入 request.state"""
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response


def _error_json(request: Request, status_code: int, detail: str, headers=None, **extra) -> JSONResponse:
    """错误响应统一为 {detail, request_id, ...}"""
    body = {"detail": detail, **extra}
    rid = getattr(request.state, "request_id", None)
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error_json(request, exc.status_code, detail, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errs = exc.errors()
    detail = errs[0].get("msg", "请求参数校验失败") if errs else "请求参数校验失败"
    return _error_json(request, 422, detail, errors=jsonable_errors(errs))


def jsonable_errors(errs: list) -> list:
    """pydantic v2 的 ctx 里可能带异常对象，转成字符串再返回"""
    out = []
    for err in errs:
        item = dict(err)
        if "ctx" in item:
            item["ctx"] = {k: str(v) for k, v in item["ctx"].items()}
        out.append(item)
    return out


@app.exception_handler(SubscriptionEngineError)
async def domain_exception_handler(request: Request, exc: SubscriptionEngineError):
    status_code = next((code for cls, code in DOMAIN_ERROR_STATUS if isinstance(exc, cls)), 500)
    logger.warning("%s %s -> %s %s: %s", request.method, request.url.path, status_code, type(exc).__name__, exc)
    return _error_json(request, status_code, str(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("未捕获异常 %s %s", request.method, request.url.path)
    return _error_json(request, 500, "服务器内部错误")


app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"service": "subscription-engine", "version": app.version, "docs": app.docs_url}


@app.get("/health")
async def health_check():
    """数据库与 Redis 连通性；Redis 不通时配额默认拒绝，状态记为 degraded"""
    db_ok, db_msg = await check_db()
    redis_ok, redis_msg = check_redis()
    all_ok = db_ok and redis_ok
    return JSONResponse(
        content={
            "status": "healthy" if all_ok else "degraded",
            "service": "subscription-engine",
            "dependencies": {
                "database": {"ok": db_ok, "message": db_msg},
                "redis": {"ok": redis_ok, "message": redis_msg},
            },
            "payment": {
                "mock_mode": settings.PAYMENT_MOCK_MODE,
                "wechat_configured": settings.wechat_configured,
            },
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "subscription_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_excludes=["**/__pycache__/**", "**/*.pyc"],
    )
