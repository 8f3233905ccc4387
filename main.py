import os
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from adledger.core.config import settings
from adledger.core.database import Base, SessionLocal, engine
from adledger.routes import generation, health, stripe_webhook, subscriptions, tokens
from adledger.services.errors import InsufficientTokensError, TokenLedgerError
from adledger.services.plans import seed_plans

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    _run_startup()
    yield


app = FastAPI(
    title=settings.API_TITLE,
    version=settings.API_VERSION,
    description=settings.API_DESCRIPTION,
    docs_url="/docs",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)


@app.exception_handler(InsufficientTokensError)
async def _insufficient_tokens_handler(request: Request, exc: InsufficientTokensError):
    # 前端据 error_code 展示充值/升级提示，不重试
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


@app.exception_handler(TokenLedgerError)
async def _token_ledger_error_handler(request: Request, exc: TokenLedgerError):
    if exc.http_status >= 500:
        logger.error(f"账本内部错误: {exc.error_code} {exc.message} path={request.url.path}")
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": "Internal error, please retry", "error_code": exc.error_code},
        )
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


@app.exception_handler(SQLAlchemyError)
async def _sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
    # 统一把数据库异常转换成 JSON 响应，避免未处理异常导致浏览器端出现 `Failed to fetch`
    logging.exception("数据库异常: %s", exc)
    detail = "数据库错误，请检查数据库连接与表结构"
    if os.getenv("DEBUG_DB_ERRORS", "false").lower() == "true":
        detail = f"{detail}: {exc}"
    return JSONResponse(status_code=500, content={"detail": detail})


def _run_startup() -> None:
    """应用启动时执行：创建表 + 同步订阅档位"""
    auto_create_tables = os.getenv("AUTO_CREATE_TABLES", "true").lower() == "true"
    if auto_create_tables:
        try:
            Base.metadata.create_all(bind=engine)
        except SQLAlchemyError as exc:
            logging.exception("数据库初始化失败（无法创建表），请检查 DATABASE_URL 连接与权限: %s", exc)

    auto_seed_plans = os.getenv("AUTO_SEED_PLANS", "true").lower() == "true"
    if not auto_seed_plans:
        return

    db = SessionLocal()
    try:
        seed_plans(db)
    except SQLAlchemyError as exc:
        db.rollback()
        logging.exception("订阅档位初始化失败: %s", exc)
    finally:
        db.close()


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 包含路由
app.include_router(health.router, prefix="/api/health", tags=["Health"])
app.include_router(tokens.router, prefix="/api/tokens", tags=["Tokens"])
app.include_router(generation.router, prefix="/api/generation", tags=["Generation"])
app.include_router(stripe_webhook.router, prefix="/api/stripe", tags=["Stripe"])
app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["Subscriptions"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        log_level="info"
    )
