"""
chatroom.main
~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from chatroom.api import rooms, ws
from chatroom.core.config import settings
from chatroom.core.logging import get_logger, setup_logging
from chatroom.core.rate_limit import limiter
from chatroom.core.security import ClaimsVerifier
from chatroom.db import mongo
from chatroom.db.chat_repository import ChatRepository
from chatroom.db.room_repository import RoomMetaRepository
from chatroom.ledger.client import create_ledger_client
from chatroom.schemas.api_response import ApiResponse
from chatroom.services.room_hub import RoomHub

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    db = await mongo.connect(settings.MONGO_URI, settings.MONGO_DB_NAME)
    chat_repository = ChatRepository(db)
    ledger = create_ledger_client()
    verifier = (
        ClaimsVerifier(settings.JWT_SECRET, settings.JWT_ISSUER)
        if settings.JWT_SECRET
        else None
    )
    if verifier is None and not settings.allow_anonymous_auth:
        logger.warning("未配置 JWT_SECRET，且当前环境不允许匿名登录：所有登录都将被拒绝")

    hub = RoomHub(
        repo=chat_repository,
        ledger=ledger,
        verifier=verifier,
        allow_anonymous=settings.allow_anonymous_auth,
        meta_repo=RoomMetaRepository(db),
        history_limit=settings.CHAT_HISTORY_LIMIT,
        max_length=settings.MESSAGE_MAX_LENGTH,
        grace_seconds=settings.END_CHAT_GRACE_SECONDS,
    )
    app.state.chat_repository = chat_repository
    app.state.room_hub = hub
    sweeper = asyncio.create_task(
        hub.run_sweeper(settings.ROOM_SWEEP_INTERVAL_SECONDS, settings.ROOM_IDLE_SECONDS),
    )
    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s | anonymous_auth=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
        settings.allow_anonymous_auth,
    )
    yield
    # ── 关闭 ──
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await hub.shutdown()
    await ledger.aclose()
    mongo.close()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="一对一实时咨询聊天室 API",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["https://clairvora.com"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(rooms.router, prefix="/api", tags=["Chat Rooms"])
app.include_router(ws.router, tags=["WebSocket Chat"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(status_code=500, content=response.model_dump())


@app.get("/health", tags=["System"])
async def health_check() -> JSONResponse:
    """验证服务是否正常运行。"""
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chatroom.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
