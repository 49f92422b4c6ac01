"""
tavern.main
~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from tavern.api import chat, events, initiative, sessions, signaling
from tavern.core.config import settings
from tavern.core.errors import TavernError
from tavern.core.logging import get_logger, setup_logging
from tavern.core.rate_limit import limiter
from tavern.db import close_mongo, open_session_repository
from tavern.schemas.api_response import ApiResponse
from tavern.services.broadcaster import EventBroadcaster
from tavern.services.registry import ConnectionRegistry
from tavern.services.session_service import SessionService

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    repo = await open_session_repository()
    registry = ConnectionRegistry()
    broadcaster = EventBroadcaster(registry)
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.session_service = SessionService(repo, broadcaster)
    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    registry.close_all()
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="跑团会话后端：会话管理、聊天、先攻与实时事件流",
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
        allow_origins=[],
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(sessions.router, prefix="/api", tags=["Sessions"])
app.include_router(chat.router, prefix="/api", tags=["Chat"])
app.include_router(initiative.router, prefix="/api", tags=["Initiative"])
app.include_router(signaling.router, prefix="/api", tags=["WebRTC"])
app.include_router(events.router, prefix="/api", tags=["Events"])


# ── 异常处理器 ────────────────────────────────────────────────────────

@app.exception_handler(TavernError)
async def tavern_error_handler(request: Request, exc: TavernError) -> JSONResponse:
    """业务异常：HTTP 状态码取自异常类。"""
    if exc.status_code >= 500:
        logger.error("业务异常: %s %s -> %s", request.method, request.url.path, exc.message)
    else:
        logger.info("请求被拒绝: %s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse.from_error(exc).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务是否正常运行。

    Returns:
        包含服务状态与当前事件流连接数的 JSON 响应。
    """
    registry: ConnectionRegistry | None = getattr(request.app.state, "registry", None)
    streams = (
        sum(registry.count(sid) for sid in registry.session_ids()) if registry is not None else 0
    )
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
            "active_streams": streams,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tavern.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
