"""
pinchat.main
~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。

房间注册表、传输层和协调器在 lifespan 中各创建一次并挂载于 ``app.state``，
每次应用启动都拿到一份全新的状态。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from pinchat.api import stats, ws
from pinchat.core.config import settings
from pinchat.core.logging import get_logger, setup_logging
from pinchat.core.rate_limit import limiter
from pinchat.schemas.api_response import ApiResponse
from pinchat.services.coordinator import SessionCoordinator
from pinchat.services.registry import RoomMode, RoomRegistry
from pinchat.services.transport import WebSocketTransport

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    registry = RoomRegistry(mode=RoomMode(settings.ROOM_MODE), pair_capacity=settings.PAIR_CAPACITY)
    transport = WebSocketTransport()
    app.state.registry = registry
    app.state.transport = transport
    app.state.coordinator = SessionCoordinator(
        registry=registry,
        transport=transport,
        max_name_length=settings.MAX_NAME_LENGTH,
    )
    logger.info(
        "🚀 应用已启动 | env=%s | mode=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.ROOM_MODE,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    logger.info("👋 应用已关闭 | 剩余房间: %d", len(registry))


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="PIN 房间实时群聊中继服务",
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
        allow_methods=["GET"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(stats.router, prefix="/api", tags=["Stats"])
app.include_router(ws.router, tags=["WebSocket Chat"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

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
        包含服务状态与房间/连接数量的 JSON 响应。
    """
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "mode": settings.ROOM_MODE,
            "rooms": len(request.app.state.registry),
            "sessions": request.app.state.coordinator.session_count,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pinchat.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
