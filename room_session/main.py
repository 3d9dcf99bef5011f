"""
room_session.main
~~~~~~~~~~~~~~~~~

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

from room_session.api import rooms, ws
from room_session.api.deps import SessionRegistry
from room_session.core.config import settings
from room_session.core.errors import RoomSessionError
from room_session.core.logging import get_logger, setup_logging
from room_session.db import close_mongo, open_room_store
from room_session.db.mongo_store import MongoRoomStore
from room_session.schemas.api_response import ApiResponse
from room_session.services.maintenance import RoomSweeper
from room_session.services.profile import (
    MemoryProfileUpdater,
    MongoProfileUpdater,
    ProfileUpdater,
)
from room_session.services.session_facade import SessionFacade

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    store = await open_room_store()
    profiles: ProfileUpdater
    if isinstance(store, MongoRoomStore):
        profiles = MongoProfileUpdater(store.db, settings.USERS_COLLECTION)
    else:
        profiles = MemoryProfileUpdater()

    facade = SessionFacade.create(store, profiles)
    app.state.facade = facade
    app.state.sessions = SessionRegistry()

    sweeper = RoomSweeper(facade.repository)
    sweeper_task = asyncio.create_task(sweeper.run_forever(), name="room-sweeper")

    logger.info(
        "🚀 应用已启动 | env=%s | store=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.ROOM_STORE_BACKEND,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    sweeper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper_task
    await store.close()
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="多人语音房间会话协调 API",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

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
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(rooms.router, prefix="/api", tags=["Rooms"])
app.include_router(ws.router, tags=["WebSocket Rooms"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(RoomSessionError)
async def room_session_exception_handler(
    request: Request, exc: RoomSessionError,
) -> JSONResponse:
    """路由中未被门面吸收的业务错误，按错误码返回统一应答体。"""
    logger.info("业务错误: %s %s -> %s", request.method, request.url, exc.code)
    response = ApiResponse.from_error(exc)
    return JSONResponse(status_code=200, content=response.model_dump())


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
    """验证服务是否正常运行。"""
    sessions: SessionRegistry = request.app.state.sessions
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "store": settings.ROOM_STORE_BACKEND,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
            "sessions": len(sessions),
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "room_session.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
