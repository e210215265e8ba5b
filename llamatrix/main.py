"""
llamatrix.main
~~~~~~~~~~~~~~

应用入口 —— FastAPI 生命周期中登录 Matrix、启动房间会话管理器与同步循环，
同时提供一个只读为主的状态接口。
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from llamatrix.api import room
from llamatrix.chat.matrix_client import MatrixChatClient
from llamatrix.core.config import settings
from llamatrix.core.logging import get_logger, setup_logging
from llamatrix.llm.ollama_client import OllamaClient
from llamatrix.schemas.api_response import ApiResponse
from llamatrix.services.supervisor import RoomSessionSupervisor

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


def _log_task_exit(task: asyncio.Task) -> None:
    """后台任务意外退出时记录原因。"""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("后台任务异常退出: %s -> %s", task.get_name(), exc, exc_info=exc)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """登录失败属于启动期致命错误，直接向上抛出。"""
    # ── 启动 ──
    chat = MatrixChatClient()
    inference = OllamaClient()
    await chat.login()
    await chat.start()

    supervisor = RoomSessionSupervisor(chat, inference)
    supervisor.adopt(chat.joined_rooms())
    app.state.supervisor = supervisor

    tasks = [
        asyncio.create_task(supervisor.run(), name="supervisor"),
        asyncio.create_task(chat.sync_forever(), name="matrix-sync"),
    ]
    for task in tasks:
        task.add_done_callback(_log_task_exit)

    logger.info(
        "🚀 机器人已启动 | user=%s | model=%s | backend=%s | env=%s",
        chat.user_id,
        settings.MODEL,
        settings.BACKEND_URL,
        settings.ENVIRONMENT,
    )
    try:
        yield
    finally:
        # ── 关闭 ──
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await supervisor.shutdown()
        await inference.aclose()
        await chat.close()
        logger.info("👋 机器人已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="Matrix ⇄ Ollama 桥接机器人状态接口",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

app.include_router(room.router, prefix="/api", tags=["Rooms"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """HTTP 错误（如 404）同样包装为 ApiResponse.fail() 格式。"""
    response = ApiResponse.fail(msg=str(exc.detail), code=exc.status_code, data=None)
    return JSONResponse(
        status_code=exc.status_code,
        content=response.model_dump(),
        headers=getattr(exc, "headers", None),
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
    """验证服务是否正常运行。"""
    supervisor: RoomSessionSupervisor | None = getattr(request.app.state, "supervisor", None)
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "model": settings.MODEL,
            "rooms": len(supervisor.list_rooms()) if supervisor is not None else 0,
        },
    )


def run() -> None:
    import uvicorn

    uvicorn.run(
        "llamatrix.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,
        log_level=settings.effective_log_level.lower(),
    )


if __name__ == "__main__":
    run()
