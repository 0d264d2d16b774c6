"""
FastAPI HTTP API server for skillhost.

集成在 `skillhost serve` 中，提供：
- Health check
- Skills listing / catalog / references / reload
- Match & dispatch

默认端口：18910
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..engine import DispatchEngine
from ..errors import ErrorType, SkillError
from .routes import dispatch, health, skills

logger = logging.getLogger(__name__)

API_HOST = "127.0.0.1"
API_PORT = 18910

_STATUS_BY_ERROR_TYPE = {
    ErrorType.NOT_FOUND: 404,
    ErrorType.VALIDATION: 422,
    ErrorType.REGISTRY_UNAVAILABLE: 503,
    ErrorType.TIMEOUT: 504,
}


def create_app(engine: DispatchEngine | None = None, manage_engine: bool = True) -> FastAPI:
    """Create the FastAPI application with all routes mounted.

    Args:
        engine: 分发引擎，None 时按全局配置创建
        manage_engine: 是否在应用启动/关闭时启动/停止引擎
    """
    from skillhost import __version__

    engine = engine or DispatchEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_engine:
            await engine.start()
        try:
            yield
        finally:
            if manage_engine:
                await engine.stop()

    app = FastAPI(
        title="skillhost API",
        description="Skill registry and dispatch engine",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = engine

    @app.exception_handler(SkillError)
    async def skill_error_handler(request: Request, exc: SkillError):
        status = _STATUS_BY_ERROR_TYPE.get(exc.error_type, 500)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content={"error": exc.to_dict()})

    app.include_router(health.router)
    app.include_router(skills.router)
    app.include_router(dispatch.router)

    @app.get("/")
    async def root():
        return {
            "service": "skillhost",
            "api_version": "1.0.0",
            "status": "running",
        }

    return app


async def start_api_server(
    engine: DispatchEngine,
    host: str = API_HOST,
    port: int = API_PORT,
) -> asyncio.Task:
    """
    Start the HTTP API server as a background asyncio task.

    引擎的生命周期由调用方管理（manage_engine=False）。
    Returns the server task for later cancellation.
    """
    import uvicorn

    app = create_app(engine, manage_engine=False)
    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
        log_config=None,  # 禁止 uvicorn 调用 dictConfig 覆盖根日志器
    )
    server = uvicorn.Server(config)

    async def _run():
        try:
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server shutting down")
        except Exception as e:
            logger.error(f"API server error: {e}", exc_info=True)

    task = asyncio.create_task(_run())
    logger.info(f"HTTP API server starting on http://{host}:{port}")
    return task
