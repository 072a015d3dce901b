"""
FastAPI application factory
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import EngineSettings
from ..exceptions import EngineError, RateLimited, ValidationError
from ..runtime import EngineRuntime, open_runtime
from .middleware import RequestLoggingMiddleware
from .routers import executions, monitoring, schedules, webhooks, workflows


logger = logging.getLogger(__name__)


def create_app(runtime: Optional[EngineRuntime] = None,
               settings: Optional[EngineSettings] = None) -> FastAPI:
    """
    Build the HTTP application

    A prebuilt ``runtime`` is used as is and left open on shutdown; otherwise
    the lifespan opens one from ``settings`` (or the environment) and closes it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting process engine API...")
        owned = runtime is None
        app.state.runtime = runtime or await open_runtime(settings)
        if not owned:
            await app.state.runtime.engine.start()
        logger.info("Process engine API started")

        yield

        logger.info("Shutting down process engine API...")
        if owned:
            await app.state.runtime.close()
        else:
            await app.state.runtime.engine.drain()
        logger.info("Process engine API shut down")

    app = FastAPI(
        title="Low-code Process Engine API",
        description="Workflow execution, approvals, schedules and webhooks",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])
    app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
    app.include_router(schedules.router, prefix="/api/v1/schedules", tags=["schedules"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        if exc.http_status >= 500:
            logger.error(f"{exc.kind}: {exc.message}", extra={"errorKind": exc.kind})
        content = exc.to_dict()
        content = {"error": content.pop("kind"), **content}
        if isinstance(exc, ValidationError) and exc.errors:
            content["errors"] = exc.errors
        headers = {}
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            headers["Retry-After"] = str(max(1, int(exc.retry_after + 0.999)))
        return JSONResponse(status_code=exc.http_status, content=content, headers=headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalError",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None),
            },
        )

    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": "Low-code Process Engine API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/monitoring/health",
        }

    return app
