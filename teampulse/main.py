"""
TeamPulse analytics service.

Serves rollup-backed analytics queries and the aggregation operator
endpoints. The aggregation engine (recompute worker plus watermark sweep)
lives on ``app.state.engine`` for the lifetime of the process.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from teampulse import __version__
from teampulse.config import Settings, get_settings
from teampulse.engine import AggregationEngine, InvalidQueryError
from teampulse.routers import aggregation, analytics
from teampulse.storage import StorageError, get_storage
from teampulse.utils.logging import configure_logging, get_logger

REQUEST_ID_HEADER = "X-Request-ID"
API_PREFIX = "/api/v1"

configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Start the engine's background threads for the life of the app.

    An engine injected through create_app() is used as-is; otherwise one is
    built over the configured DuckDB store.
    """
    settings: Settings = app.state.settings
    engine: Optional[AggregationEngine] = getattr(app.state, "engine", None)
    if engine is None:
        engine = AggregationEngine(storage=get_storage(), settings=settings)
        app.state.engine = engine

    engine.start()
    logger.info(
        "teampulse_started",
        version=app.version,
        use_rollups=settings.use_rollups,
        shadow_reads=settings.enable_shadow_reads,
        sweep_enabled=settings.sweep_enabled,
    )
    try:
        yield
    finally:
        engine.stop(drain=True)
        logger.info("teampulse_stopped")


def _error_body(message: str, request_id: Optional[str]) -> dict:
    return {"success": False, "error": message, "request_id": request_id}


def _install_error_handlers(app: FastAPI) -> None:
    """Map engine errors that escape a route onto HTTP responses."""

    @app.exception_handler(InvalidQueryError)
    async def invalid_query_handler(request: Request, exc: InvalidQueryError):
        return JSONResponse(
            status_code=400,
            content=_error_body(str(exc), getattr(request.state, "request_id", None)),
        )

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("storage_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=503,
            content=_error_body(
                "Analytics store unavailable", getattr(request.state, "request_id", None)
            ),
        )


def _install_request_tracing(app: FastAPI) -> None:
    """Tag each request with an id, echo it back and log the timing."""

    @app.middleware("http")
    async def trace_request(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id, method=request.method, path=request.url.path
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception("request_crashed", error=str(e))
            return JSONResponse(
                status_code=500,
                content=_error_body("Internal server error", request_id),
                headers={REQUEST_ID_HEADER: request_id},
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_served",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response


def create_app(
    engine: Optional[AggregationEngine] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        engine: Pre-built engine to serve; built in the lifespan otherwise
        settings: Settings override (defaults to get_settings())
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="TeamPulse Analytics API",
        description="Incremental analytics aggregation for team engagement metrics",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if engine is not None:
        app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    _install_request_tracing(app)
    _install_error_handlers(app)

    @app.get("/health", tags=["System"])
    async def health(request: Request):
        """Liveness check; also reports whether the sweep thread is up."""
        current = getattr(request.app.state, "engine", None)
        return {
            "status": "healthy",
            "version": app.version,
            "sweep_running": bool(current and current.scheduler.running),
        }

    app.include_router(analytics.router, prefix=f"{API_PREFIX}/organizations", tags=["Analytics"])
    app.include_router(aggregation.router, prefix=f"{API_PREFIX}/aggregation", tags=["Aggregation"])
    return app


app = create_app()


def run() -> None:
    """Run the service under uvicorn with the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "teampulse.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
