"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from credit_engine.api.routes import router
from credit_engine.config import settings
from credit_engine.db.migration_runner import run_migrations
from credit_engine.db.session import close_engines
from credit_engine.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from credit_engine.observability.tracing import instrument_fastapi
from credit_engine.services.engine import build_engine

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        storage_backend=settings.storage_backend,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.storage_backend == "postgres" and settings.run_migrations_on_startup:
        # Alembic's command API is synchronous
        await asyncio.to_thread(run_migrations)

    # FAIL FAST: an invalid catalog file stops startup here
    engine = build_engine(settings)
    app.state.engine = engine
    logger.info(
        "billing_engine_ready",
        storage=engine.storage,
        tiers=len(engine.catalog.current.tiers),
        models=len(engine.catalog.current.models),
    )

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await engine.close()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    sanitized_errors = [
        {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        for error in exc.errors()
    ]

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


def _route_template(request: Request) -> str:
    """Path template of the matched route (raw path when nothing matched)."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log each request and record HTTP metrics keyed by route template."""
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or str(uuid4())

    with log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_http_request(_route_template(request), request.method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.exception(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_seconds=duration,
            )
            raise

        duration = time.perf_counter() - start_time
        endpoint = _route_template(request)
        metrics.record_http_request(endpoint, request.method, response.status_code, duration)
        response.headers["X-Request-ID"] = request_id
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "request_completed",
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
            duration_seconds=round(duration, 6),
        )
        return response


# Register routes
app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "credit_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
