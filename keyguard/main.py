"""
Main Application - FastAPI application setup.

`app` is built once at import; uvicorn serves `keyguard.main:app`.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from structlog import get_logger

from keyguard.api.admin_routes import router as admin_router
from keyguard.api.routes import router
from keyguard.config import settings
from keyguard.db.migration_runner import run_migrations
from keyguard.db.session import close_engines
from keyguard.exceptions import InfrastructureError
from keyguard.observability import log_context, metrics, setup_logging, setup_tracing
from keyguard.observability.tracing import instrument_fastapi

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "application_starting",
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        run_migrations=settings.run_migrations_on_startup,
    )
    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    yield

    await close_engines()
    logger.info("application_stopped")


def _route_template(request: Request) -> str:
    """Matched route path, so resource ids do not become metric labels."""
    return getattr(request.scope.get("route"), "path", "unmatched")


# ============================================================================
# Exception handlers
# ============================================================================


async def on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 listing field locations only; submitted values are never echoed."""
    errors = [
        {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    logger.warning("validation_error", route=_route_template(request), errors=errors)
    return JSONResponse(status_code=422, content={"detail": errors})


async def on_infrastructure_error(request: Request, exc: InfrastructureError) -> JSONResponse:
    """Storage failures are retryable; internal details stay in the log."""
    route = _route_template(request)
    metrics.record_error(type(exc).__name__, route)
    logger.error(
        "infrastructure_error", route=route, error=str(exc), error_type=type(exc).__name__
    )
    return JSONResponse(
        status_code=503,
        content={"error": "service_unavailable", "detail": "Storage temporarily unavailable"},
        headers={"Retry-After": "1"},
    )


# ============================================================================
# Request middleware
# ============================================================================


async def observe_request(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Time the request, bind X-Request-ID to its log lines and count it."""
    started = time.perf_counter()
    method = request.method
    in_progress = metrics.http_requests_in_progress.labels(endpoint="all", method=method)

    with log_context(request_id=request.headers.get("X-Request-ID", "unknown")):
        in_progress.inc()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            metrics.record_error(type(e).__name__, "http_request")
            logger.exception("request_failed", method=method, route=_route_template(request))
            raise
        finally:
            in_progress.dec()
            duration = time.perf_counter() - started
            metrics.record_http_request(_route_template(request), method, status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=status_code,
            duration_seconds=round(duration, 6),
        )
        return response


# ============================================================================
# Application
# ============================================================================


async def root() -> dict[str, str]:
    return {"service": settings.api_title, "version": settings.api_version, "status": "running"}


async def metrics_endpoint() -> Response:
    """Prometheus text exposition."""
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled", status_code=404)
    return PlainTextResponse(generate_latest())


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description=settings.api_description,
        lifespan=lifespan,
    )
    application.add_exception_handler(RequestValidationError, on_validation_error)
    application.add_exception_handler(InfrastructureError, on_infrastructure_error)
    application.middleware("http")(observe_request)

    application.include_router(router)  # Access, credential, resource and audit routes
    application.include_router(admin_router)  # Issuance, revocation and guard overrides
    application.add_api_route("/", root, methods=["GET"])
    application.add_api_route("/metrics", metrics_endpoint, methods=["GET"])

    setup_tracing()
    instrument_fastapi(application)
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "keyguard.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
