"""
FastAPI application for the order lifecycle backend.

``create_app`` wires CORS, request correlation, validation error rendering,
the health probes and the v1 order router. The lifespan builds the order
service from the configured backends and releases PostgreSQL and Redis
connections on shutdown.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from orderflow.api.deps import build_order_service
from orderflow.api.v1.orders import router as orders_router
from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from orderflow.database.connection import check_database_health, close_database_connections
from orderflow.realtime.redis_feed import close_redis_change_feed, get_redis_change_feed

configure_logging()
logger = get_logger(__name__)

health_router = APIRouter(tags=["Health"])


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    logger.info(
        "Application starting",
        environment=settings.environment,
        store_backend=settings.store_backend,
        realtime_backend=settings.realtime_backend,
        version=settings.app_version,
    )
    with log_performance(logger, "application_startup"):
        app.state.order_service = await build_order_service(settings)

    yield

    app.state.order_service = None
    with log_performance(logger, "application_shutdown"):
        if settings.realtime_backend == "redis":
            await close_redis_change_feed()
        if settings.store_backend == "postgres":
            await close_database_connections()


async def correlate_requests(request: Request, call_next):
    """Bind an ``X-Request-ID`` to the request's logs and echo it back."""
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    path = request.url.path
    try:
        with log_performance(logger, "request", method=request.method, path=path):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            client_host=request.client.host if request.client else None,
        )
        return response
    finally:
        clear_context()


async def render_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 body listing the offending fields with the request id."""
    details = [
        {"type": error["type"], "loc": list(error["loc"]), "msg": error["msg"]}
        for error in exc.errors()
    ]
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        fields=[".".join(str(part) for part in detail["loc"]) for detail in details],
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": details,
            "request_id": get_request_id(),
        },
    )


@health_router.get("/health", summary="Liveness probe")
async def health_check(request: Request) -> dict[str, str]:
    settings: Settings = request.app.state.settings
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@health_router.get("/ready", summary="Readiness probe")
async def readiness_check(request: Request) -> JSONResponse:
    """
    Report whether the order service and its external backends are usable.

    Only the backends selected in settings are probed. Returns 503 until
    every check passes.
    """
    settings: Settings = request.app.state.settings
    checks = {"order_service": getattr(request.app.state, "order_service", None) is not None}
    if settings.store_backend == "postgres":
        checks["database"] = await check_database_health(max_retries=1)
    if settings.realtime_backend == "redis":
        try:
            checks["redis"] = await (await get_redis_change_feed()).health_check()
        except RedisError as e:
            logger.warning("Redis readiness check failed", error=str(e))
            checks["redis"] = False

    ready = all(checks.values())
    if not ready:
        logger.warning("Not ready", checks=checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"ready": ready, "checks": checks},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application for ``settings``."""
    settings = settings or get_settings()
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Order lifecycle orchestration API",
        lifespan=lifespan,
        debug=settings.debug,
    )
    application.state.settings = settings
    application.state.order_service = None

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    application.middleware("http")(correlate_requests)
    application.add_exception_handler(RequestValidationError, render_validation_error)

    application.include_router(health_router)
    application.include_router(orders_router, prefix=settings.api_v1_prefix)
    return application


app = create_app()
