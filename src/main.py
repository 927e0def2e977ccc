"""
Storefront order fulfillment API.

Wires the order, payment and wholesaler routers together with rate
limiting, request correlation, the error envelope shared by every route and
the health probes. The order event subscribers are registered on startup.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from src.api.v1.orders import router as orders_router
from src.api.v1.payments import router as payments_router
from src.api.v1.wholesalers import router as wholesalers_router
from src.core.config import get_settings
from src.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from src.core.security import get_security_headers
from src.database.connection import check_database_health, close_database_connections
from src.services.events import get_event_bus
from src.services.notifications.handlers import register_default_handlers

configure_logging()
logger = get_logger(__name__)
settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit_default],
    enabled=not settings.is_test,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "Order fulfillment API starting",
        environment=settings.environment,
        version=settings.app_version,
    )
    register_default_handlers(get_event_bus())

    yield

    with log_performance(logger, "application_shutdown"):
        await close_database_connections()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Storefront order fulfillment API",
    lifespan=lifespan,
    debug=settings.debug,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """
    Correlate, time and harden every request.

    The incoming X-Request-ID is reused (or generated) and echoed back;
    security headers are added unless a route already set them.
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    try:
        with log_performance(
            logger,
            "http_request",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)
    finally:
        clear_context()

    response.headers["X-Request-ID"] = request_id
    for header, value in get_security_headers().items():
        response.headers.setdefault(header, value)
    return response


def _error_response(status_code: int, code: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": {"code": code, "message": message, **extra},
            "request_id": get_request_id(),
        },
    )


def _format_validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Flatten pydantic errors to ``{field, message}`` using request field names."""
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors.append(
            {
                "field": ".".join(location) or "body",
                "message": error.get("msg", "Invalid value"),
            }
        )
    return errors


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = _format_validation_errors(exc)
    logger.warning("Request validation failed", path=request.url.path, errors=errors)

    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        "VALIDATION_ERROR",
        "Request validation failed",
        errors=errors,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected errors; clients only see a generic message."""
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error_type=type(exc).__name__,
        exc_info=exc,
    )

    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR",
        "An unexpected error occurred",
    )


def _service_info() -> dict[str, str]:
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/health", tags=["Health"])
@limiter.exempt
async def health_check() -> dict[str, str]:
    return {"status": "healthy", **_service_info()}


@app.get("/ready", tags=["Health"])
@limiter.exempt
async def readiness_check():
    """Ready only while the order database answers."""
    if not await check_database_health(max_retries=1):
        logger.warning("Readiness check failed", database="unhealthy")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "dependencies_ready": False,
                "database": "unhealthy",
                **_service_info(),
            },
        )

    return {
        "status": "ready",
        "dependencies_ready": True,
        "database": "healthy",
        **_service_info(),
    }


@app.get("/live", tags=["Health"])
@limiter.exempt
async def liveness_check() -> dict[str, str]:
    return {"status": "alive", **_service_info()}


for router in (orders_router, payments_router, wholesalers_router):
    app.include_router(router, prefix=settings.api_v1_prefix)
