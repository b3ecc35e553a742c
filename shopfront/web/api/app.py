"""FastAPI application setup for the shopfront API.

This module creates and configures the FastAPI application with lifespan
management (database, logging and the optional draw poller), request ids,
error handling and routing.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shopfront.shared.config import get_settings
from shopfront.shared.database import init_database, close_database
from shopfront.shared.logging import setup_logging
from shopfront.web.api.routers.groups import router as groups_router
from shopfront.web.api.routers.lottery import router as lottery_router
from shopfront.web.api.routers.me import router as me_router
from shopfront.web.api.routers.points import router as points_router
from shopfront.web.api.schemas import (
    ErrorResponse,
    ValidationErrorResponse,
    ErrorDetail,
)
from shopfront.web.crud import (
    CapacityExceededError,
    ConflictError,
    ConsistencyError,
    DatabaseOperationError,
    InsufficientPointsError,
    NotFoundError,
    ValidationError,
)
from shopfront.web.scheduler import DrawPoller

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage FastAPI application lifespan.

    Initializes logging and the database on startup, starts the draw poller
    when an interval is configured, and tears both down on shutdown.

    Args:
        app: FastAPI application instance

    Yields:
        None: Control to the application
    """
    # Startup
    settings = get_settings()
    setup_logging(settings)

    poller: Optional[DrawPoller] = None
    try:
        await init_database()

        # Store settings in app state for access in dependencies
        app.state.settings = settings

        if settings.lottery_poll_interval_seconds > 0:
            poller = DrawPoller(settings.lottery_poll_interval_seconds)
            poller.start()

        yield

    finally:
        # Cleanup
        if poller is not None:
            await poller.stop()
        await close_database()


# Get settings for configuration
settings = get_settings()

if settings.api_docs_enabled:
    docs_url = "/docs"
    redoc_url = "/redoc"
    openapi_url = "/openapi.json"
else:
    docs_url = None
    redoc_url = None
    openapi_url = None

# Create FastAPI application
api = FastAPI(
    title="Shopfront API",
    description="Group-buy campaigns, points lotteries and the points ledger",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url=docs_url,
    redoc_url=redoc_url,
    openapi_url=openapi_url,
)


@api.middleware("http")
async def add_request_id_middleware(request: Request, call_next):
    """Add request ID to request state for tracking."""
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id

    response = await call_next(request)

    response.headers["x-request-id"] = request_id
    return response


# Add CORS middleware for development
if settings.is_development:
    api.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _error_response(
    request: Request,
    status_code: int,
    detail: str,
    error_type: str,
    context: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))
    response = ErrorResponse(
        detail=detail,
        type=error_type,
        timestamp=datetime.now(timezone.utc),
        request_id=request_id,
        context=context,
    )
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


def _log_extra(request: Request, exc: Exception) -> Dict[str, Any]:
    return {
        "request_id": getattr(request.state, "request_id", None),
        "url": str(request.url),
        "method": request.method,
        "error": str(exc),
    }


# Exception handlers
@api.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors.

    Args:
        request: FastAPI request object
        exc: Validation exception

    Returns:
        JSONResponse: Formatted validation error response
    """
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    # Convert Pydantic errors to our format
    errors = []
    for error in exc.errors():
        field_path = " -> ".join(str(loc) for loc in error["loc"])
        errors.append(
            ErrorDetail(code=error["type"], message=error["msg"], field=field_path)
        )

    logger.warning(
        "Validation error",
        extra={
            "request_id": request_id,
            "url": str(request.url),
            "method": request.method,
            "errors": [error.model_dump() for error in errors],
        },
    )

    response = ValidationErrorResponse(
        detail="Request validation failed",
        type="validation_error",
        errors=errors,
        timestamp=datetime.now(timezone.utc),
        request_id=request_id,
    )

    return JSONResponse(status_code=422, content=response.model_dump(mode="json"))


@api.exception_handler(NotFoundError)
async def not_found_exception_handler(
    request: Request, exc: NotFoundError
) -> JSONResponse:
    """Handle NotFoundError exceptions with a 404."""
    logger.info("Resource not found", extra=_log_extra(request, exc))
    return _error_response(request, 404, str(exc), "not_found_error")


@api.exception_handler(ValidationError)
async def business_validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """Handle business-rule validation failures with a 400."""
    logger.info("Business validation error", extra=_log_extra(request, exc))
    return _error_response(request, 400, str(exc), "validation_error")


@api.exception_handler(CapacityExceededError)
async def capacity_exception_handler(
    request: Request, exc: CapacityExceededError
) -> JSONResponse:
    """Handle capacity violations with a 409 carrying needed/available."""
    logger.info("Capacity exceeded", extra=_log_extra(request, exc))
    return _error_response(
        request,
        409,
        str(exc),
        "capacity_exceeded",
        context={"needed": exc.needed, "available": exc.available},
    )


@api.exception_handler(InsufficientPointsError)
async def insufficient_points_exception_handler(
    request: Request, exc: InsufficientPointsError
) -> JSONResponse:
    """Handle spends above the balance with a 409 carrying required/available."""
    logger.info("Insufficient points", extra=_log_extra(request, exc))
    return _error_response(
        request,
        409,
        str(exc),
        "insufficient_points",
        context={"required": exc.required, "available": exc.available},
    )


@api.exception_handler(ConflictError)
async def conflict_exception_handler(
    request: Request, exc: ConflictError
) -> JSONResponse:
    """Handle ConflictError exceptions with a 409."""
    logger.warning("Conflict error", extra=_log_extra(request, exc))
    return _error_response(request, 409, str(exc), "conflict_error")


@api.exception_handler(ConsistencyError)
async def consistency_exception_handler(
    request: Request, exc: ConsistencyError
) -> JSONResponse:
    """Handle writes the store silently rejected.

    Reported separately from generic failures since it points at a
    permission or consistency problem in the database.
    """
    logger.error(f"Consistency error: {exc}", extra=_log_extra(request, exc))
    return _error_response(request, 500, str(exc), "consistency_error")


@api.exception_handler(DatabaseOperationError)
async def database_exception_handler(
    request: Request, exc: DatabaseOperationError
) -> JSONResponse:
    """Handle DatabaseOperationError exceptions.

    Args:
        request: FastAPI request object
        exc: DatabaseOperationError exception

    Returns:
        JSONResponse: 500 error response
    """
    logger.error(f"Database operation error: {exc}", extra=_log_extra(request, exc))

    # Don't expose internal database errors in production
    if settings.verbose_errors_enabled and settings.is_development:
        detail = f"Database error: {str(exc)}"
    else:
        detail = "Internal server error"

    return _error_response(request, 500, detail, "database_error")


@api.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions globally.

    Args:
        request: FastAPI request object
        exc: Exception that was raised

    Returns:
        JSONResponse: Error response
    """
    # Log the full exception with traceback
    logger.exception(
        "Unhandled exception",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "url": str(request.url),
            "method": request.method,
            "exception_type": type(exc).__name__,
        },
    )

    # Don't expose internal error details in production
    if settings.verbose_errors_enabled and settings.is_development:
        detail = f"Internal server error: {str(exc)}"
    else:
        detail = "Internal server error"

    return _error_response(request, 500, detail, "internal_error")


# Include routers
api.include_router(groups_router, prefix="/api")

api.include_router(lottery_router, prefix="/api")

api.include_router(points_router, prefix="/api")

api.include_router(me_router, prefix="/api")


# Health check endpoint
@api.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint for monitoring.

    Returns:
        dict: Health status
    """
    return {"status": "healthy", "version": API_VERSION}
