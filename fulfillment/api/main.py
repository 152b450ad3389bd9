"""
Main FastAPI application.

Order fulfillment API with:
- CORS configuration
- Trace id propagation (X-Trace-ID)
- Uniform error envelope for domain, provider and unexpected errors
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fulfillment import __version__
from fulfillment.config import get_settings
from fulfillment.core.errors import FulfillmentError
from fulfillment.database.connection import close_db, init_db
from fulfillment.integrations.errors import ProviderError
from fulfillment.monitoring.logging import setup_logging

from .dependencies import ServiceContainer, build_services
from .routes import (
    invoice_router,
    monitoring_router,
    payment_router,
    shipment_router,
    webhook_router,
)

TRACE_HEADER = "X-Trace-ID"

logger = structlog.get_logger(__name__)


def _error_body(request: Request, message: str, details: Any = None) -> dict[str, Any]:
    return {
        "success": False,
        "error": message,
        "details": details or [],
        "traceId": getattr(request.state, "trace_id", None),
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the service container unless one was injected, and closes what it
    built on shutdown.
    """
    settings = get_settings()
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_gateway=settings.is_test_gateway,
    )

    owns_services = app.state.services is None
    if owns_services:
        try:
            await init_db()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise
        app.state.services = build_services(settings)

    yield

    logger.info("application_shutdown")
    if owns_services:
        await app.state.services.close()
        await close_db()
        logger.info("connections_closed")


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services: Pre-built service container (tests); built at startup if None
    """
    settings = get_settings()

    app = FastAPI(
        title="Order Fulfillment Orchestrator",
        description=(
            "Post-checkout order orchestration across the payment gateway, the "
            "invoicing provider and the parcel carrier, with at-most-once steps "
            "and placeholder shipments when the carrier is down."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    app.state.services = services

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Attach a trace id to the request, its log lines and its response.

        An incoming X-Trace-ID header is reused so callers can correlate.
        """
        trace_id = request.headers.get(TRACE_HEADER) or str(uuid.uuid4())
        request.state.trace_id = trace_id
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            trace_id=trace_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers[TRACE_HEADER] = trace_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
        """Render domain and provider errors with their own status codes."""
        log = logger.error if exc.status_code >= 500 or isinstance(exc, ProviderError) else logger.warning
        log(
            "request_error",
            error=exc.message,
            error_type=type(exc).__name__,
            status_code=exc.status_code,
            provider=getattr(exc, "provider", None),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ())[1:]),
                "message": error.get("msg", ""),
            }
            for error in exc.errors()
        ]
        logger.warning("request_validation_failed", details=details)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body(request, "Invalid request", details),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        trace_id = getattr(request.state, "trace_id", None)
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            trace_id=trace_id,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, "Internal server error"),
            headers={TRACE_HEADER: trace_id} if trace_id else None,
        )

    # Include routers
    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(invoice_router)
    app.include_router(shipment_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": None if settings.is_production else "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    setup_logging()
    uvicorn.run(
        "fulfillment.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


app = create_app()


if __name__ == "__main__":
    run()
