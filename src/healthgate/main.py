"""
Main FastAPI application entry point.

This module sets up the FastAPI app with the request gate, routes, and lifecycle events.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.healthgate.api import admin_router, healthz_router, metrics_router
from src.healthgate.config import get_settings, Settings
from src.healthgate.core.audit import AuditLogger
from src.healthgate.core.exceptions import HealthGateException, InternalError
from src.healthgate.core.keystore import ApiKeyStore, build_api_key_store
from src.healthgate.core.metrics import GateMetrics
from src.healthgate.core.pipeline import RequestGate, RequestGateMiddleware


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the application."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    # Silence the verbose watchfiles logger
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_lifespan_handler(settings: Settings, store: ApiKeyStore) -> Any:
    """Create a lifespan handler with access to settings and the key store."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Prepares the API key store on startup and releases it on shutdown.
        """
        logger = structlog.get_logger(__name__)
        logger.info(
            "Starting HealthGate service",
            version=app.version,
            production=settings.security.production,
        )

        await store.start()

        try:
            logger.info("HealthGate service started successfully")
            yield
        finally:
            logger.info("Shutting down HealthGate service")
            await store.close()
            logger.info("HealthGate service shutdown complete")

    return lifespan


def create_app(
    settings: Optional[Settings] = None,
    api_key_store: Optional[ApiKeyStore] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Every collaborator can be injected; missing ones are built from settings.
    """
    if settings is None:
        settings = get_settings()

    configure_logging(settings.log_level)

    store = api_key_store or build_api_key_store(
        settings.security.database_url,
        settings.security.api_keys,
    )
    metrics = GateMetrics()
    gate = RequestGate(settings, store, audit_logger=audit_logger, metrics=metrics)

    app = FastAPI(
        title="HealthGate",
        description="Request defense and compliance gate for health-data APIs",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(settings, store),
    )

    app.state.settings = settings
    app.state.api_key_store = store
    app.state.metrics = metrics
    app.state.gate = gate

    # Last added runs first: the gate sees every request before CORS does
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestGateMiddleware, gate=gate)

    register_exception_handlers(app)

    app.include_router(healthz_router, tags=["health"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(admin_router, tags=["admin"])

    return app


def request_log(request: Request) -> Any:
    """The request's sanitizing logger; the module logger outside the gate."""
    context = getattr(request.state, "gate", None)
    if context is not None:
        return context.log
    return structlog.get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Render gate exceptions raised inside routes in the rejection shape."""

    @app.exception_handler(HealthGateException)
    async def healthgate_exception_handler(request: Request, exc: HealthGateException) -> JSONResponse:
        """Handle custom HealthGate exceptions."""
        request_log(request).error(
            "HealthGate exception occurred",
            error=str(exc),
            status_code=exc.status_code,
        )
        return exc.to_response()

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions without exposing internals."""
        request_log(request).error(
            "Unexpected exception occurred",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return InternalError().to_response()


# Create the app instance
app = create_app()


@app.get("/", include_in_schema=False)
async def root() -> Dict[str, str]:
    """Root endpoint with service information."""
    return {
        "service": "HealthGate",
        "version": app.version,
        "description": "Request defense and compliance gate for health-data APIs",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.healthgate.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )
