"""
FastAPI application entry point.
Version: 1.0.0 (Asynchronous delivery, tracked background work, graceful drain)
"""
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import os
from typing import Any, Dict, Optional

from .config import settings
from .api.routes import chat, sessions, health, agent_callback, mock_agent
from .api.websocket import websocket_endpoint, manager
from .exceptions import PortalError
from .services.container import PortalServices, build_services
from .utils.telemetry import setup_telemetry, metrics_collector
from .utils.middleware import (
    RequestIDMiddleware,
    TimingMiddleware,
    RateLimitMiddleware,
    ErrorHandlingMiddleware
)
from .database import (
    init_db,
    cleanup_db,
    check_db_connection,
    check_tables_exist,
    get_database_info,
    get_session_factory
)


def configure_logging() -> None:
    """Configure structured logging."""
    handlers = [logging.StreamHandler()]
    if settings.is_production:
        os.makedirs("logs", exist_ok=True)
        handlers.append(logging.FileHandler('logs/app.log', mode='a'))

    logging.basicConfig(
        level=logging.INFO if not settings.debug else logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


configure_logging()

logger = logging.getLogger(__name__)


async def build_default_services() -> PortalServices:
    """Initialize storage from settings and wire the services."""
    if settings.store_backend != "sql":
        return build_services(settings)

    logger.info("Initializing database...")
    await init_db()

    if not await check_db_connection():
        raise RuntimeError("Database connection check failed")

    if not await check_tables_exist():
        raise RuntimeError("Failed to create required database tables")

    logger.info("✓ Database initialized and verified")
    return build_services(settings, session_factory=await get_session_factory())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle events.
    Initialize services on startup; drain background work on shutdown.
    """
    # === STARTUP ===
    try:
        logger.info("=" * 60)
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")
        logger.info(f"Environment: {settings.environment}")
        logger.info(f"Debug mode: {settings.debug}")
        logger.info("=" * 60)

        for warning in settings.validate_configuration():
            logger.warning(f"Configuration: {warning}")

        if getattr(app.state, "services", None) is None:
            app.state.services = await build_default_services()

        services: PortalServices = app.state.services
        await services.start()

        logger.info(f"✓ Store: {type(services.store).__name__}")
        logger.info(f"✓ Change feed: {type(services.change_feed).__name__}")
        logger.info(f"✓ Agent webhook: {settings.agent_webhook_url or 'per-bot'}")

        logger.info("=" * 60)
        logger.info("✓ Application started successfully")
        logger.info(f"Health check: http://{settings.api_host}:{settings.api_port}/health")
        logger.info("=" * 60)

    except Exception as e:
        logger.error(f"Failed to start application: {e}", exc_info=True)
        raise

    yield  # === APPLICATION RUNS HERE ===

    # === SHUTDOWN ===
    logger.info("=" * 60)
    logger.info("Shutting down application...")
    logger.info("=" * 60)

    try:
        await app.state.services.shutdown()
        logger.info("✓ Services shut down")
    except Exception as e:
        logger.error(f"Error during service shutdown: {e}", exc_info=True)

    if settings.store_backend == "sql":
        await cleanup_db()

    logger.info("=" * 60)
    logger.info("✓ Application shutdown complete")
    logger.info("=" * 60)


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(PortalError)
    async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} in request {request_id}: {exc.details}")
        else:
            logger.info(f"{type(exc).__name__} in request {request_id}: {exc.details}")

        content = exc.to_dict()
        content.setdefault("request_id", request_id)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Validation failed",
                "details": jsonable_encoder(exc.errors()),
                "request_id": getattr(request.state, "request_id", "unknown")
            }
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Handle uncaught exceptions gracefully.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.error(
            f"Unhandled exception in request {request_id}: {exc}",
            exc_info=True,
            extra={
                "path": request.url.path,
                "method": request.method,
                "client": request.client.host if request.client else "unknown"
            }
        )

        metrics_collector.record_error()

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "details": str(exc) if settings.debug else "An unexpected error occurred",
                "request_id": request_id
            }
        )


def create_app(services: Optional[PortalServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built services; when omitted the lifespan builds them
            from settings.
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Multi-tenant bot portal with asynchronous message delivery",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None
    )
    app.state.services = services

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time", "X-RateLimit-Limit"]
    )

    # Add custom middleware (order matters - applied in reverse)
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(TimingMiddleware)

    if settings.rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            calls=settings.rate_limit_requests,
            period=settings.rate_limit_period
        )

    if settings.enable_telemetry:
        setup_telemetry(app)

    register_exception_handlers(app)

    # Include API routes
    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"]
    )

    app.include_router(
        sessions.router,
        prefix=f"{settings.api_prefix}/sessions",
        tags=["Sessions"]
    )

    app.include_router(
        chat.router,
        prefix=f"{settings.api_prefix}/chat",
        tags=["Chat"]
    )

    app.include_router(
        agent_callback.router,
        prefix=f"{settings.api_prefix}/agent",
        tags=["Agent"]
    )

    if settings.enable_mock_agent:
        app.include_router(
            mock_agent.router,
            prefix=f"{settings.api_prefix}/mock-agent",
            tags=["Development"]
        )
        logger.info("Mock agent mounted")

    # Add WebSocket endpoint
    app.add_api_websocket_route(
        "/ws",
        websocket_endpoint,
        name="websocket"
    )

    # Root endpoint
    @app.get("/", tags=["Root"])
    async def root() -> Dict[str, Any]:
        """
        Root endpoint with API information and delivery status.
        """
        services: Optional[PortalServices] = app.state.services
        store_stats = {}
        delivery = {}

        if services is not None:
            try:
                store_stats = await services.store.get_stats()
            except Exception as e:
                logger.warning(f"Failed to get store stats: {e}")

            delivery = {
                "background_tasks": services.runner.active,
                "agent_circuit": services.bridge.circuit_snapshot(),
                "websocket_connections": manager.connection_count,
                "subscribers": services.change_feed.subscriber_count()
            }

        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "status": "operational",
            "endpoints": {
                "docs": "/docs" if settings.debug else "disabled",
                "health": "/health",
                "metrics": "/metrics" if settings.enable_telemetry else "disabled",
                "api": settings.api_prefix,
                "websocket": "/ws"
            },
            "store": store_stats,
            "database": get_database_info(),
            "delivery": delivery,
            "features": {
                "agent_writes_directly": settings.agent_writes_directly,
                "mock_agent": settings.enable_mock_agent,
                "change_feed": settings.change_feed_backend,
                "telemetry": settings.enable_telemetry
            },
            "metrics": metrics_collector.get_stats()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Run with uvicorn
    uvicorn.run(
        "botportal.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
        access_log=True,
        workers=1 if settings.debug else settings.api_workers
    )
