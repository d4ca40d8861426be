"""
Polytrade - polymer deal registration with WhatsApp notifications

FastAPI application entry point.
"""
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
import structlog
from fastapi import FastAPI

# Import observability modules
from polytrade.config import Settings, settings
from polytrade.logging_config import configure_logging
from polytrade.sentry_config import configure_sentry
from polytrade.middleware.logging import LoggingMiddleware
from polytrade.routes.metrics import router as metrics_router

# Import route modules
from polytrade.routes.deals import router as deals_router
from polytrade.routes.messaging import router as messaging_router

from polytrade.services.whatsapp_service import WhatsAppService

logger = structlog.get_logger()


def create_app(config: Settings | None = None, http_client: httpx.AsyncClient | None = None) -> FastAPI:
    """
    Build the application.

    The WhatsApp HTTP client, rate limiter and circuit breaker are created
    once in the lifespan and shared by every request through app.state.
    """
    config = config or settings

    # Initialize logging first
    configure_logging(debug=config.DEBUG)

    # Initialize Sentry (if SENTRY_DSN is set)
    configure_sentry(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = config
        app.state.whatsapp_service = WhatsAppService.from_settings(config, client=http_client)
        app.state.started_at = time.monotonic()
        app.state.started_at_iso = datetime.now(timezone.utc).isoformat()

        logger.info(
            "app_started",
            environment=config.ENVIRONMENT,
            messaging_enabled=config.FEATURE_WHATSAPP_MESSAGING,
            recipients=sorted(config.whatsapp_recipients),
        )
        try:
            yield
        finally:
            await app.state.whatsapp_service.aclose()
            logger.info("app_stopped")

    app = FastAPI(
        title=config.APP_NAME,
        version=config.APP_VERSION,
        description="Polymer deal registration with resilient WhatsApp notifications",
        lifespan=lifespan,
    )

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)

    app.include_router(deals_router)
    app.include_router(messaging_router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "name": config.APP_NAME,
            "version": config.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Detailed health check."""
        return {
            "status": "healthy",
            "messaging_enabled": config.FEATURE_WHATSAPP_MESSAGING,
            "circuit_breaker": app.state.whatsapp_service.circuit_breaker.state.value,
        }

    return app


app = create_app()
