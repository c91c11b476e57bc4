"""
FastAPI application for the OSS Hero webhook service.

Mounts the webhook router behind the rate limiting middleware and manages the
database, delivery workers and rate limiter cleanup over the app lifespan.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from ..shared.config import Settings, get_settings
from ..shared.logging_config import initialize_logging
from ..shared.security.rate_limiter import RateLimitMiddleware, start_rate_limiter_cleanup_task
from ..webhooks.registry import WebhookRegistry
from . import webhooks
from .dependencies import build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    services = app.state.services
    settings = services.settings
    logger.info(f"Starting {settings.app_name} ({settings.environment.value})")

    await services.db.initialize(create_tables=True)

    config_path = settings.webhooks.config_path
    if config_path and not services.registry.event_types():
        loaded = WebhookRegistry.from_file(config_path)
        for event_type in loaded.event_types():
            services.registry.set_event(event_type, loaded.get(event_type))
        logger.info(f"Loaded {len(loaded.event_types())} webhook event types from {config_path}")

    await services.emitter.start_workers(settings.webhooks.delivery_workers)

    cleanup_task = None
    if settings.rate_limit.enabled:
        cleanup_task = asyncio.create_task(
            start_rate_limiter_cleanup_task(
                services.rate_limiter, settings.rate_limit.cleanup_interval_seconds
            )
        )

    yield

    logger.info(f"Shutting down {settings.app_name}")
    if cleanup_task:
        cleanup_task.cancel()
        await asyncio.gather(cleanup_task, return_exceptions=True)
    await services.emitter.stop_workers()
    await services.db.close()


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[WebhookRegistry] = None,
) -> FastAPI:
    """Create the webhook service application."""
    settings = settings or get_settings()
    services = build_services(settings, registry=registry)

    app = FastAPI(
        title=settings.app_name,
        description="Signed outbound webhooks, verified inbound webhooks and rate limiting",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.services = services

    if settings.rate_limit.enabled:
        app.add_middleware(
            RateLimitMiddleware,
            rate_limiter=services.rate_limiter,
            default_tenant=settings.rate_limit.default_tenant,
            trust_tenant_header=settings.rate_limit.trust_tenant_header,
        )

    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with consistent error format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "type": "http_error",
                    "message": exc.detail,
                    "status_code": exc.status_code
                }
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions with consistent error format."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "type": "internal_error",
                    "message": "An internal server error occurred"
                }
            }
        )

    @app.get("/health", tags=["Health"])
    async def health_check() -> Dict[str, Any]:
        """Health check endpoint."""
        database = await services.db.get_health_status()
        return {
            "status": "healthy" if database["status"] == "healthy" else "degraded",
            "version": settings.app_version,
            "components": {
                "database": database,
                "emitter": {"workers": services.emitter.get_stats()["workers"]},
                "rate_limiter": {"enabled": settings.rate_limit.enabled},
            }
        }

    return app


if __name__ == "__main__":
    initialize_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
