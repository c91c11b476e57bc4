"""
Dependencies for the webhook API.

The application factory builds one WebhookServices container and stores it on
``app.state``; endpoints receive its parts through FastAPI dependencies.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from fastapi import Request

from ..persistence.database import DatabaseManager
from ..shared.config import Settings
from ..shared.security.rate_limiter import RateLimiter
from ..webhooks.emitter import WebhookEmitter
from ..webhooks.idempotency import IdempotencyStore
from ..webhooks.models import WebhookProvider
from ..webhooks.registry import WebhookRegistry
from ..webhooks.tracker import DeliveryTracker
from ..webhooks.wrapper import WebhookHandler


@dataclass
class WebhookServices:
    """Process-wide webhook components."""
    settings: Settings
    db: DatabaseManager
    registry: WebhookRegistry
    idempotency: IdempotencyStore
    tracker: DeliveryTracker
    emitter: WebhookEmitter
    rate_limiter: RateLimiter
    inbound_handlers: Dict[WebhookProvider, WebhookHandler] = field(default_factory=dict)

    def register_inbound_handler(self, provider: WebhookProvider, handler: WebhookHandler):
        """Business handler run for verified, first-seen events from a provider."""
        self.inbound_handlers[WebhookProvider(provider)] = handler


def build_services(
    settings: Settings,
    registry: Optional[WebhookRegistry] = None,
    db: Optional[DatabaseManager] = None,
) -> WebhookServices:
    """Wire the webhook components together."""
    db = db or DatabaseManager(settings=settings.database)
    registry = registry or WebhookRegistry()
    tracker = DeliveryTracker(db)

    return WebhookServices(
        settings=settings,
        db=db,
        registry=registry,
        idempotency=IdempotencyStore(db),
        tracker=tracker,
        emitter=WebhookEmitter(registry, tracker, user_agent=settings.webhooks.user_agent),
        rate_limiter=RateLimiter(
            sensitive_routes=settings.rate_limit.get_sensitive_routes(),
            violator_retention_ms=settings.rate_limit.violator_retention_seconds * 1000,
        ),
    )


def get_services(request: Request) -> WebhookServices:
    """Get the service container of the running application."""
    return request.app.state.services


def get_emitter(request: Request) -> WebhookEmitter:
    return get_services(request).emitter


def get_tracker(request: Request) -> DeliveryTracker:
    return get_services(request).tracker


def get_registry(request: Request) -> WebhookRegistry:
    return get_services(request).registry
