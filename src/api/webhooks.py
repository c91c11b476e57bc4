"""
Webhook API endpoints.

Inbound provider webhooks, outbound emission and endpoint testing, registry
management, and the delivery tracker views.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..shared.metrics_collector import get_metrics_collector
from ..webhooks.emitter import WebhookEmitter
from ..webhooks.models import (
    DeliveryMetrics, ErrorAnalysisEntry, EventMetadata, InboundRequest, WebhookDelivery,
    WebhookEmissionResult, WebhookEndpointConfig, WebhookEvent, WebhookProvider,
    WebhookSecurityConfig
)
from ..webhooks.registry import WebhookRegistry
from ..webhooks.tracker import DeliveryTracker
from ..webhooks.validation import WebhookValidator
from ..webhooks.wrapper import WebhookSecurityWrapper
from .dependencies import WebhookServices, get_emitter, get_registry, get_services, get_tracker

logger = logging.getLogger(__name__)
router = APIRouter()


# Request/Response models
class EmitRequest(BaseModel):
    """Request model for emitting an event."""
    type: str
    data: Dict[str, Any] = {}
    metadata: Optional[EventMetadata] = None
    background: bool = False


class TestWebhookResponse(BaseModel):
    """Response model for webhook test."""
    success: bool
    message: str
    duration_ms: Optional[int] = None


class CleanupResponse(BaseModel):
    deleted: int
    older_than_days: int


def _acknowledge(payload: Dict[str, Any], request: InboundRequest) -> Dict[str, Any]:
    """Default inbound handler when no business handler is registered."""
    return {"acknowledged": True}


@router.post("/inbound/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    services: WebhookServices = Depends(get_services)
):
    """Verify and process an inbound provider webhook."""
    try:
        provider_type = WebhookProvider(provider)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown webhook provider: {provider}"
        )

    settings = services.settings.webhooks
    wrapper = WebhookSecurityWrapper(
        WebhookSecurityConfig(
            provider=provider_type,
            secret=settings.secret_for(provider_type.value),
            signature_header=settings.generic_signature_header,
            tolerance_seconds=settings.stripe_tolerance_seconds,
            ttl_seconds=settings.idempotency_ttl_seconds,
        ),
        services.idempotency,
    )

    raw_body = await request.body()
    inbound = InboundRequest(
        body=raw_body.decode("utf-8", errors="replace"),
        headers=dict(request.headers),
        source_ip=request.client.host if request.client else None,
    )

    handler = services.inbound_handlers.get(provider_type, _acknowledge)
    response = await wrapper.handle(inbound, handler)
    return JSONResponse(status_code=response.status_code, content=response.body)


@router.post("/emit", response_model=WebhookEmissionResult)
async def emit_event(
    request: EmitRequest,
    emitter: WebhookEmitter = Depends(get_emitter)
):
    """Emit an event to its configured endpoints."""
    event = WebhookEvent(type=request.type, data=request.data, metadata=request.metadata)

    is_valid, errors = WebhookValidator.validate_event(event)
    if not is_valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=errors)

    if request.background:
        emitter.enqueue(event)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"queued": True, "event_type": event.type}
        )

    return await emitter.emit(event)


@router.post("/test", response_model=TestWebhookResponse)
async def test_webhook(
    endpoint: WebhookEndpointConfig,
    emitter: WebhookEmitter = Depends(get_emitter)
):
    """Send a single test delivery to an endpoint."""
    is_valid, errors = WebhookValidator.validate_endpoint(endpoint)
    if not is_valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=errors)

    start_time = datetime.utcnow()
    success, message = await emitter.test_endpoint(endpoint)
    duration_ms = int((datetime.utcnow() - start_time).total_seconds() * 1000)

    return TestWebhookResponse(success=success, message=message, duration_ms=duration_ms)


@router.get("/events")
async def list_event_types(registry: WebhookRegistry = Depends(get_registry)):
    """List configured event types with secrets masked."""
    return {"events": registry.to_dict()}


@router.post("/events/{event_type}/endpoints", status_code=status.HTTP_201_CREATED)
async def register_endpoint(
    event_type: str,
    endpoint: WebhookEndpointConfig,
    registry: WebhookRegistry = Depends(get_registry)
):
    """Register an endpoint for an event type."""
    type_error = WebhookValidator.validate_event_type(event_type)
    if type_error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=type_error)

    is_valid, errors = WebhookValidator.validate_endpoint(endpoint)
    if not is_valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=errors)

    if not registry.register_endpoint(event_type, endpoint):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Endpoint already registered for this event type"
        )

    return {"event_type": event_type, "url": endpoint.url, "registered": True}


@router.delete("/events/{event_type}/endpoints", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_endpoint(
    event_type: str,
    url: str = Query(...),
    registry: WebhookRegistry = Depends(get_registry)
):
    """Remove an endpoint from an event type."""
    if not registry.unregister_endpoint(event_type, url):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook endpoint not found"
        )


@router.get("/deliveries", response_model=List[WebhookDelivery])
async def list_deliveries(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    event_type: Optional[str] = None,
    endpoint: Optional[str] = None,
    success: Optional[bool] = None,
    tracker: DeliveryTracker = Depends(get_tracker)
):
    """Most recent deliveries first."""
    return await tracker.get_recent_deliveries(
        limit=limit, offset=offset, event_type=event_type, endpoint=endpoint, success=success
    )


@router.get("/deliveries/metrics", response_model=DeliveryMetrics)
async def delivery_metrics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    event_type: Optional[str] = None,
    endpoint: Optional[str] = None,
    tracker: DeliveryTracker = Depends(get_tracker)
):
    """Aggregate delivery metrics."""
    return await tracker.get_metrics(start_date, end_date, event_type, endpoint)


@router.get("/deliveries/errors", response_model=List[ErrorAnalysisEntry])
async def delivery_errors(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    event_type: Optional[str] = None,
    endpoint: Optional[str] = None,
    tracker: DeliveryTracker = Depends(get_tracker)
):
    """Failed deliveries grouped by error message."""
    return await tracker.get_error_analysis(start_date, end_date, event_type, endpoint)


@router.post("/deliveries/cleanup", response_model=CleanupResponse)
async def cleanup_deliveries(
    older_than_days: Optional[int] = Query(None, ge=1),
    services: WebhookServices = Depends(get_services)
):
    """Delete delivery rows older than the retention period."""
    days = older_than_days or services.settings.webhooks.delivery_retention_days
    deleted = await services.tracker.cleanup_old_records(days)
    return CleanupResponse(deleted=deleted, older_than_days=days)


@router.get("/stats")
async def webhook_stats(services: WebhookServices = Depends(get_services)):
    """Emitter, rate limiter and metric counters."""
    return {
        "emitter": services.emitter.get_stats(),
        "rate_limiter": services.rate_limiter.get_stats(),
        "event_types": services.registry.event_types(),
        "metrics": get_metrics_collector().get_all_metrics(),
    }
