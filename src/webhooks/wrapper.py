"""
Inbound webhook security wrapper.

Runs a business handler only for requests that carry a valid signature, a
well-formed payload, and an event that has not been processed before:

    verify -> parse -> validate -> idempotency -> handler

Outcomes map to HTTP status codes: 401 for verification failures, 400 for
malformed payloads, 200 for processed and duplicate events, 500 when the
handler raises.
"""

import inspect
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..shared.logging_config import CorrelationContext, get_logger
from .idempotency import IdempotencyStore
from .models import (
    InboundRequest, VerificationResult, WebhookProvider, WebhookResponse, WebhookSecurityConfig
)
from .security import STRIPE_SIGNATURE_HEADER, WebhookSecurity
from .validation import WebhookValidator

WebhookHandler = Callable[[Dict[str, Any], InboundRequest], Union[Any, Awaitable[Any]]]


class WebhookSecurityWrapper:
    """Composes verification, validation and idempotency around a handler."""

    def __init__(self, config: WebhookSecurityConfig, store: Optional[IdempotencyStore] = None):
        self.config = config
        self.store = store
        self.logger = get_logger(__name__, 'webhook_security')

    def verify(self, request: InboundRequest) -> VerificationResult:
        """Verify the request signature in the provider's format."""
        if self.config.provider == WebhookProvider.STRIPE:
            return WebhookSecurity.verify_stripe(
                request.body,
                request.get_header(STRIPE_SIGNATURE_HEADER),
                self.config.secret,
                tolerance_seconds=self.config.tolerance_seconds,
            )

        return WebhookSecurity.verify(
            request.body,
            request.get_header(self.config.signature_header),
            self.config.secret,
            prefix=self.config.signature_prefix,
        )

    async def handle(self, request: InboundRequest, handler: WebhookHandler) -> WebhookResponse:
        """Process an inbound webhook request."""
        with CorrelationContext(provider=self.config.provider.value):
            return await self._handle(request, handler)

    async def _handle(self, request: InboundRequest, handler: WebhookHandler) -> WebhookResponse:
        provider = self.config.provider.value

        verification = self.verify(request)
        if not verification.is_valid:
            self.logger.warning(
                f"Webhook verification failed: {verification.error}",
                operation="verify",
                provider=provider,
                source_ip=request.source_ip,
            )
            return WebhookResponse(status_code=401, body={"error": verification.error})

        try:
            payload = json.loads(request.body)
        except ValueError:
            return WebhookResponse(status_code=400, body={"error": "Invalid JSON payload"})

        if not WebhookValidator.is_source_ip_allowed(request.source_ip, self.config.allowed_ips):
            self.logger.warning(
                "Webhook from disallowed source address",
                operation="validate",
                provider=provider,
                source_ip=request.source_ip,
            )
            return WebhookResponse(status_code=400, body={"error": "Source IP not allowed"})

        field_errors = WebhookValidator.validate_required_fields(payload, self.config.required_fields)
        if field_errors:
            return WebhookResponse(
                status_code=400,
                body={"error": "Invalid payload", "details": field_errors},
            )

        marked_event_id = None
        idempotency = self.config.idempotency_config()
        if self.config.enable_idempotency and self.store is not None:
            check = await self.store.check_and_mark_processed(request, idempotency, payload=payload)
            if check.was_processed:
                return WebhookResponse(status_code=200, body={
                    "received": True,
                    "duplicate": True,
                    "event_id": check.event_id,
                    "processed_at": check.processed_at.isoformat() if check.processed_at else None,
                })
            marked_event_id = check.event_id

        try:
            result = handler(payload, request)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            self.logger.exception(
                "Webhook handler failed",
                operation="handle",
                provider=provider,
                event_id=marked_event_id,
            )
            if marked_event_id:
                # Let the provider's retry run the handler again
                await self.store.release(marked_event_id, idempotency.namespace)
            return WebhookResponse(status_code=500, body={"error": "Internal server error"})

        self.logger.info(
            "Webhook processed",
            operation="handle",
            provider=provider,
            event_id=marked_event_id,
        )
        return WebhookResponse(status_code=200, body={"received": True, "result": result})
