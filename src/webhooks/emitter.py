"""
Webhook emitter.

Builds the outbound payload for an event, signs it per endpoint, POSTs to
every configured endpoint in parallel, retries failures with exponential
backoff and jitter, and records each terminal outcome in the delivery tracker.
"""

import asyncio
import json
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp
from aiohttp import ClientError, ClientTimeout

from ..shared.logging_config import get_logger
from ..shared.metrics_collector import get_metrics_collector
from .models import (
    DeliveryErrorCode, EndpointDeliveryResult, PayloadConfig, SignOptions, WebhookDelivery,
    WebhookEmissionResult, WebhookEndpointConfig, WebhookEvent
)
from .registry import WebhookRegistry
from .security import USER_AGENT, WebhookConfigurationError, WebhookSecurity
from .tracker import DeliveryTracker
from .validation import WebhookValidator

TEST_EVENT_TYPE = "webhook.test"
MAX_STORED_BODY = 1000


def calculate_backoff_ms(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    rng: Callable[[], float] = random.random
) -> int:
    """
    Delay before the attempt following ``attempt`` (1-based).

    ``base * 2**(attempt-1)`` with +/-10% jitter, clamped to [base, max].
    """
    delay = base_delay_ms * (2 ** (attempt - 1))
    jitter = delay * 0.1 * (2 * rng() - 1)
    return int(min(max(delay + jitter, base_delay_ms), max_delay_ms))


def _isoformat(value: datetime) -> str:
    text = value.isoformat()
    return text + "Z" if value.tzinfo is None else text


@dataclass
class _AttemptOutcome:
    success: bool
    status_code: Optional[int] = None
    response_time: Optional[int] = None
    error_message: Optional[str] = None
    request_headers: Dict[str, str] = field(default_factory=dict)
    request_body: Optional[str] = None
    response_headers: Dict[str, str] = field(default_factory=dict)
    response_body: Optional[str] = None


class WebhookEmitter:
    """Delivers events to the endpoints configured in the registry."""

    def __init__(
        self,
        registry: WebhookRegistry,
        tracker: Optional[DeliveryTracker] = None,
        user_agent: str = USER_AGENT,
    ):
        self.registry = registry
        self.tracker = tracker
        self.user_agent = user_agent
        self.logger = get_logger(__name__, 'webhook_emitter')
        self.metrics = get_metrics_collector()

        self.queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []

        self.stats = {
            'total_emissions': 0,
            'skipped_emissions': 0,
            'total_deliveries': 0,
            'successful_deliveries': 0,
            'failed_deliveries': 0,
            'retries_attempted': 0,
        }

    @staticmethod
    def build_payload(event: WebhookEvent, payload_config: PayloadConfig) -> Dict[str, Any]:
        """
        Build the wire payload ``{type, data, metadata}``.

        Each metadata field is included only when its toggle is on.
        """
        source = event.metadata
        metadata: Dict[str, Any] = {}

        if payload_config.include_timestamp:
            timestamp = source.timestamp if source and source.timestamp else datetime.utcnow()
            metadata["timestamp"] = _isoformat(timestamp)
        if payload_config.include_session_id and source and source.session_id:
            metadata["sessionId"] = source.session_id
        if payload_config.include_user_id and source and source.user_id:
            metadata["userId"] = source.user_id
        metadata.update(payload_config.static_fields)

        return {"type": event.type, "data": event.data, "metadata": metadata}

    async def emit(self, event: WebhookEvent) -> WebhookEmissionResult:
        """
        Emit an event to every endpoint configured for its type.

        Unconfigured, disabled or endpoint-less event types are a successful
        no-op. The result is successful only when every endpoint succeeded;
        partial failure is reported, never raised.
        """
        self.stats['total_emissions'] += 1
        event_id = f"evt_{uuid.uuid4().hex}"

        config = self.registry.get(event.type)
        reason = None
        if config is None:
            reason = "Event type not configured"
        elif not config.enabled:
            reason = "Event type disabled"
        elif not config.endpoints:
            reason = "No endpoints configured"

        if reason:
            self.stats['skipped_emissions'] += 1
            self.logger.debug(
                f"Skipping webhook emission: {reason}",
                operation="emit",
                event_type=event.type,
            )
            return WebhookEmissionResult(
                success=True, event_type=event.type, event_id=event_id, skipped=True, reason=reason
            )

        payload = self.build_payload(event, config.payload)

        deliveries = await asyncio.gather(*(
            self._deliver_to_endpoint(endpoint, event.type, event_id, payload)
            for endpoint in config.endpoints
        ))

        success = all(delivery.success for delivery in deliveries)
        self.logger.info(
            f"Emitted {event.type} to {len(deliveries)} endpoints",
            operation="emit",
            event_id=event_id,
            event_type=event.type,
            success=success,
            failed_endpoints=[d.endpoint for d in deliveries if not d.success],
        )

        return WebhookEmissionResult(
            success=success,
            event_type=event.type,
            event_id=event_id,
            deliveries=list(deliveries),
        )

    async def _deliver_to_endpoint(
        self,
        endpoint: WebhookEndpointConfig,
        event_type: str,
        event_id: str,
        payload: Dict[str, Any]
    ) -> EndpointDeliveryResult:
        """Retry loop for one endpoint, ending in one tracker row."""
        delivery_id = WebhookSecurity.create_delivery_id()
        outcome = None
        attempts = 0

        for attempt in range(1, endpoint.max_retries + 1):
            attempts = attempt
            outcome = await self._attempt_delivery(endpoint, event_type, event_id, delivery_id, payload)
            if outcome.success:
                break

            if attempt < endpoint.max_retries:
                delay_ms = calculate_backoff_ms(attempt, endpoint.base_delay_ms, endpoint.max_delay_ms)
                self.stats['retries_attempted'] += 1
                self.logger.warning(
                    f"Webhook delivery failed, retrying in {delay_ms}ms "
                    f"({attempt}/{endpoint.max_retries})",
                    operation="deliver",
                    endpoint=endpoint.url,
                    event_type=event_type,
                    error=outcome.error_message,
                )
                await asyncio.sleep(delay_ms / 1000)

        error_code = None
        if not outcome.success:
            error_code = (
                DeliveryErrorCode.MAX_RETRIES_EXCEEDED if endpoint.max_retries > 1
                else DeliveryErrorCode.DELIVERY_FAILED
            ).value
            self.logger.error(
                f"Webhook delivery failed after {attempts} attempts",
                operation="deliver",
                endpoint=endpoint.url,
                event_type=event_type,
                error=outcome.error_message,
                error_code=error_code,
            )

        self._record_metrics(event_type, outcome)

        if self.tracker is not None:
            await self.tracker.log_delivery(WebhookDelivery(
                event_id=event_id,
                event_type=event_type,
                endpoint=endpoint.url,
                success=outcome.success,
                status_code=outcome.status_code,
                response_time=outcome.response_time,
                retry_count=attempts - 1,
                error_message=outcome.error_message,
                error_code=error_code,
                request_headers=outcome.request_headers or None,
                response_headers=outcome.response_headers or None,
                request_body=outcome.request_body,
                response_body=outcome.response_body,
            ))

        return EndpointDeliveryResult(
            endpoint=endpoint.url,
            success=outcome.success,
            status_code=outcome.status_code,
            response_time=outcome.response_time,
            retry_count=attempts - 1,
            attempts=attempts,
            error_message=outcome.error_message,
            error_code=error_code,
            delivery_id=delivery_id,
        )

    async def _attempt_delivery(
        self,
        endpoint: WebhookEndpointConfig,
        event_type: str,
        event_id: str,
        delivery_id: str,
        payload: Dict[str, Any]
    ) -> _AttemptOutcome:
        """Serialize, sign and POST once."""
        body = json.dumps(payload, default=str)

        try:
            signed = WebhookSecurity.sign(body, endpoint.secret, SignOptions(
                algorithm=endpoint.algorithm,
                prefix=endpoint.signature_prefix,
                include_timestamp=endpoint.include_timestamp,
                header_name=endpoint.signature_header,
            ))
        except WebhookConfigurationError as e:
            return _AttemptOutcome(success=False, error_message=f"Signing failed: {e}", request_body=body)

        headers = {
            **WebhookSecurity.sanitize_headers(endpoint.headers),
            **signed.headers,
            'User-Agent': self.user_agent,
            'X-Webhook-Event': event_type,
            'X-Webhook-Event-ID': event_id,
            'X-Webhook-Delivery-ID': delivery_id,
        }
        outcome = _AttemptOutcome(success=False, request_headers=headers, request_body=body)

        timeout = ClientTimeout(total=endpoint.timeout_ms / 1000)
        start_time = time.monotonic()

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    endpoint.url,
                    data=body.encode('utf-8'),
                    headers=headers,
                    allow_redirects=False  # Don't follow redirects for security
                ) as response:
                    response_body = await response.text(errors='replace')

                    outcome.response_time = int((time.monotonic() - start_time) * 1000)
                    outcome.status_code = response.status
                    outcome.response_headers = dict(response.headers)
                    outcome.response_body = response_body[:MAX_STORED_BODY]

                    outcome.success, outcome.error_message = WebhookValidator.validate_webhook_response(
                        response.status
                    )

        except asyncio.TimeoutError:
            outcome.response_time = int((time.monotonic() - start_time) * 1000)
            outcome.error_message = f"Request timeout after {endpoint.timeout_ms}ms"

        except ClientError as e:
            outcome.response_time = int((time.monotonic() - start_time) * 1000)
            outcome.error_message = f"HTTP client error: {str(e)}"

        return outcome

    def _record_metrics(self, event_type: str, outcome: _AttemptOutcome):
        self.stats['total_deliveries'] += 1
        self.metrics.get_counter(
            'webhook_deliveries_total', 'Terminal webhook delivery outcomes'
        ).increment(1, event_type=event_type, success=outcome.success)

        if outcome.success:
            self.stats['successful_deliveries'] += 1
        else:
            self.stats['failed_deliveries'] += 1
            self.metrics.get_counter(
                'webhook_delivery_failures_total', 'Webhook deliveries that exhausted retries'
            ).increment(1, event_type=event_type)

        if outcome.response_time is not None:
            self.metrics.get_histogram(
                'webhook_delivery_response_time_ms', 'Final attempt response time'
            ).observe(outcome.response_time)

    async def test_endpoint(self, endpoint: WebhookEndpointConfig) -> Tuple[bool, str]:
        """
        Send one synthetic event to an endpoint. Nothing is logged to the tracker.

        Returns:
            Tuple of (success, message)
        """
        test_event = WebhookEvent(
            type=TEST_EVENT_TYPE,
            data={
                "test": True,
                "message": "This is a test webhook delivery",
                "timestamp": _isoformat(datetime.utcnow()),
            },
        )
        payload = self.build_payload(test_event, PayloadConfig())

        outcome = await self._attempt_delivery(
            endpoint,
            TEST_EVENT_TYPE,
            f"evt_{uuid.uuid4().hex}",
            WebhookSecurity.create_delivery_id(),
            payload,
        )

        if outcome.success:
            return True, f"Test successful (HTTP {outcome.status_code})"
        return False, f"Test failed: {outcome.error_message or 'Unknown error'}"

    def enqueue(self, event: WebhookEvent):
        """Queue an event for background emission by the delivery workers."""
        self.queue.put_nowait(event)

    async def start_workers(self, count: int = 3):
        """Start background delivery workers."""
        if self._workers:
            return

        for i in range(count):
            self._workers.append(asyncio.create_task(self._delivery_worker(f"worker-{i}")))

        self.logger.info(f"Started {count} webhook delivery workers", operation="start_workers")

    async def stop_workers(self):
        """Cancel the delivery workers. Queued events that were not started are dropped."""
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        if workers:
            self.logger.info("Webhook delivery workers stopped", operation="stop_workers")

    async def drain(self):
        """Wait until every queued event has been emitted."""
        await self.queue.join()

    async def _delivery_worker(self, worker_id: str):
        """Background worker for the emission queue."""
        while True:
            event = await self.queue.get()
            try:
                await self.emit(event)
            except Exception:
                self.logger.exception(
                    f"Error in delivery worker {worker_id}",
                    operation="delivery_worker",
                    event_type=event.type,
                )
            finally:
                self.queue.task_done()

    def get_stats(self) -> Dict[str, Any]:
        """Get emitter statistics."""
        return {
            **self.stats,
            'queue_size': self.queue.qsize(),
            'workers': len(self._workers),
        }
