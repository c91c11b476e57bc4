"""
Tests for outbound webhook emission.
"""

import hashlib
import hmac
import json
from datetime import datetime

import pytest

from conftest import make_endpoint, make_registry
from src.webhooks.emitter import WebhookEmitter, calculate_backoff_ms
from src.webhooks.models import EventMetadata, PayloadConfig, WebhookEvent
from src.webhooks.registry import WebhookRegistry
from src.webhooks.tracker import DeliveryTracker


class TestBackoff:
    """Test retry delay calculation."""

    @pytest.mark.parametrize("attempt,expected", [(1, 1000), (2, 2000), (3, 4000), (4, 8000)])
    def test_exponential_without_jitter(self, attempt, expected):
        assert calculate_backoff_ms(attempt, 1000, 30000, rng=lambda: 0.5) == expected

    def test_jitter_bounds(self):
        assert calculate_backoff_ms(2, 1000, 30000, rng=lambda: 1.0) == 2200
        assert calculate_backoff_ms(2, 1000, 30000, rng=lambda: 0.0) == 1800

    def test_clamped_to_max(self):
        assert calculate_backoff_ms(10, 1000, 30000, rng=lambda: 1.0) == 30000

    def test_never_below_base(self):
        assert calculate_backoff_ms(1, 1000, 30000, rng=lambda: 0.0) == 1000


class TestBuildPayload:
    """Test outbound payload construction."""

    def test_metadata_toggles(self):
        event = WebhookEvent(
            type="lead_captured",
            data={"email": "a@example.com"},
            metadata=EventMetadata(
                timestamp=datetime(2024, 1, 1, 12, 0, 0), session_id="s1", user_id="u1"
            ),
        )
        payload = WebhookEmitter.build_payload(
            event, PayloadConfig(include_session_id=True, include_user_id=False)
        )

        assert payload == {
            "type": "lead_captured",
            "data": {"email": "a@example.com"},
            "metadata": {"timestamp": "2024-01-01T12:00:00Z", "sessionId": "s1"},
        }

    def test_metadata_always_present(self):
        event = WebhookEvent(type="lead_captured")
        payload = WebhookEmitter.build_payload(event, PayloadConfig(include_timestamp=False))

        assert payload["metadata"] == {}
        assert payload["data"] == {}

    def test_generated_timestamp(self):
        payload = WebhookEmitter.build_payload(WebhookEvent(type="x"), PayloadConfig())
        assert payload["metadata"]["timestamp"].endswith("Z")

    def test_static_fields(self):
        payload = WebhookEmitter.build_payload(
            WebhookEvent(type="x"),
            PayloadConfig(include_timestamp=False, static_fields={"source": "oss-hero"}),
        )
        assert payload["metadata"] == {"source": "oss-hero"}


class TestWebhookEmitter:
    """Test delivery against local HTTP receivers."""

    @pytest.fixture
    def tracker(self, db):
        return DeliveryTracker(db)

    @pytest.mark.asyncio
    async def test_skips_unconfigured_event(self):
        emitter = WebhookEmitter(WebhookRegistry())
        result = await emitter.emit(WebhookEvent(type="unknown"))

        assert result.success is True
        assert result.skipped is True
        assert result.reason == "Event type not configured"
        assert result.deliveries == []

    @pytest.mark.asyncio
    async def test_skips_disabled_event(self):
        registry = make_registry("lead_captured", make_endpoint("http://localhost:9/hook"), enabled=False)
        result = await WebhookEmitter(registry).emit(WebhookEvent(type="lead_captured"))

        assert result.skipped is True
        assert result.reason == "Event type disabled"

    @pytest.mark.asyncio
    async def test_skips_event_without_endpoints(self):
        registry = make_registry("lead_captured")
        result = await WebhookEmitter(registry).emit(WebhookEvent(type="lead_captured"))

        assert result.reason == "No endpoints configured"

    @pytest.mark.asyncio
    async def test_successful_delivery_is_signed(self, receiver_factory, tracker):
        receiver = await receiver_factory()
        endpoint = make_endpoint(receiver.url, headers={"X-Tenant": "acme"})
        emitter = WebhookEmitter(make_registry("lead_captured", endpoint), tracker)

        result = await emitter.emit(WebhookEvent(type="lead_captured", data={"email": "a@example.com"}))

        assert result.success is True
        assert result.event_id.startswith("evt_")
        assert len(result.deliveries) == 1
        assert result.deliveries[0].attempts == 1
        assert result.deliveries[0].status_code == 200

        request = receiver.requests[0]
        body = request["body"]
        expected = hmac.new(b"test-secret-123", body.encode(), hashlib.sha256).hexdigest()
        assert request["headers"]["X-Hub-Signature-256"] == f"sha256={expected}"
        assert request["headers"]["X-Webhook-Event"] == "lead_captured"
        assert request["headers"]["X-Webhook-Event-ID"] == result.event_id
        assert request["headers"]["X-Webhook-Delivery-ID"].startswith("whd_")
        assert request["headers"]["X-Tenant"] == "acme"
        assert json.loads(body)["data"] == {"email": "a@example.com"}

        logged = await tracker.get_recent_deliveries()
        assert len(logged) == 1
        assert logged[0].success is True
        assert logged[0].retry_count == 0

    @pytest.mark.asyncio
    async def test_timestamped_signature(self, receiver_factory):
        receiver = await receiver_factory()
        endpoint = make_endpoint(receiver.url, include_timestamp=True)
        emitter = WebhookEmitter(make_registry("lead_captured", endpoint))

        await emitter.emit(WebhookEvent(type="lead_captured"))

        headers = receiver.requests[0]["headers"]
        signed = f"{headers['X-Timestamp']}.{receiver.requests[0]['body']}"
        expected = hmac.new(b"test-secret-123", signed.encode(), hashlib.sha256).hexdigest()
        assert headers["X-Hub-Signature-256"] == f"sha256={expected}"

    @pytest.mark.asyncio
    async def test_retries_until_success(self, receiver_factory, tracker):
        receiver = await receiver_factory(statuses=[500, 503, 200])
        emitter = WebhookEmitter(make_registry("lead_captured", make_endpoint(receiver.url)), tracker)

        result = await emitter.emit(WebhookEvent(type="lead_captured"))

        assert result.success is True
        assert result.deliveries[0].attempts == 3
        assert result.deliveries[0].retry_count == 2
        assert len(receiver.requests) == 3

        # One row per endpoint regardless of attempts
        logged = await tracker.get_recent_deliveries()
        assert len(logged) == 1
        assert logged[0].retry_count == 2
        assert emitter.get_stats()["retries_attempted"] == 2

    @pytest.mark.asyncio
    async def test_each_attempt_carries_same_delivery_id(self, receiver_factory):
        receiver = await receiver_factory(statuses=[500, 200])
        emitter = WebhookEmitter(make_registry("lead_captured", make_endpoint(receiver.url)))

        await emitter.emit(WebhookEvent(type="lead_captured"))

        delivery_ids = {r["headers"]["X-Webhook-Delivery-ID"] for r in receiver.requests}
        assert len(delivery_ids) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, receiver_factory, tracker):
        receiver = await receiver_factory(statuses=[500, 500, 500])
        emitter = WebhookEmitter(make_registry("lead_captured", make_endpoint(receiver.url)), tracker)

        result = await emitter.emit(WebhookEvent(type="lead_captured"))

        assert result.success is False
        delivery = result.deliveries[0]
        assert delivery.attempts == 3
        assert delivery.error_code == "MAX_RETRIES_EXCEEDED"
        assert delivery.error_message == "Server error: 500"

        logged = (await tracker.get_recent_deliveries())[0]
        assert logged.success is False
        assert logged.error_code == "MAX_RETRIES_EXCEEDED"
        assert logged.status_code == 500

    @pytest.mark.asyncio
    async def test_client_errors_are_retried(self, receiver_factory):
        receiver = await receiver_factory(statuses=[400, 400])
        endpoint = make_endpoint(receiver.url, max_retries=2)
        emitter = WebhookEmitter(make_registry("lead_captured", endpoint))

        result = await emitter.emit(WebhookEvent(type="lead_captured"))

        assert len(receiver.requests) == 2
        assert result.deliveries[0].error_message == "Client error: 400"

    @pytest.mark.asyncio
    async def test_single_attempt_failure_code(self, receiver_factory):
        receiver = await receiver_factory(statuses=[500])
        endpoint = make_endpoint(receiver.url, max_retries=1)
        emitter = WebhookEmitter(make_registry("lead_captured", endpoint))

        result = await emitter.emit(WebhookEvent(type="lead_captured"))

        assert result.deliveries[0].error_code == "DELIVERY_FAILED"

    @pytest.mark.asyncio
    async def test_timeout(self, receiver_factory):
        receiver = await receiver_factory(delay_seconds=0.5)
        endpoint = make_endpoint(receiver.url, max_retries=1, timeout_ms=50)
        emitter = WebhookEmitter(make_registry("lead_captured", endpoint))

        result = await emitter.emit(WebhookEvent(type="lead_captured"))

        assert result.success is False
        assert result.deliveries[0].error_message == "Request timeout after 50ms"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        endpoint = make_endpoint("http://127.0.0.1:1/hook", max_retries=1)
        emitter = WebhookEmitter(make_registry("lead_captured", endpoint))

        result = await emitter.emit(WebhookEvent(type="lead_captured"))

        assert result.success is False
        assert result.deliveries[0].error_message.startswith("HTTP client error")

    @pytest.mark.asyncio
    async def test_partial_failure_does_not_affect_other_endpoints(self, receiver_factory, tracker):
        good = await receiver_factory()
        bad = await receiver_factory(statuses=[500, 500])
        registry = make_registry(
            "lead_captured",
            make_endpoint(good.url),
            make_endpoint(bad.url, max_retries=2),
        )
        emitter = WebhookEmitter(registry, tracker)

        result = await emitter.emit(WebhookEvent(type="lead_captured"))

        assert result.success is False
        by_url = {d.endpoint: d for d in result.deliveries}
        assert by_url[good.url].success is True
        assert by_url[bad.url].success is False
        assert len(good.requests) == 1

        metrics = await tracker.get_metrics()
        assert metrics.total_deliveries == 2
        assert metrics.success_rate == 50.0

    @pytest.mark.asyncio
    async def test_test_endpoint(self, receiver_factory):
        receiver = await receiver_factory()
        emitter = WebhookEmitter(WebhookRegistry())

        success, message = await emitter.test_endpoint(make_endpoint(receiver.url))

        assert success is True
        assert message == "Test successful (HTTP 200)"
        assert receiver.requests[0]["headers"]["X-Webhook-Event"] == "webhook.test"

    @pytest.mark.asyncio
    async def test_test_endpoint_failure(self, receiver_factory):
        receiver = await receiver_factory(statuses=[404])
        emitter = WebhookEmitter(WebhookRegistry())

        success, message = await emitter.test_endpoint(make_endpoint(receiver.url))

        assert success is False
        assert message == "Test failed: Client error: 404"
        assert len(receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_background_queue(self, receiver_factory):
        receiver = await receiver_factory()
        emitter = WebhookEmitter(make_registry("lead_captured", make_endpoint(receiver.url)))

        await emitter.start_workers(2)
        try:
            emitter.enqueue(WebhookEvent(type="lead_captured", data={"n": 1}))
            emitter.enqueue(WebhookEvent(type="lead_captured", data={"n": 2}))
            await emitter.drain()
        finally:
            await emitter.stop_workers()

        assert sorted(json.loads(r["body"])["data"]["n"] for r in receiver.requests) == [1, 2]
        assert emitter.get_stats()["workers"] == 0
