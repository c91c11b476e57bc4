"""
Tests for the inbound webhook security wrapper.
"""

import json
import time

import pytest

from src.webhooks.idempotency import IdempotencyStore
from src.webhooks.models import InboundRequest, WebhookProvider, WebhookSecurityConfig
from src.webhooks.security import WebhookSecurity
from src.webhooks.wrapper import WebhookSecurityWrapper


SECRET = "inbound-secret"


def github_request(payload, secret=SECRET, headers=None, source_ip="10.0.0.5") -> InboundRequest:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    signature = WebhookSecurity.sign(body, secret).signature
    return InboundRequest(
        body=body,
        headers={"X-Hub-Signature-256": signature, **(headers or {})},
        source_ip=source_ip,
    )


def stripe_request(payload, secret=SECRET, timestamp=None) -> InboundRequest:
    body = json.dumps(payload)
    timestamp = timestamp or int(time.time())
    digest = WebhookSecurity.generate_signature(f"{timestamp}.{body}", secret)
    return InboundRequest(body=body, headers={"stripe-signature": f"t={timestamp},v1={digest}"})


class RecordingHandler:
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result if result is not None else {"handled": True}
        self.error = error

    async def __call__(self, payload, request):
        self.calls.append(payload)
        if self.error:
            raise self.error
        return self.result


class TestWebhookSecurityWrapper:
    """Test the verify, validate, idempotency and handler pipeline."""

    @pytest.fixture
    def store(self, db):
        return IdempotencyStore(db)

    @pytest.fixture
    def github_wrapper(self, store):
        return WebhookSecurityWrapper(
            WebhookSecurityConfig(provider=WebhookProvider.GITHUB, secret=SECRET), store
        )

    @pytest.mark.asyncio
    async def test_valid_request_runs_handler(self, github_wrapper):
        handler = RecordingHandler()
        request = github_request({"zen": "hi"}, headers={"X-GitHub-Delivery": "d-1"})

        response = await github_wrapper.handle(request, handler)

        assert response.status_code == 200
        assert response.body == {"received": True, "result": {"handled": True}}
        assert handler.calls == [{"zen": "hi"}]

    @pytest.mark.asyncio
    async def test_invalid_signature_returns_401(self, github_wrapper):
        handler = RecordingHandler()
        request = github_request({"zen": "hi"}, secret="wrong")

        response = await github_wrapper.handle(request, handler)

        assert response.status_code == 401
        assert response.body == {"error": "Invalid signature"}
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_missing_signature_returns_401(self, github_wrapper):
        response = await github_wrapper.handle(InboundRequest(body="{}"), RecordingHandler())

        assert response.status_code == 401
        assert response.body["error"] == "Missing signature header"

    @pytest.mark.asyncio
    async def test_missing_secret_returns_401(self, store):
        wrapper = WebhookSecurityWrapper(WebhookSecurityConfig(provider=WebhookProvider.GITHUB), store)

        response = await wrapper.handle(github_request({"zen": "hi"}), RecordingHandler())

        assert response.status_code == 401
        assert response.body["error"] == "Missing webhook secret"

    @pytest.mark.asyncio
    async def test_invalid_json_returns_400(self, github_wrapper):
        response = await github_wrapper.handle(github_request("{not json"), RecordingHandler())

        assert response.status_code == 400
        assert response.body == {"error": "Invalid JSON payload"}

    @pytest.mark.asyncio
    async def test_required_fields(self, store):
        wrapper = WebhookSecurityWrapper(
            WebhookSecurityConfig(
                provider=WebhookProvider.GENERIC,
                secret=SECRET,
                required_fields=["id", "data.object.id"],
            ),
            store,
        )
        handler = RecordingHandler()

        response = await wrapper.handle(github_request({"id": "evt_1", "data": {}}), handler)

        assert response.status_code == 400
        assert response.body == {
            "error": "Invalid payload",
            "details": ["Missing required field: data.object.id"],
        }
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_source_ip_allow_list(self, store):
        wrapper = WebhookSecurityWrapper(
            WebhookSecurityConfig(secret=SECRET, allowed_ips=["192.168.0.0/16"]), store
        )

        denied = await wrapper.handle(github_request({"id": "a"}, source_ip="10.0.0.1"), RecordingHandler())
        allowed = await wrapper.handle(github_request({"id": "b"}, source_ip="192.168.1.7"), RecordingHandler())

        assert denied.status_code == 400
        assert denied.body == {"error": "Source IP not allowed"}
        assert allowed.status_code == 200

    @pytest.mark.asyncio
    async def test_duplicate_is_acknowledged_without_handler(self, github_wrapper):
        handler = RecordingHandler()
        request = github_request({"zen": "hi"}, headers={"X-GitHub-Delivery": "d-dup"})

        first = await github_wrapper.handle(request, handler)
        second = await github_wrapper.handle(request, handler)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.body["duplicate"] is True
        assert second.body["event_id"] == "d-dup"
        assert second.body["processed_at"] is not None
        assert len(handler.calls) == 1

    @pytest.mark.asyncio
    async def test_handler_failure_returns_500_and_allows_retry(self, github_wrapper):
        request = github_request({"zen": "hi"}, headers={"X-GitHub-Delivery": "d-fail"})

        failed = await github_wrapper.handle(request, RecordingHandler(error=RuntimeError("boom")))
        assert failed.status_code == 500
        assert failed.body == {"error": "Internal server error"}

        retry_handler = RecordingHandler()
        retried = await github_wrapper.handle(request, retry_handler)
        assert retried.status_code == 200
        assert len(retry_handler.calls) == 1

    @pytest.mark.asyncio
    async def test_sync_handler(self, github_wrapper):
        response = await github_wrapper.handle(
            github_request({"zen": "hi"}), lambda payload, request: "ok"
        )

        assert response.status_code == 200
        assert response.body["result"] == "ok"

    @pytest.mark.asyncio
    async def test_idempotency_disabled(self, store):
        wrapper = WebhookSecurityWrapper(
            WebhookSecurityConfig(secret=SECRET, enable_idempotency=False), store
        )
        handler = RecordingHandler()
        request = github_request({"id": "evt_same"})

        await wrapper.handle(request, handler)
        await wrapper.handle(request, handler)

        assert len(handler.calls) == 2

    @pytest.mark.asyncio
    async def test_stripe_flow(self, store):
        wrapper = WebhookSecurityWrapper(
            WebhookSecurityConfig(provider=WebhookProvider.STRIPE, secret=SECRET), store
        )
        handler = RecordingHandler()
        payload = {"id": "evt_stripe_1", "type": "invoice.paid"}

        first = await wrapper.handle(stripe_request(payload), handler)
        second = await wrapper.handle(stripe_request(payload), handler)

        assert first.status_code == 200
        assert second.body["duplicate"] is True
        assert len(handler.calls) == 1

    @pytest.mark.asyncio
    async def test_stripe_stale_timestamp(self, store):
        wrapper = WebhookSecurityWrapper(
            WebhookSecurityConfig(provider=WebhookProvider.STRIPE, secret=SECRET), store
        )

        response = await wrapper.handle(
            stripe_request({"id": "evt_old"}, timestamp=int(time.time()) - 3600), RecordingHandler()
        )

        assert response.status_code == 401
        assert response.body["error"] == "Timestamp outside the tolerance window"

    @pytest.mark.asyncio
    async def test_namespace_defaults_to_provider(self, store):
        config = WebhookSecurityConfig(provider=WebhookProvider.GITHUB, secret=SECRET)
        assert config.idempotency_config().namespace == "github"

        custom = WebhookSecurityConfig(secret=SECRET, namespace="billing")
        assert custom.idempotency_config().namespace == "billing"
