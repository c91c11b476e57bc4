"""
Shared fixtures for the webhook test suite.
"""

import asyncio
import os

os.environ["TESTING"] = "1"

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from src.persistence.database import DatabaseManager
from src.shared.metrics_collector import get_metrics_collector
from src.webhooks.models import EventTypeConfig, WebhookEndpointConfig
from src.webhooks.registry import WebhookRegistry


@pytest.fixture
def database_url(tmp_path):
    """File-backed SQLite database, one per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}"


@pytest.fixture
async def db(database_url):
    """Initialized database manager with the webhook tables created."""
    manager = DatabaseManager(database_url=database_url)
    await manager.initialize(create_tables=True)
    yield manager
    await manager.close()


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


class RecordingReceiver:
    """Local HTTP endpoint that records requests and replays scripted statuses."""

    def __init__(self, statuses=None, delay_seconds: float = 0):
        self.statuses = list(statuses or [])
        self.delay_seconds = delay_seconds
        self.requests = []
        self.server = None

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.text()
        self.requests.append({"headers": dict(request.headers), "body": body})
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        status = self.statuses.pop(0) if self.statuses else 200
        return web.Response(status=status, text='{"ok": true}')

    async def start(self):
        app = web.Application()
        app.router.add_post("/hook", self.handle)
        self.server = TestServer(app)
        await self.server.start_server()
        return self

    async def close(self):
        if self.server is not None:
            await self.server.close()

    @property
    def url(self) -> str:
        return str(self.server.make_url("/hook"))


@pytest.fixture
async def receiver_factory():
    """Start local receivers and close them after the test."""
    receivers = []

    async def factory(statuses=None, delay_seconds: float = 0) -> RecordingReceiver:
        receiver = await RecordingReceiver(statuses, delay_seconds).start()
        receivers.append(receiver)
        return receiver

    yield factory

    for receiver in receivers:
        await receiver.close()


def make_endpoint(url: str, **overrides) -> WebhookEndpointConfig:
    """Endpoint with fast retries for tests."""
    values = {
        "url": url,
        "secret": "test-secret-123",
        "max_retries": 3,
        "base_delay_ms": 1,
        "max_delay_ms": 5,
        "timeout_ms": 2000,
    }
    values.update(overrides)
    return WebhookEndpointConfig(**values)


def make_registry(event_type: str, *endpoints: WebhookEndpointConfig, **config) -> WebhookRegistry:
    return WebhookRegistry({event_type: EventTypeConfig(endpoints=list(endpoints), **config)})
