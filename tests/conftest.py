"""Shared test fixtures for the conversion relay."""
from typing import Any

import httpx
import pytest
import pytest_asyncio

from config.settings import FacebookConfig, QueueConfig, Settings
from core.errors import DeliveryError
from core.router import ConversionRouter
from destinations.facebook import FacebookConversionsClient
from job_queue import message_queue as mq
from job_queue.message_queue import InMemoryJobQueue
from models.schemas import DeliveryResult


class RecordingClient:
    """Destination double: records payloads, optionally fails the first N sends."""

    def __init__(self, fail_times: int = 0, error: Exception = None):
        self.payloads: list[dict[str, Any]] = []
        self.fail_times = fail_times
        self.error = error or DeliveryError("upstream rejected", status_code=500, body={"error": "boom"})

    async def send_event(self, payload: dict[str, Any]) -> DeliveryResult:
        self.payloads.append(payload)
        if len(self.payloads) <= self.fail_times:
            raise self.error
        return DeliveryResult(success=True, events_received=1)


@pytest.fixture(autouse=True)
def reset_queue_singleton():
    mq._instance = None
    yield
    mq._instance = None


@pytest.fixture
def queue_config() -> QueueConfig:
    """Queue tuned for tests: no backoff wait, fast polling."""
    return QueueConfig(
        backend="memory",
        concurrency=3,
        max_retries=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        stall_timeout=30.0,
        poll_interval=0.01,
        maintenance_interval=0.05,
    )


@pytest_asyncio.fixture
async def queue(queue_config):
    q = InMemoryJobQueue(queue_config)
    await q.connect()
    yield q
    await q.close()


@pytest.fixture
def facebook_config() -> FacebookConfig:
    return FacebookConfig(
        access_token="test-token",
        pixel_id="123456",
        api_base="https://graph.facebook.test",
    )


@pytest.fixture
def graph_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def facebook_transport(graph_requests):
    """Mock Graph API that accepts every batch."""
    def handler(request: httpx.Request) -> httpx.Response:
        graph_requests.append(request)
        return httpx.Response(200, json={"events_received": 1, "messages": [], "fbtrace_id": "trace"})
    return httpx.MockTransport(handler)


@pytest_asyncio.fixture
async def facebook_client(facebook_config, facebook_transport):
    client = FacebookConversionsClient(facebook_config, transport=facebook_transport)
    yield client
    await client.close()


@pytest.fixture
def recording_client() -> RecordingClient:
    return RecordingClient()


@pytest.fixture
def router(recording_client) -> ConversionRouter:
    return ConversionRouter(routes={"facebook": recording_client})


@pytest.fixture
def settings(queue_config, facebook_config) -> Settings:
    return Settings(queue=queue_config, facebook=facebook_config)


@pytest.fixture
def purchase_payload() -> dict[str, Any]:
    return {
        "event_name": "purchase",
        "custom_data": {"value": 10, "currency": "usd"},
        "user_data": {"email": "a@b.com"},
    }


@pytest.fixture
def make_client():
    """Factory for extra destination doubles."""
    return RecordingClient
