"""
Tests — HTTP API

Drives the FastAPI app through httpx.ASGITransport. The lifespan is not
run, so the worker stays idle and accepted webhooks remain waiting.
"""
import json
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from api.main import create_app
from core.errors import QueueUnavailable
from core.router import REDACTED
from core.service import RelayService
from models.schemas import JobState


@pytest.fixture
def service(settings, queue, router):
    return RelayService(settings, queue=queue, router=router)


@pytest_asyncio.fixture
async def client(settings, service):
    app = create_app(settings, service)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestWebhookIntake:

    @pytest.mark.asyncio
    async def test_accepts_and_enqueues(self, client, queue, purchase_payload):
        resp = await client.post("/webhook", json=purchase_payload)

        assert resp.status_code == 202
        body = resp.json()
        assert body["success"] is True
        assert body["job_id"]

        job = await queue.get_job(body["job_id"])
        assert job.state == JobState.WAITING
        assert job.payload["event_name"] == "purchase"
        metadata = job.payload["metadata"]
        assert metadata["source"] == "unknown"
        assert metadata["content_type"] == "application/json"
        assert metadata["user_agent"].startswith("python-httpx")
        assert metadata["received_at"]

    @pytest.mark.asyncio
    async def test_source_header_wins_over_body(self, client, queue):
        resp = await client.post(
            "/webhook",
            json={"event_name": "lead", "source": "body-source"},
            headers={"X-Webhook-Source": "shopify"},
        )
        job = await queue.get_job(resp.json()["job_id"])
        assert job.payload["metadata"]["source"] == "shopify"

    @pytest.mark.asyncio
    async def test_source_from_body(self, client, queue):
        resp = await client.post("/webhook", json={"event_name": "lead", "source": "hotmart"})
        job = await queue.get_job(resp.json()["job_id"])
        assert job.payload["metadata"]["source"] == "hotmart"

    @pytest.mark.asyncio
    async def test_priority_and_delay_forwarded(self, client, queue):
        resp = await client.post("/webhook", json={"event_name": "lead", "priority": 2, "delay": 60000})
        job = await queue.get_job(resp.json()["job_id"])
        assert job.priority == 2
        assert job.delay == 60000
        assert await queue.dequeue() is None

    @pytest.mark.asyncio
    async def test_does_not_validate_event_shape(self, client):
        resp = await client.post("/webhook", json={"anything": True})
        assert resp.status_code == 202

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [b"{}", b"[]", b"not json", b""])
    async def test_rejects_empty_or_invalid_body(self, client, content):
        resp = await client.post("/webhook", content=content, headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert "error" in resp.json()

    @pytest.mark.asyncio
    async def test_invalid_priority(self, client):
        resp = await client.post("/webhook", json={"event_name": "lead", "priority": "high"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_fractional_priority_and_delay_truncated(self, client, queue):
        resp = await client.post("/webhook", json={"event_name": "lead", "priority": 1.5, "delay": 250.9})
        assert resp.status_code == 202
        job = await queue.get_job(resp.json()["job_id"])
        assert job.priority == 1
        assert job.delay == 250

    @pytest.mark.asyncio
    @pytest.mark.parametrize("priority", [-1, 2 ** 21 + 1])
    async def test_priority_out_of_range(self, client, priority):
        resp = await client.post("/webhook", json={"event_name": "lead", "priority": priority})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_body_too_large(self, settings, service):
        settings.server.max_body_bytes = 64
        app = create_app(settings, service)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
            resp = await c.post("/webhook", content=json.dumps({"event_name": "x" * 200}))
        assert resp.status_code == 413

    @pytest.mark.asyncio
    async def test_queue_failure_returns_500(self, client, queue):
        queue.enqueue = AsyncMock(side_effect=QueueUnavailable())
        resp = await client.post("/webhook", json={"event_name": "lead"})
        assert resp.status_code == 500
        assert resp.json()["success"] is False


class TestWebhookSecret:

    @pytest_asyncio.fixture
    async def secured(self, settings, service):
        settings.webhook.secret = "s3cret"
        app = create_app(settings, service)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
            yield c

    @pytest.mark.asyncio
    async def test_missing_secret(self, secured):
        resp = await secured.post("/webhook", json={"event_name": "lead"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret(self, secured):
        resp = await secured.post("/webhook", json={"event_name": "lead"},
                                  headers={"X-Webhook-Secret": "nope"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_header_secret(self, secured):
        resp = await secured.post("/webhook", json={"event_name": "lead"},
                                  headers={"X-Webhook-Secret": "s3cret"})
        assert resp.status_code == 202

    @pytest.mark.asyncio
    async def test_body_secret(self, secured):
        resp = await secured.post("/webhook", json={"event_name": "lead", "secret": "s3cret"})
        assert resp.status_code == 202


class TestHealthAndDiagnostics:

    @pytest.mark.asyncio
    async def test_webhook_health(self, client):
        resp = await client.get("/webhook/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["service"] == "webhook"
        assert body["timestamp"]

    @pytest.mark.asyncio
    async def test_health_reports_queue_stats(self, client):
        await client.post("/webhook", json={"event_name": "lead"})
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["queue"] == {"waiting": 1, "active": 0, "completed": 0, "failed": 0, "total": 1}
        assert "facebook" in body["destinations"]

    @pytest.mark.asyncio
    async def test_health_unavailable_queue(self, client, queue):
        queue.stats = AsyncMock(side_effect=QueueUnavailable())
        resp = await client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "error"

    @pytest.mark.asyncio
    async def test_job_lookup_redacts_payload(self, client):
        resp = await client.post("/webhook", json={
            "event_name": "lead", "user_data": {"email": "a@b.com", "city": "Recife"},
        })
        job_id = resp.json()["job_id"]

        resp = await client.get(f"/api/v1/jobs/{job_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == job_id
        assert body["state"] == "waiting"
        assert body["payload"]["user_data"]["email"] == REDACTED
        assert body["payload"]["user_data"]["city"] == "Recife"

    @pytest.mark.asyncio
    async def test_job_lookup_unknown(self, client):
        resp = await client.get("/api/v1/jobs/999")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_root_lists_endpoints(self, client, settings):
        resp = await client.get("/")
        body = resp.json()
        assert body["service"] == settings.app_name
        assert body["endpoints"]["webhook"] == "/webhook"
