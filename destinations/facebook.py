"""
Facebook Conversions Client — Default destination.

Maps a normalized webhook payload into a Conversions API server event,
hashes PII fields, and posts the batch to the pixel's events edge.

Delivery flow:
1. send_event() → map_webhook_to_event() builds one server event
2. send_batch([event]) → POST {api_base}/{api_version}/{pixel_id}/events
3. Non-2xx, timeouts and transport failures raise DeliveryError; the
   job queue decides whether to retry

API Docs: https://developers.facebook.com/docs/marketing-api/conversions-api
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from config.settings import FacebookConfig
from core.errors import (
    DeliveryError,
    DeliveryTimeout,
    EmptyBatch,
    MisconfiguredClient,
    ValidationError,
)
from destinations.base import ConversionClient, hash_data
from models.schemas import DeliveryResult, NormalizedEvent

logger = structlog.get_logger()


EVENT_NAME_MAP = {
    "purchase": "Purchase",
    "lead": "Lead",
    "view_content": "ViewContent",
    "add_to_cart": "AddToCart",
    "initiate_checkout": "InitiateCheckout",
    "search": "Search",
    "complete_registration": "CompleteRegistration",
    "contact": "Contact",
    "subscribe": "Subscribe",
}

DEFAULT_EVENT_NAME = "PageView"

# raw field → hashed wire key
HASHED_USER_FIELDS = {
    "email": "em",
    "phone": "ph",
    "first_name": "fn",
    "last_name": "ln",
    "city": "ct",
    "state": "st",
    "zip": "zp",
    "country": "country",
}

PASSTHROUGH_USER_FIELDS = (
    "external_id",
    "client_ip_address",
    "client_user_agent",
    "fbc",
    "fbp",
)

KNOWN_CUSTOM_FIELDS = {
    "value", "currency", "content_ids", "content_name",
    "content_type", "content_category", "num_items",
}


def _block(payload: dict[str, Any], *keys: str) -> dict[str, Any]:
    """First non-empty block under any alias; anything but an object reads as empty."""
    for key in keys:
        value = payload.get(key)
        if value:
            return value if isinstance(value, dict) else {}
    return {}


class FacebookConversionsClient(ConversionClient):
    """Facebook Conversions API client for server-side events."""

    name = "facebook"

    def __init__(self, config: FacebookConfig = None, transport: httpx.AsyncBaseTransport = None):
        super().__init__()
        self.config = config or FacebookConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def events_url(self) -> str:
        return f"{self.config.api_url}/{self.config.pixel_id}/events"

    @property
    def configured(self) -> bool:
        return bool(self.config.access_token and self.config.pixel_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    # ── Mapping ─────────────────────────────────────────────

    @staticmethod
    def map_event_name(event_name: Any) -> str:
        """Canonical Facebook name; unknown names are capitalized."""
        if not event_name:
            return DEFAULT_EVENT_NAME
        name = str(event_name)
        return EVENT_NAME_MAP.get(name.lower(), name.capitalize())

    def map_webhook_to_event(self, payload: dict[str, Any]) -> NormalizedEvent:
        event_time = payload.get("event_time") or int(time.time())
        try:
            event_time = int(event_time)
        except (TypeError, ValueError):
            raise ValidationError([f"event_time must be a unix timestamp, got {event_time!r}"])

        return NormalizedEvent(
            event_name=self.map_event_name(payload.get("event_name") or payload.get("event")),
            event_time=event_time,
            event_source_url=(
                payload.get("event_source_url")
                or payload.get("url")
                or payload.get("source_url")
            ),
            action_source=payload.get("action_source") or "website",
            user_data=self.format_user_data(_block(payload, "user_data", "user")),
            custom_data=self.format_custom_data(_block(payload, "custom_data", "data")),
        )

    @staticmethod
    def format_user_data(user: dict[str, Any]) -> dict[str, Any]:
        formatted = {}
        if not isinstance(user, dict):
            return formatted
        for field, key in HASHED_USER_FIELDS.items():
            if user.get(field):
                digest = hash_data(user[field])
                if digest:
                    formatted[key] = digest
            elif key != field and user.get(key):
                # Already hashed upstream
                formatted[key] = user[key]

        for field in PASSTHROUGH_USER_FIELDS:
            if user.get(field):
                formatted[field] = user[field]
        return formatted

    @staticmethod
    def format_custom_data(custom: dict[str, Any]) -> dict[str, Any]:
        formatted = {}
        if not isinstance(custom, dict):
            return formatted

        if custom.get("value") is not None:
            try:
                formatted["value"] = float(custom["value"])
            except (TypeError, ValueError):
                raise ValidationError([f"value must be numeric, got {custom['value']!r}"])
        if custom.get("currency"):
            formatted["currency"] = str(custom["currency"]).upper()

        if custom.get("content_ids"):
            ids = custom["content_ids"]
            formatted["content_ids"] = list(ids) if isinstance(ids, (list, tuple)) else [ids]
        for field in ("content_name", "content_type", "content_category"):
            if custom.get(field):
                formatted[field] = custom[field]
        if custom.get("num_items"):
            try:
                formatted["num_items"] = int(float(custom["num_items"]))
            except (TypeError, ValueError, OverflowError):
                logger.warning("facebook_num_items_dropped", num_items=repr(custom["num_items"]))

        for key, value in custom.items():
            if key not in KNOWN_CUSTOM_FIELDS:
                formatted[key] = value
        return formatted

    # ── Delivery ────────────────────────────────────────────

    async def send_batch(self, events: list[NormalizedEvent]) -> DeliveryResult:
        if not self.configured:
            missing = [
                name for name, value in (
                    ("access_token", self.config.access_token),
                    ("pixel_id", self.config.pixel_id),
                ) if not value
            ]
            raise MisconfiguredClient(self.name, missing)

        if not events:
            raise EmptyBatch()

        body: dict[str, Any] = {
            "data": [e.to_wire() if isinstance(e, NormalizedEvent) else dict(e) for e in events],
            "access_token": self.config.access_token,
        }
        if self.config.test_event_code:
            body["test_event_code"] = self.config.test_event_code

        logger.info("facebook_events_sending", count=len(events), pixel_id=self.config.pixel_id)
        client = await self._get_client()
        started = time.monotonic()

        try:
            resp = await client.post(self.events_url, json=body)
        except httpx.TimeoutException as e:
            self.metrics.record_failure("timeout")
            logger.error("facebook_api_timeout", timeout=self.config.timeout, error=str(e))
            raise DeliveryTimeout(
                f"Facebook API timed out after {self.config.timeout}s",
                destination=self.name,
            ) from e
        except httpx.HTTPError as e:
            self.metrics.record_failure(type(e).__name__)
            logger.error("facebook_api_unreachable", error=str(e))
            raise DeliveryError(f"Facebook API request failed: {e}", destination=self.name) from e

        latency_ms = (time.monotonic() - started) * 1000

        if resp.status_code >= 300:
            error_body = self._response_body(resp)
            self.metrics.record_failure(f"http_{resp.status_code}")
            logger.error(
                "facebook_api_error",
                status=resp.status_code,
                body=resp.text[:500],
            )
            raise DeliveryError(
                f"Facebook API returned {resp.status_code}",
                status_code=resp.status_code,
                body=error_body,
                destination=self.name,
            )

        data = self._response_body(resp)
        if not isinstance(data, dict):
            data = {"raw": data}
        events_received = data.get("events_received") or len(events)
        self.metrics.record_send(events_received, latency_ms)

        logger.info("facebook_events_sent",
                    events_received=events_received,
                    messages=data.get("messages", []),
                    latency_ms=round(latency_ms, 1))

        return DeliveryResult(
            success=True,
            events_received=events_received,
            messages=data.get("messages") or [],
            data=data,
        )

    @staticmethod
    def _response_body(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return resp.text
