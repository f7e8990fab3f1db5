"""
Tests — Facebook Conversions Client

Event mapping, PII hashing, custom data formatting and the Graph API call
against an httpx.MockTransport.
"""
import hashlib
import json

import httpx
import pytest

from config.settings import FacebookConfig
from core.errors import (
    DeliveryError,
    DeliveryTimeout,
    EmptyBatch,
    MisconfiguredClient,
    ValidationError,
)
from destinations.base import hash_data
from destinations.facebook import FacebookConversionsClient
from models.schemas import NormalizedEvent


def sha(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def client_with(handler, config: FacebookConfig = None) -> FacebookConversionsClient:
    config = config or FacebookConfig(access_token="tok", pixel_id="42", api_base="https://graph.test")
    return FacebookConversionsClient(config, transport=httpx.MockTransport(handler))


# ──────────────────────────────────────────────────────────────
#  Hashing
# ──────────────────────────────────────────────────────────────


class TestHashData:

    def test_normalizes_case_and_whitespace(self):
        assert hash_data("User@Example.com ") == hash_data("user@example.com")
        assert hash_data("user@example.com") == sha("user@example.com")

    def test_empty_yields_empty_string(self):
        assert hash_data("") == ""
        assert hash_data("   ") == ""
        assert hash_data(None) == ""

    def test_non_string_values(self):
        assert hash_data(12345) == sha("12345")


# ──────────────────────────────────────────────────────────────
#  Mapping
# ──────────────────────────────────────────────────────────────


class TestEventMapping:

    @pytest.mark.parametrize("raw,expected", [
        ("purchase", "Purchase"),
        ("lead", "Lead"),
        ("view_content", "ViewContent"),
        ("ADD_TO_CART", "AddToCart"),
        ("initiate_checkout", "InitiateCheckout"),
        ("search", "Search"),
        ("complete_registration", "CompleteRegistration"),
        ("contact", "Contact"),
        ("subscribe", "Subscribe"),
    ])
    def test_known_names(self, raw, expected):
        assert FacebookConversionsClient.map_event_name(raw) == expected

    def test_unknown_name_capitalized(self):
        assert FacebookConversionsClient.map_event_name("signup") == "Signup"
        assert FacebookConversionsClient.map_event_name("SIGNUP") == "Signup"

    def test_absent_name_is_page_view(self):
        assert FacebookConversionsClient.map_event_name(None) == "PageView"
        assert FacebookConversionsClient.map_event_name("") == "PageView"

    def test_map_full_payload(self, facebook_client):
        event = facebook_client.map_webhook_to_event({
            "event_name": "purchase",
            "event_time": 1700000000,
            "url": "https://shop.test/checkout",
            "user_data": {"email": "A@B.com", "client_ip_address": "1.2.3.4"},
            "custom_data": {"value": "19.90", "currency": "brl"},
        })
        assert event.event_name == "Purchase"
        assert event.event_time == 1700000000
        assert event.event_source_url == "https://shop.test/checkout"
        assert event.action_source == "website"
        assert event.user_data == {"em": sha("a@b.com"), "client_ip_address": "1.2.3.4"}
        assert event.custom_data == {"value": 19.9, "currency": "BRL"}

    def test_defaults_and_aliases(self, facebook_client):
        event = facebook_client.map_webhook_to_event({
            "event": "lead",
            "source_url": "https://lp.test",
            "action_source": "system_generated",
            "user": {"phone": "+5511999999999"},
            "data": {"content_ids": "sku-1"},
        })
        assert event.event_name == "Lead"
        assert event.event_time > 1_600_000_000
        assert event.event_source_url == "https://lp.test"
        assert event.action_source == "system_generated"
        assert event.user_data == {"ph": sha("+5511999999999")}
        assert event.custom_data == {"content_ids": ["sku-1"]}

    def test_source_url_omitted_from_wire_when_absent(self, facebook_client):
        event = facebook_client.map_webhook_to_event({"event_name": "lead"})
        wire = event.to_wire()
        assert "event_source_url" not in wire
        assert wire["user_data"] == {}

    def test_fresh_event_per_call(self, facebook_client):
        payload = {"event_name": "lead", "event_time": 1}
        first = facebook_client.map_webhook_to_event(payload)
        second = facebook_client.map_webhook_to_event(payload)
        assert first == second
        assert first is not second

    @pytest.mark.parametrize("payload", [
        {"event_name": "lead", "user_data": "a@b.com"},
        {"event_name": "lead", "user": ["a@b.com"]},
        {"event_name": "lead", "custom_data": ["x"]},
        {"event_name": "lead", "data": "x"},
    ])
    def test_non_object_blocks_read_as_empty(self, facebook_client, payload):
        event = facebook_client.map_webhook_to_event(payload)
        assert event.event_name == "Lead"
        assert event.user_data == {}
        assert event.custom_data == {}


class TestUserData:

    def test_hashes_every_pii_field(self):
        formatted = FacebookConversionsClient.format_user_data({
            "email": "a@b.com", "phone": "123", "first_name": "Ana", "last_name": "Lima",
            "city": "Recife", "state": "PE", "zip": "50000", "country": "BR",
        })
        assert formatted == {
            "em": sha("a@b.com"), "ph": sha("123"), "fn": sha("ana"), "ln": sha("lima"),
            "ct": sha("recife"), "st": sha("pe"), "zp": sha("50000"), "country": sha("br"),
        }

    def test_identifiers_pass_through_unhashed(self):
        formatted = FacebookConversionsClient.format_user_data({
            "external_id": "u-1", "client_user_agent": "Mozilla", "fbc": "fb.1.x", "fbp": "fb.1.y",
        })
        assert formatted == {"external_id": "u-1", "client_user_agent": "Mozilla",
                             "fbc": "fb.1.x", "fbp": "fb.1.y"}

    def test_absent_and_empty_fields_omitted(self):
        assert FacebookConversionsClient.format_user_data({"email": "", "phone": None}) == {}

    def test_prehashed_fields_forwarded(self):
        digest = sha("a@b.com")
        assert FacebookConversionsClient.format_user_data({"em": digest}) == {"em": digest}

    def test_raw_field_wins_over_prehashed(self):
        formatted = FacebookConversionsClient.format_user_data({"email": "a@b.com", "em": "stale"})
        assert formatted["em"] == sha("a@b.com")

    def test_non_object_input_is_empty(self):
        assert FacebookConversionsClient.format_user_data("a@b.com") == {}
        assert FacebookConversionsClient.format_user_data(None) == {}


class TestCustomData:

    def test_recognized_fields(self):
        formatted = FacebookConversionsClient.format_custom_data({
            "value": 10, "currency": "usd", "content_ids": ["a", "b"],
            "content_name": "Shoes", "content_type": "product",
            "content_category": "Apparel", "num_items": "2",
        })
        assert formatted == {
            "value": 10.0, "currency": "USD", "content_ids": ["a", "b"],
            "content_name": "Shoes", "content_type": "product",
            "content_category": "Apparel", "num_items": 2,
        }

    def test_unknown_fields_verbatim(self):
        formatted = FacebookConversionsClient.format_custom_data({"order_id": "o-9", "coupon": {"code": "X"}})
        assert formatted == {"order_id": "o-9", "coupon": {"code": "X"}}

    def test_zero_value_kept(self):
        assert FacebookConversionsClient.format_custom_data({"value": 0}) == {"value": 0.0}

    def test_non_numeric_value_rejected(self):
        with pytest.raises(ValidationError):
            FacebookConversionsClient.format_custom_data({"value": "ten"})

    def test_fractional_num_items_truncated(self):
        assert FacebookConversionsClient.format_custom_data({"num_items": "3.7"}) == {"num_items": 3}

    @pytest.mark.parametrize("num_items", ["two", [1], float("inf")])
    def test_unparsable_num_items_dropped(self, num_items):
        formatted = FacebookConversionsClient.format_custom_data({"value": 5, "num_items": num_items})
        assert formatted == {"value": 5.0}

    def test_non_object_input_is_empty(self):
        assert FacebookConversionsClient.format_custom_data(["x"]) == {}


# ──────────────────────────────────────────────────────────────
#  Delivery
# ──────────────────────────────────────────────────────────────


class TestSendBatch:

    @pytest.mark.asyncio
    async def test_posts_batch_to_pixel_endpoint(self, facebook_client, graph_requests):
        result = await facebook_client.send_event({"event_name": "lead", "event_time": 1700000000})

        assert result.success
        assert result.events_received == 1
        assert len(graph_requests) == 1
        request = graph_requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://graph.facebook.test/v18.0/123456/events"
        body = json.loads(request.content)
        assert body["access_token"] == "test-token"
        assert "test_event_code" not in body
        assert len(body["data"]) == 1
        assert body["data"][0]["event_name"] == "Lead"

    @pytest.mark.asyncio
    async def test_includes_test_event_code(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"events_received": 1})

        config = FacebookConfig(access_token="tok", pixel_id="42", test_event_code="TEST123")
        client = client_with(handler, config)
        await client.send_event({"event_name": "lead"})
        await client.close()
        assert seen[0]["test_event_code"] == "TEST123"

    @pytest.mark.asyncio
    async def test_events_received_falls_back_to_batch_size(self):
        client = client_with(lambda request: httpx.Response(200, json={}))
        events = [NormalizedEvent(event_name="Lead", event_time=1) for _ in range(3)]
        result = await client.send_batch(events)
        await client.close()
        assert result.events_received == 3

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        client = FacebookConversionsClient(FacebookConfig(access_token="", pixel_id="42"))
        with pytest.raises(MisconfiguredClient) as exc_info:
            await client.send_event({"event_name": "lead"})
        assert exc_info.value.missing == ["access_token"]

    @pytest.mark.asyncio
    async def test_empty_batch(self, facebook_client, graph_requests):
        with pytest.raises(EmptyBatch):
            await facebook_client.send_batch([])
        assert graph_requests == []

    @pytest.mark.asyncio
    async def test_non_success_preserves_status_and_body(self):
        error_body = {"error": {"message": "Invalid parameter", "code": 100}}
        client = client_with(lambda request: httpx.Response(400, json=error_body))
        with pytest.raises(DeliveryError) as exc_info:
            await client.send_event({"event_name": "lead"})
        await client.close()
        assert exc_info.value.status_code == 400
        assert exc_info.value.body == error_body
        assert client.metrics.batches_failed == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = client_with(handler)
        with pytest.raises(DeliveryTimeout):
            await client.send_event({"event_name": "lead"})
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = client_with(handler)
        with pytest.raises(DeliveryError) as exc_info:
            await client.send_event({"event_name": "lead"})
        await client.close()
        assert exc_info.value.status_code is None
        assert not isinstance(exc_info.value, DeliveryTimeout)

    @pytest.mark.asyncio
    async def test_health_check_reports_metrics(self, facebook_client):
        await facebook_client.send_event({"event_name": "lead"})
        health = await facebook_client.health_check()
        assert health["destination"] == "facebook"
        assert health["configured"] is True
        assert health["metrics"]["sent"] == 1
        assert health["metrics"]["events"] == 1
