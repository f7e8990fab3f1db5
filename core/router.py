"""
Conversion Router — Validates job payloads and dispatches them to the
destination client that should receive them.

Routes are a name → ConversionClient mapping held in memory. They are
registered once at startup and never removed.
"""
from __future__ import annotations

import copy
from typing import Any, Optional

import structlog

from core.errors import InvalidClient, UnknownRoute, ValidationError
from models.schemas import RouteResult, ValidationResult

logger = structlog.get_logger()

REDACTED = "***REDACTED***"
SENSITIVE_KEYS = ("email", "phone", "password", "token", "access_token", "secret")
ROUTE_HINT_FIELDS = ("destination", "api_destination", "target_api")


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


class ConversionRouter:
    """
    Holds the route table and drives a single delivery attempt.

    Usage:
        router = ConversionRouter()
        router.register_route("facebook", FacebookConversionsClient(settings.facebook))
        outcome = await router.route(job.payload, job_id=job.id)
    """

    def __init__(self, default_destination: str = "facebook", routes: dict[str, Any] = None):
        self.default_destination = default_destination.lower()
        self._routes: dict[str, Any] = {}
        for name, client in (routes or {}).items():
            self.register_route(name, client)

    @property
    def routes(self) -> dict[str, Any]:
        return dict(self._routes)

    def register_route(self, name: str, client: Any):
        if not callable(getattr(client, "send_event", None)):
            raise InvalidClient(name)
        self._routes[name.lower()] = client
        logger.info("route_registered", route=name.lower(), client=type(client).__name__)

    # ── Validation ──────────────────────────────────────────

    def validate(self, payload: Any) -> ValidationResult:
        """Check the minimal payload shape, reporting every violation."""
        if not payload or not isinstance(payload, dict):
            return ValidationResult(valid=False, errors=["Webhook payload is missing or not an object"])

        errors = []
        event_name = payload.get("event_name") or payload.get("event")
        if _is_missing(event_name):
            errors.append("event_name or event is required")

        if isinstance(event_name, str) and event_name.lower() == "purchase":
            custom = payload.get("custom_data") or {}
            data = payload.get("data") or {}
            value = None
            for block in (custom, data):
                if isinstance(block, dict) and not _is_missing(block.get("value")):
                    value = block["value"]
                    break
            if value is None:
                errors.append("value is required for purchase events")

        return ValidationResult(valid=not errors, errors=errors)

    # ── Routing ─────────────────────────────────────────────

    def determine_route(self, payload: dict[str, Any]) -> str:
        hint = None
        for field in ROUTE_HINT_FIELDS:
            if payload.get(field):
                hint = str(payload[field])
                break

        if hint is None:
            return self.default_destination

        name = hint.lower()
        if name not in self._routes:
            logger.warning("route_not_found_using_default",
                           requested=name,
                           default=self.default_destination)
            return self.default_destination
        return name

    async def route(
        self,
        payload: dict[str, Any],
        destination: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> RouteResult:
        """
        Run one delivery attempt.

        Validation, route resolution and the destination call all raise on
        failure. The exception is tagged with the attempted route and
        re-raised unchanged so the queue can apply its retry policy.
        """
        route_name = destination.lower() if destination else None
        try:
            validation = self.validate(payload)
            if not validation.valid:
                raise ValidationError(validation.errors)

            route_name = route_name or self.determine_route(payload)
            client = self._routes.get(route_name)
            if client is None:
                raise UnknownRoute(route_name)

            logger.info("routing_webhook",
                        job_id=job_id,
                        route=route_name,
                        event_name=payload.get("event_name") or payload.get("event"))

            result = await client.send_event(payload)
            return RouteResult(success=True, route=route_name, result=result)

        except Exception as e:
            if route_name is None and isinstance(payload, dict):
                route_name = self.determine_route(payload)
            e.route = route_name
            logger.error("routing_failed",
                         job_id=job_id,
                         route=route_name,
                         error=str(e),
                         error_type=type(e).__name__,
                         payload=self.sanitize_for_log(payload))
            raise

    # ── Diagnostics ─────────────────────────────────────────

    @staticmethod
    def sanitize_for_log(payload: Any) -> Any:
        """Deep copy with sensitive values replaced. The input is not modified."""
        def scrub(obj):
            if isinstance(obj, dict):
                result = {}
                for key, value in obj.items():
                    if any(s in str(key).lower() for s in SENSITIVE_KEYS):
                        result[key] = REDACTED
                    else:
                        result[key] = scrub(value)
                return result
            if isinstance(obj, list):
                return [scrub(v) for v in obj]
            return copy.deepcopy(obj)

        return scrub(payload)

    async def health_check(self) -> dict[str, Any]:
        health = {}
        for name, client in self._routes.items():
            check = getattr(client, "health_check", None)
            if check is None:
                health[name] = {"registered": True}
                continue
            try:
                health[name] = await check()
            except Exception as e:
                logger.warning("destination_health_check_failed", route=name, error=str(e))
                health[name] = {"error": str(e)}
        return health

    async def close(self):
        for client in self._routes.values():
            close = getattr(client, "close", None)
            if close is not None:
                await close()
