"""
Conversion Clients — Shared base for every destination API.

Provides:
- hash_data: normalized SHA-256 digest for PII fields
- DestinationMetrics: per-destination send/fail/latency tracking
- ConversionClient: capability interface the router dispatches through
"""
from __future__ import annotations

import abc
import hashlib
from typing import Any

import structlog

from models.schemas import DeliveryResult, NormalizedEvent

logger = structlog.get_logger()


def hash_data(value: Any) -> str:
    """
    One-way digest of a PII value, lowercased and trimmed first.
    Empty or absent input yields "" rather than the hash of an empty string.
    """
    if value is None:
        return ""
    normalized = str(value).strip().lower()
    if not normalized:
        return ""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

class DestinationMetrics:
    """Tracks per-destination batch, event, failure and latency metrics."""

    def __init__(self, destination: str):
        self.destination = destination
        self.batches_sent: int = 0
        self.events_sent: int = 0
        self.batches_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, events: int, latency_ms: float = 0.0):
        self.batches_sent += 1
        self.events_sent += events
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-100]

    def record_failure(self, error: str = ""):
        self.batches_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-10]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.batches_sent + self.batches_failed
        return self.batches_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "destination": self.destination,
            "sent": self.batches_sent,
            "events": self.events_sent,
            "failed": self.batches_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
#  CONVERSION CLIENT
# ══════════════════════════════════════════════════════════════

class ConversionClient(abc.ABC):
    """
    Base class for all destination clients.

    Subclasses implement the mapping into their wire event and the batch
    call. send_event always builds a fresh event per call and delivers it
    as a single-element batch.
    """

    name: str = ""

    def __init__(self):
        self.metrics = DestinationMetrics(self.name)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    def map_webhook_to_event(self, payload: dict[str, Any]) -> NormalizedEvent:
        ...

    @abc.abstractmethod
    async def send_batch(self, events: list[NormalizedEvent]) -> DeliveryResult:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send_event(self, payload: dict[str, Any]) -> DeliveryResult:
        try:
            event = self.map_webhook_to_event(payload)
        except Exception as e:
            logger.error("event_mapping_failed", destination=self.name, error=str(e))
            raise
        return await self.send_batch([event])

    # ── Health & lifecycle ────────────────────────────────────

    @property
    def configured(self) -> bool:
        return True

    async def health_check(self) -> dict[str, Any]:
        return {
            "destination": self.name,
            "configured": self.configured,
            "metrics": self.metrics.to_dict(),
        }

    async def close(self):
        pass
