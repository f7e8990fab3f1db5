"""
Core data models for the conversion relay.
These are the shared types exchanged between the queue, router and destinations.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


# ──────────────────────────────────────────────────────────────
#  Intake: what the HTTP boundary hands to the queue
# ──────────────────────────────────────────────────────────────

MAX_PRIORITY = 2 ** 21


class JobOptions(BaseModel):
    """Scheduling hints set at enqueue time."""
    priority: int = Field(0, ge=0, le=MAX_PRIORITY)   # lower runs first
    delay: int = 0                                    # milliseconds before the job becomes eligible


class WebhookMetadata(BaseModel):
    """Receipt metadata attached to every accepted webhook."""
    received_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    content_type: Optional[str] = None
    source: str = "unknown"


# ──────────────────────────────────────────────────────────────
#  Destination events
# ──────────────────────────────────────────────────────────────

class NormalizedEvent(BaseModel):
    """
    Destination-specific event derived from a job payload.

    Built fresh on every delivery attempt and never shared between
    destinations. Serialized with exclude_none so absent fields are not sent.
    """
    event_name: str
    event_time: int
    event_source_url: Optional[str] = None
    action_source: str = "website"
    user_data: dict[str, Any] = {}
    custom_data: dict[str, Any] = {}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class DeliveryResult(BaseModel):
    success: bool = True
    events_received: int = 0
    messages: list[Any] = []
    data: dict[str, Any] = {}


class RouteResult(BaseModel):
    success: bool = True
    route: str
    result: DeliveryResult


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = []


# ──────────────────────────────────────────────────────────────
#  Queue reporting
# ──────────────────────────────────────────────────────────────

class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }
