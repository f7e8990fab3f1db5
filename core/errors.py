"""
Error taxonomy for the delivery pipeline.

Every failure raised by the queue, router or a conversion client derives
from RelayError. The worker never inspects these to decide on retries;
it nacks and the queue applies its attempt ceiling.
"""
from __future__ import annotations

from typing import Any, Optional


class RelayError(Exception):
    """Base exception for all pipeline operations."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class QueueUnavailable(RelayError):
    """The queue's persistence layer cannot be reached."""

    def __init__(self, message: str = "Job queue unavailable"):
        super().__init__(message, retryable=True)


class ValidationError(RelayError):
    """Payload is missing required fields. Carries every violation found."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(f"Validation failed: {', '.join(self.errors)}", retryable=False)


class UnknownRoute(RelayError):
    def __init__(self, route: str):
        self.route = route
        super().__init__(f"No conversion client registered for route '{route}'", retryable=False)


class InvalidClient(RelayError):
    def __init__(self, name: str):
        super().__init__(f"Client for route '{name}' must implement send_event", retryable=False)


class MisconfiguredClient(RelayError):
    """Destination credentials or account identifier are missing."""

    def __init__(self, destination: str, missing: list[str]):
        self.destination = destination
        self.missing = missing
        super().__init__(
            f"{destination} client not configured: missing {', '.join(missing)}",
            retryable=False,
        )


class EmptyBatch(RelayError):
    def __init__(self):
        super().__init__("Event batch is empty or invalid", retryable=False)


class DeliveryError(RelayError):
    """The destination rejected the batch or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
        destination: str = "",
    ):
        self.status_code = status_code
        self.body = body
        self.destination = destination
        super().__init__(message, retryable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": str(self),
            "status": self.status_code,
            "data": self.body,
            "destination": self.destination,
        }


class DeliveryTimeout(DeliveryError):
    """The destination call exceeded its request timeout."""
