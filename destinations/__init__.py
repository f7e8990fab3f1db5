"""Conversion clients for all supported destination APIs."""
from destinations.base import (
    ConversionClient,
    DestinationMetrics,
    hash_data,
)
from destinations.facebook import FacebookConversionsClient

__all__ = [
    "ConversionClient", "DestinationMetrics", "hash_data",
    "FacebookConversionsClient",
]
