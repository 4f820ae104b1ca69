"""
Provider adapters for venue ingestion.

All adapters inherit from BaseAdapter and provide:
- Paced requests (minimum inter-request delay per provider)
- Retry with exponential backoff and retry-after handling
- Alerting on consecutive unit failures
"""

from .base import (
    BaseAdapter,
    DeadLetterQueue,
    FatalProviderError,
    IngestionSetupError,
    ProviderAuthError,
    ProviderError,
    RateLimitedError,
    RequestPacer,
    RetryableProviderError,
    RetryPolicy,
    SourceRegistry,
    retry_with_backoff,
)
from .eventbrite import EventbriteAdapter
from .overpass import OverpassAdapter
from .ticketmaster import TicketmasterAdapter

__all__ = [
    "BaseAdapter",
    "DeadLetterQueue",
    "EventbriteAdapter",
    "FatalProviderError",
    "IngestionSetupError",
    "OverpassAdapter",
    "ProviderAuthError",
    "ProviderError",
    "RateLimitedError",
    "RequestPacer",
    "RetryableProviderError",
    "RetryPolicy",
    "SourceRegistry",
    "TicketmasterAdapter",
    "retry_with_backoff",
]
