"""
On-demand event aggregation for a map viewport.

Searches Ticketmaster and Eventbrite for upcoming events in a bounding box
and date range, resolves their venues into a transient registry with the
same matcher and merge policy as ingestion, and returns one flat list of
events sorted by start time. Venues without events never appear, and
nothing is written to the canonical store.

A source without credentials, or whose search fails, is left out and
reported under "warnings"; the other source still contributes.

Usage:
    result = await fetch_live_events(settings, client, bounds=bbox)
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx

from services.registry.config import Settings
from services.registry.pipeline.entity_resolution import CandidateMatcher
from services.registry.pipeline.geo import BoundingBox, get_territory
from services.registry.pipeline.ingest_runner import Sleep, build_adapter
from services.registry.pipeline.models import CanonicalEvent, CanonicalVenue, Page, SourceAttribution
from services.registry.pipeline.upsert import RunStats, UpsertOrchestrator
from services.registry.pipeline.venue_store import InMemoryVenueStore
from services.registry.scrapers.base import BaseAdapter, ProviderAuthError, ProviderError
from services.registry.scrapers.ticketmaster import TicketmasterAdapter

logger = logging.getLogger(__name__)

LIVE_SOURCES = ("tm", "eb")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _start_key(value: Optional[str]) -> datetime:
    # Local times without an offset are ordered as if they were UTC
    if not value:
        return datetime.max.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.max.replace(tzinfo=timezone.utc)
    return _as_utc(parsed)


def _public_id(sources: tuple[SourceAttribution, ...], fallback: Optional[str]) -> Optional[str]:
    if not sources:
        return fallback
    first = sources[0]
    return f"{first.provider}:{first.external_id}"


def event_to_dict(event: CanonicalEvent, venue: CanonicalVenue) -> dict[str, Any]:
    """One aggregated event with its venue, as returned to map clients."""
    return {
        "id": _public_id(event.sources, event.id),
        "title": event.title,
        "starts_at": event.start_utc,
        "ends_at": event.end_utc,
        "status": event.status,
        "description": event.description,
        "image_url": min(event.images) if event.images else None,
        "ticket_url": event.ticket_url,
        "source": event.sources[0].provider if event.sources else None,
        "sources": [s.to_json() for s in event.sources],
        "venue": {
            "id": _public_id(venue.sources, venue.id),
            "name": venue.name,
            "address": venue.address,
            "city": venue.city,
            "lat": venue.lat,
            "lng": venue.lng,
            "sources": [s.to_json() for s in venue.sources],
        },
    }


async def _search(
    adapter: BaseAdapter, bounds: BoundingBox, start: datetime, end: datetime
) -> Page:
    if isinstance(adapter, TicketmasterAdapter):
        return await adapter.fetch_events(bounds, start, end)
    return await adapter.fetch_page_with_retry(adapter.build_query(bounds, start, end))


async def fetch_live_events(
    settings: Settings,
    client: httpx.AsyncClient,
    bounds: Optional[BoundingBox] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    *,
    now: Optional[Callable[[], datetime]] = None,
    sleep: Optional[Sleep] = None,
) -> dict[str, Any]:
    """
    Aggregate upcoming events from the live sources.

    The window defaults to [now, now + EB_WINDOW_DAYS] and the box to the
    configured territory.

    Returns:
        {"events": [...], "venueCount", "skipped", "warnings": [{"source", "message"}],
         "timestamp"}
    """
    territory = get_territory(settings.territory)
    bounds = bounds or territory.bbox
    start = _as_utc(date_from or (now or _utcnow)())
    end = _as_utc(date_to) if date_to else start + timedelta(days=settings.eb_window_days)
    if end <= start:
        raise ValueError("date_to must be after date_from")

    warnings: list[dict[str, str]] = []
    adapters: list[BaseAdapter] = []
    credentials = {"tm": settings.tm_api_key, "eb": settings.eb_token}
    for provider in LIVE_SOURCES:
        if not credentials[provider]:
            logger.warning("No credentials for %s, leaving it out of live events", provider)
            warnings.append({"source": provider, "message": "credentials not configured"})
            continue
        adapters.append(build_adapter(provider, settings, client, territory, sleep))

    async def search(adapter: BaseAdapter) -> Optional[Page]:
        try:
            return await _search(adapter, bounds, start, end)
        except ProviderError as exc:
            logger.warning("Live event search on %s failed: %s", adapter.name, exc)
            warnings.append({"source": adapter.name, "message": str(exc)})
            return None

    pages = await asyncio.gather(*(search(a) for a in adapters))

    store = InMemoryVenueStore()
    stats = RunStats(provider="live")
    orchestrator = UpsertOrchestrator(
        store,
        CandidateMatcher(store, radius_m=settings.match_radius_m),
        stats,
        owner_id=settings.system_owner_id or None,
    )
    for adapter, page in zip(adapters, pages):
        if page is None:
            continue
        try:
            await orchestrator.process_page(page, adapter)
        except ProviderAuthError as exc:
            logger.warning("Live event venues on %s unavailable: %s", adapter.name, exc)
            warnings.append({"source": adapter.name, "message": str(exc)})

    events = sorted(store.events.values(), key=lambda e: _start_key(e.start_utc))
    result = {
        "events": [event_to_dict(e, store.venues[e.venue_id]) for e in events],
        "venueCount": len({e.venue_id for e in events}),
        "skipped": stats.skipped,
        "warnings": warnings,
        "timestamp": _utcnow().isoformat(),
    }
    logger.info(
        "Live events: %d events at %d venues (%d skipped, %d warnings)",
        len(result["events"]), result["venueCount"], stats.skipped, len(warnings),
    )
    return result
