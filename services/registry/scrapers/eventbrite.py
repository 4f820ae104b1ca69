"""
Eventbrite event search adapter.

Eventbrite is query-driven rather than swept: one search covers the whole
scope (a free-text territory address, or lat/lng + radius when the run is
restricted to a bounding box) over a rolling date window. Pages are chained
through the continuation token.

Listings are requested with expand=venue. When a listing still carries only
a venue id, resolve_event_venue() fetches the venue detail as a secondary
request through the same pacer and retry policy as the search itself.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Optional

import httpx

from services.registry.pipeline.geo import (
    BoundingBox,
    TerritoryConfig,
    get_territory,
    parse_coordinates,
    radius_km_for_box,
)
from services.registry.pipeline.models import Page, RawEventRecord, RawVenueRecord
from .base import (
    BaseAdapter,
    FatalProviderError,
    RequestPacer,
    RetryPolicy,
    SourceRegistry,
    retry_with_backoff,
)

logger = logging.getLogger(__name__)

EB_API_BASE = "https://www.eventbriteapi.com/v3"

PROVIDER_ID = "eb"


@dataclass(frozen=True)
class EventbriteQuery:
    """One search over the scope and date window; either address or lat/lng is set."""
    range_start: str
    range_end: str
    within_km: int = 50
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def params(self) -> dict[str, str]:
        params = {
            "start_date.range_start": self.range_start,
            "start_date.range_end": self.range_end,
            "expand": "venue",
            "location.within": f"{self.within_km}km",
        }
        if self.address:
            params["location.address"] = self.address
        else:
            params["location.latitude"] = f"{self.latitude:.6f}"
            params["location.longitude"] = f"{self.longitude:.6f}"
        return params


def _eb_timestamp(value: datetime) -> str:
    # Eventbrite rejects fractional seconds and offsets in date filters
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_eb_venue(venue: dict[str, Any], default_country: str = "DE") -> Optional[RawVenueRecord]:
    """Map an Eventbrite venue; None when it has no id, name or usable coordinates."""
    if not isinstance(venue, dict):
        return None
    name = (venue.get("name") or "").strip()
    coords = parse_coordinates(venue.get("latitude"), venue.get("longitude"))
    if not name or not venue.get("id") or coords is None:
        return None

    address = venue.get("address") or {}
    return RawVenueRecord(
        provider=PROVIDER_ID,
        external_id=str(venue["id"]),
        name=name,
        lat=coords[0],
        lng=coords[1],
        address=address.get("address_1") or None,
        city=address.get("city") or None,
        country=address.get("country") or default_country,
        postal_code=address.get("postal_code") or None,
        website=venue.get("website") or venue.get("resource_uri") or None,
        categories=frozenset({"event_space"}),
    )


def _text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("text")
    return value if isinstance(value, str) and value else None


def parse_eb_event(event: dict[str, Any], default_country: str = "DE") -> Optional[RawEventRecord]:
    """
    Map an Eventbrite listing. Events without a title are dropped.

    An expanded venue that fails validation leaves the event without a
    venue; the orchestrator then skips it.
    """
    if not isinstance(event, dict):
        return None
    title = _text(event.get("name"))
    if not title or not event.get("id"):
        return None

    venue_payload = event.get("venue")
    venue = parse_eb_venue(venue_payload, default_country) if venue_payload else None
    venue_id = event.get("venue_id")
    if venue_payload and venue is None:
        venue_id = None

    return RawEventRecord(
        provider=PROVIDER_ID,
        external_id=str(event["id"]),
        title=title.strip(),
        start_utc=(event.get("start") or {}).get("utc"),
        end_utc=(event.get("end") or {}).get("utc"),
        venue_external_id=str(venue_id) if venue_id else None,
        status="published" if event.get("status") == "live" else "draft",
        description=_text(event.get("description")),
        url=event.get("url") or None,
        image_url=(event.get("logo") or {}).get("url") or None,
        venue=venue,
    )


class EventbriteAdapter(BaseAdapter):
    """Event search adapter with continuation paging and venue-detail fan-out."""

    SOURCE_REGISTRY = SourceRegistry(
        name=PROVIDER_ID,
        base_url=EB_API_BASE,
        request_delay_s=1.0,
    )

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str,
        *,
        territory: Optional[TerritoryConfig] = None,
        window_days: int = 60,
        within_km: int = 50,
        now: Optional[Callable[[], datetime]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        pacer: Optional[RequestPacer] = None,
    ):
        super().__init__(client, retry_policy=retry_policy, pacer=pacer)
        self.token = token
        self.territory = territory or get_territory("de")
        self.window_days = window_days
        self.within_km = within_km
        self._now = now or (lambda: datetime.now(timezone.utc))

    def get_headers(self) -> dict[str, str]:
        headers = super().get_headers()
        headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def build_query(self, bounds: BoundingBox, start: datetime, end: datetime) -> EventbriteQuery:
        """Address search for the whole territory, lat/lng + radius for anything smaller."""
        window = {"range_start": _eb_timestamp(start), "range_end": _eb_timestamp(end)}

        if bounds == self.territory.bbox:
            return EventbriteQuery(
                address=self.territory.search_address, within_km=self.within_km, **window
            )

        lat, lng = bounds.center
        return EventbriteQuery(
            latitude=lat,
            longitude=lng,
            within_km=radius_km_for_box(bounds),
            **window,
        )

    def iter_units(self, bounds: BoundingBox) -> Iterator[EventbriteQuery]:
        start = self._now()
        yield self.build_query(bounds, start, start + timedelta(days=self.window_days))

    def unit_label(self, unit: Any) -> str:
        if isinstance(unit, EventbriteQuery):
            where = unit.address or f"{unit.latitude:.4f},{unit.longitude:.4f}"
            return f"search[{where} +{unit.within_km}km]"
        return super().unit_label(unit)

    async def fetch_page(self, unit: EventbriteQuery, page_token: Optional[str] = None) -> Page:
        params = unit.params()
        if page_token:
            params["continuation"] = page_token

        data = await self._request_json("GET", f"{EB_API_BASE}/events/search/", params=params)
        if not isinstance(data, dict):
            raise FatalProviderError(f"Unexpected Eventbrite payload: {type(data).__name__}")

        page = Page()
        for item in data.get("events") or []:
            event = parse_eb_event(item, self.territory.country_code)
            if event is None:
                page.dropped += 1
                continue
            page.records.append(event)

        pagination = data.get("pagination") or {}
        if pagination.get("has_more_items") and pagination.get("continuation"):
            page.next_token = pagination["continuation"]

        logger.info(
            "Eventbrite %s: %d events (%d dropped), more=%s",
            self.unit_label(unit), len(page.records), page.dropped, page.next_token is not None,
        )
        return page

    async def fetch_venue(self, venue_id: str) -> Optional[RawVenueRecord]:
        data = await self._request_json("GET", f"{EB_API_BASE}/venues/{venue_id}/")
        return parse_eb_venue(data, self.territory.country_code)

    async def resolve_event_venue(self, event: RawEventRecord) -> Optional[RawVenueRecord]:
        if event.venue is not None:
            return event.venue
        if not event.venue_external_id:
            return None

        logger.debug("Fetching venue details for %s (event %s)", event.venue_external_id, event.external_id)
        return await retry_with_backoff(
            lambda: self.fetch_venue(event.venue_external_id),
            self.retry_policy,
            label=f"{self.name} venue {event.venue_external_id}",
        )
