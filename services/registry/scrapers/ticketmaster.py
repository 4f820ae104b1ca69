"""
Ticketmaster Discovery API adapter.

The venues endpoint has no bounding-box search, so each grid cell is
queried by the geohash of its center plus a fixed radius. Results are
paginated by page number; a page is followed while the response links a
next page and the current page was not empty.

fetch_events() serves on-demand aggregation: one search of upcoming music
events around the center of a box, each event carrying its first embedded
venue.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import httpx

from services.registry.pipeline.geo import (
    BoundingBox,
    GridCell,
    TerritoryConfig,
    encode_geohash,
    generate_grid,
    get_territory,
    parse_coordinates,
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

TM_VENUES_URL = "https://app.ticketmaster.com/discovery/v2/venues.json"
TM_EVENTS_URL = "https://app.ticketmaster.com/discovery/v2/events.json"

PROVIDER_ID = "tm"
PAGE_SIZE = 200
GEOHASH_PRECISION = 9

# Event search radius bounds, km
EVENT_RADIUS_MIN_KM = 10
EVENT_RADIUS_MAX_KM = 500
KM_PER_DEGREE = 111


def parse_tm_venue(venue: dict[str, Any], default_country: str = "DE") -> Optional[RawVenueRecord]:
    """Map a Discovery API venue; None when it has no id, name or usable location."""
    if not isinstance(venue, dict):
        return None
    name = (venue.get("name") or "").strip()
    location = venue.get("location") or {}
    coords = parse_coordinates(location.get("latitude"), location.get("longitude"))
    if not name or not venue.get("id") or coords is None:
        return None

    address = venue.get("address") or {}
    city = venue.get("city") or {}
    country = venue.get("country") or {}

    return RawVenueRecord(
        provider=PROVIDER_ID,
        external_id=str(venue["id"]),
        name=name,
        lat=coords[0],
        lng=coords[1],
        address=address.get("line1") or None,
        city=city.get("name") or None,
        country=country.get("countryCode") or default_country,
        postal_code=venue.get("postalCode") or address.get("postalCode") or None,
        website=venue.get("url") or None,
        categories=frozenset({"music_venue"}),
    )


def _tm_start(dates: dict[str, Any]) -> Optional[str]:
    start = dates.get("start") or {}
    if start.get("dateTime"):
        return start["dateTime"]
    local_date = start.get("localDate")
    if not local_date:
        return None
    # Local time only; events without one are listed for the evening
    return f"{local_date}T{start.get('localTime') or '20:00:00'}"


def _largest_image(images: Any) -> Optional[str]:
    if not isinstance(images, list):
        return None
    sized = [img for img in images if isinstance(img, dict) and img.get("url")]
    if not sized:
        return None
    best = max(sized, key=lambda img: (img.get("width") or 0) * (img.get("height") or 0))
    return best["url"]


def parse_tm_event(event: dict[str, Any], default_country: str = "DE") -> Optional[RawEventRecord]:
    """
    Map a Discovery API event with its first embedded venue.

    Events without an id, a name or a usable venue are dropped.
    """
    if not isinstance(event, dict):
        return None
    title = (event.get("name") or "").strip()
    if not title or not event.get("id"):
        return None

    venues = (event.get("_embedded") or {}).get("venues") or []
    venue = parse_tm_venue(venues[0], default_country) if venues else None
    if venue is None:
        return None

    dates = event.get("dates") or {}
    status_code = (dates.get("status") or {}).get("code")
    return RawEventRecord(
        provider=PROVIDER_ID,
        external_id=str(event["id"]),
        title=title,
        start_utc=_tm_start(dates),
        end_utc=(dates.get("end") or {}).get("dateTime"),
        venue_external_id=venue.external_id,
        status="cancelled" if status_code == "cancelled" else "published",
        description=event.get("info") or None,
        url=event.get("url") or None,
        image_url=_largest_image(event.get("images")),
        venue=venue,
    )


def _tm_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def event_search_radius_km(bounds: BoundingBox) -> int:
    span_deg = max(bounds.lat_max - bounds.lat_min, bounds.lng_max - bounds.lng_min)
    return min(max(round(span_deg * KM_PER_DEGREE), EVENT_RADIUS_MIN_KM), EVENT_RADIUS_MAX_KM)


class TicketmasterAdapter(BaseAdapter):
    """Discovery API adapter; geohash + radius per grid cell, numbered pages."""

    SOURCE_REGISTRY = SourceRegistry(
        name=PROVIDER_ID,
        base_url=TM_VENUES_URL,
        request_delay_s=0.5,
        grid_step_deg=0.75,
    )

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        *,
        territory: Optional[TerritoryConfig] = None,
        grid_step_deg: Optional[float] = None,
        radius_km: int = 50,
        retry_policy: Optional[RetryPolicy] = None,
        pacer: Optional[RequestPacer] = None,
    ):
        super().__init__(client, retry_policy=retry_policy, pacer=pacer)
        self.api_key = api_key
        self.territory = territory or get_territory("de")
        self.grid_step_deg = grid_step_deg or self.registry.grid_step_deg
        self.radius_km = radius_km

    def iter_units(self, bounds: BoundingBox) -> Iterator[GridCell]:
        return generate_grid(bounds, self.grid_step_deg)

    def build_params(self, unit: GridCell, page: int) -> dict[str, str]:
        lat, lng = unit.center
        return {
            "apikey": self.api_key,
            "countryCode": self.territory.country_code,
            "geoPoint": encode_geohash(lat, lng, GEOHASH_PRECISION),
            "radius": str(self.radius_km),
            "unit": "km",
            "locale": self.territory.locale,
            "size": str(PAGE_SIZE),
            "page": str(page),
        }

    async def fetch_page(self, unit: GridCell, page_token: Optional[str] = None) -> Page:
        page_number = int(page_token or 0)
        params = self.build_params(unit, page_number)
        logger.debug("Fetching TM venues for %s geohash=%s page=%d", unit, params["geoPoint"], page_number)

        data = await self._request_json("GET", TM_VENUES_URL, params=params)
        if not isinstance(data, dict):
            raise FatalProviderError(f"Unexpected TM payload for {unit}: {type(data).__name__}")

        venues = (data.get("_embedded") or {}).get("venues") or []
        page = Page()
        for item in venues:
            venue = parse_tm_venue(item, self.territory.country_code)
            if venue is None:
                page.dropped += 1
                continue
            page.records.append(venue)

        has_next = bool((data.get("_links") or {}).get("next"))
        if has_next and venues:
            page.next_token = str(page_number + 1)

        logger.info(
            "TM %s page %d: %d venues (%d dropped)",
            unit, page_number, len(page.records), page.dropped,
        )
        return page

    # -- Event search --------------------------------------------------------

    def build_event_params(
        self, bounds: BoundingBox, start: datetime, end: datetime
    ) -> dict[str, str]:
        lat, lng = bounds.center
        return {
            "apikey": self.api_key,
            "countryCode": self.territory.country_code,
            "locale": self.territory.locale,
            "classificationName": "Music",
            "latlong": f"{lat:.6f},{lng:.6f}",
            "radius": str(event_search_radius_km(bounds)),
            "unit": "km",
            "startDateTime": _tm_timestamp(start),
            "endDateTime": _tm_timestamp(end),
            "size": str(PAGE_SIZE),
            "sort": "date,asc",
        }

    async def _fetch_events_once(self, params: dict[str, str]) -> Page:
        data = await self._request_json("GET", TM_EVENTS_URL, params=params)
        if not isinstance(data, dict):
            raise FatalProviderError(f"Unexpected TM events payload: {type(data).__name__}")

        page = Page()
        for item in (data.get("_embedded") or {}).get("events") or []:
            event = parse_tm_event(item, self.territory.country_code)
            if event is None:
                page.dropped += 1
                continue
            page.records.append(event)
        return page

    async def fetch_events(self, bounds: BoundingBox, start: datetime, end: datetime) -> Page:
        """First page of upcoming music events around the box center, retried."""
        params = self.build_event_params(bounds, start, end)
        page = await retry_with_backoff(
            lambda: self._fetch_events_once(params),
            self.retry_policy,
            label=f"{self.name} events {params['latlong']} +{params['radius']}km",
        )
        logger.info("TM event search: %d events (%d dropped)", len(page.records), page.dropped)
        return page
