"""
Overpass API (OpenStreetMap) adapter for live-music venues.

Sweeps the territory grid one cell at a time and queries nodes and ways
tagged as music venues, theatres, arts centres, nightclubs, bars with live
music, and stadiums. Ways are returned with their center point.

Overpass has no pagination: one cell is one page. Each attempt rotates to
the next public mirror.
"""

import itertools
import logging
from typing import Any, Iterator, Optional

import httpx

from services.registry.pipeline.geo import BoundingBox, GridCell, generate_grid, parse_coordinates
from services.registry.pipeline.models import Page, RawVenueRecord
from .base import BaseAdapter, FatalProviderError, RequestPacer, RetryPolicy, SourceRegistry

logger = logging.getLogger(__name__)

OVERPASS_ENDPOINTS = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://lz4.overpass-api.de/api/interpreter",
    "https://z.overpass-api.de/api/interpreter",
]

PROVIDER_ID = "osm"

_QUERY_TEMPLATE = """[out:json][timeout:{timeout}];
(
  node({bbox})[amenity~"music_venue|theatre|arts_centre|nightclub"];
  way({bbox})[amenity~"music_venue|theatre|arts_centre|nightclub"];
  node({bbox})[amenity=bar][live_music=yes];
  way({bbox})[amenity=bar][live_music=yes];
  node({bbox})[leisure=stadium];
  way({bbox})[leisure=stadium];
);
out center tags;"""


def build_overpass_query(bbox: str, timeout_s: int = 60) -> str:
    return _QUERY_TEMPLATE.format(bbox=bbox, timeout=timeout_s)


def _format_address(tags: dict[str, str]) -> Optional[str]:
    street = tags.get("addr:street")
    number = tags.get("addr:housenumber")
    line = " ".join(p for p in (street, number) if p)
    return line or None


def parse_osm_element(element: dict[str, Any], country: str = "DE") -> Optional[RawVenueRecord]:
    """
    Map one Overpass element to a raw venue.

    Returns None when the element has no id, no name or no usable
    coordinates (ways carry theirs in "center").
    """
    if not isinstance(element, dict) or element.get("id") is None:
        return None
    tags = element.get("tags") or {}
    name = (tags.get("name") or "").strip()
    if not name:
        return None

    center = element.get("center") or {}
    coords = parse_coordinates(
        element.get("lat", center.get("lat")),
        element.get("lon", center.get("lon")),
    )
    if coords is None:
        return None

    categories = set()
    if tags.get("amenity"):
        categories.add(tags["amenity"])
    if tags.get("leisure"):
        categories.add(tags["leisure"])
    if tags.get("live_music") == "yes":
        categories.add("live_music")

    return RawVenueRecord(
        provider=PROVIDER_ID,
        external_id=f"{element.get('type', 'node')}/{element['id']}",
        name=name,
        lat=coords[0],
        lng=coords[1],
        address=_format_address(tags),
        city=tags.get("addr:city") or tags.get("addr:town") or tags.get("addr:village"),
        country=country,
        postal_code=tags.get("addr:postcode"),
        phone=tags.get("phone") or tags.get("contact:phone"),
        website=tags.get("website") or tags.get("contact:website") or tags.get("url"),
        categories=frozenset(categories),
    )


class OverpassAdapter(BaseAdapter):
    """Overpass adapter; one POST per grid cell, mirrors rotated per attempt."""

    SOURCE_REGISTRY = SourceRegistry(
        name=PROVIDER_ID,
        base_url=OVERPASS_ENDPOINTS[0],
        request_delay_s=0.2,
        grid_step_deg=0.5,
    )

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        grid_step_deg: Optional[float] = None,
        timeout_s: float = 60.0,
        country: str = "DE",
        endpoints: Optional[list[str]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        pacer: Optional[RequestPacer] = None,
    ):
        super().__init__(client, retry_policy=retry_policy, pacer=pacer)
        self.grid_step_deg = grid_step_deg or self.registry.grid_step_deg
        self.timeout_s = timeout_s
        self.country = country
        self._endpoints = itertools.cycle(endpoints or OVERPASS_ENDPOINTS)

    def iter_units(self, bounds: BoundingBox) -> Iterator[GridCell]:
        return generate_grid(bounds, self.grid_step_deg)

    async def fetch_page(self, unit: GridCell, page_token: Optional[str] = None) -> Page:
        endpoint = next(self._endpoints)
        query = build_overpass_query(unit.overpass_bbox(), int(self.timeout_s))
        logger.debug("Fetching %s from %s", unit, endpoint)

        data = await self._request_json(
            "POST",
            endpoint,
            data={"data": query},
            timeout=self.timeout_s,
        )
        elements = data.get("elements") if isinstance(data, dict) else None
        if not isinstance(elements, list):
            raise FatalProviderError(f"Overpass response for {unit} has no elements list")

        page = Page()
        for element in elements:
            venue = parse_osm_element(element, self.country)
            if venue is None:
                page.dropped += 1
                continue
            page.records.append(venue)

        logger.info(
            "Overpass %s: %d venues (%d dropped)", unit, len(page.records), page.dropped,
        )
        return page
