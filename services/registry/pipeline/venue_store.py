"""
Canonical store boundary.

VenueStore is the set of queries and mutations the pipeline issues;
PostgresVenueStore implements it over an asyncpg pool with PostGIS.
InMemoryVenueStore keeps a transient registry in dicts (on-demand event
aggregation, tests).

Typed collections are (de)serialized here and nowhere else:
  sources    -> JSONB array of {"src", "id", "url"?} objects
  categories -> text[]
  images     -> text[]

Updates are merges, not overwrites: each patched column is combined with
the stored value inside one UPDATE, so the row lock taken by that statement
is the only serialization point between providers writing the same venue.
"""

import dataclasses
import itertools
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Protocol

import asyncpg

from services.registry.pipeline.geo import haversine_m
from services.registry.pipeline.merge import NAME_LENGTH_MARGIN, apply_event_patch, apply_venue_patch
from services.registry.pipeline.models import (
    CandidateVenue,
    CanonicalEvent,
    CanonicalVenue,
    EventPatch,
    SourceAttribution,
    VenuePatch,
)

logger = logging.getLogger(__name__)


class VenueStore(Protocol):
    async def find_candidates(
        self, name: str, lat: float, lng: float, radius_m: float
    ) -> list[CandidateVenue]: ...

    async def insert_venue(self, venue: CanonicalVenue) -> str: ...

    async def update_venue(self, venue_id: str, patch: VenuePatch) -> None: ...

    async def find_event_by_source(self, source: SourceAttribution) -> Optional[CanonicalEvent]: ...

    async def insert_event(self, event: CanonicalEvent) -> str: ...

    async def update_event(self, event_id: str, patch: EventPatch) -> None: ...

    async def ping(self) -> None: ...


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def sources_to_json(sources) -> str:
    return json.dumps([s.to_json() for s in sources])


def sources_from_json(raw: Any) -> tuple[SourceAttribution, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = json.loads(raw)
    parsed = (SourceAttribution.from_json(item) for item in raw or [])
    return tuple(s for s in parsed if s is not None)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def venue_from_row(row: asyncpg.Record) -> CanonicalVenue:
    return CanonicalVenue(
        id=str(row["id"]),
        name=row["name"],
        lat=row["lat"],
        lng=row["lng"],
        address=row["address"],
        city=row["city"],
        country=row["country"],
        postal_code=row["postal_code"],
        phone=row["phone"],
        website=row["website"],
        categories=frozenset(row["categories"] or []),
        sources=sources_from_json(row["sources"]),
        created_by=row["created_by"],
    )


def event_from_row(row: asyncpg.Record) -> CanonicalEvent:
    return CanonicalEvent(
        id=str(row["id"]),
        venue_id=str(row["venue_id"]),
        title=row["title"],
        lat=row["lat"],
        lng=row["lng"],
        start_utc=_format_timestamp(row["start_utc"]),
        end_utc=_format_timestamp(row["end_utc"]),
        status=row["status"],
        description=row["description"],
        ticket_url=row["ticket_url"],
        images=frozenset(row["images"] or []),
        sources=sources_from_json(row["sources"]),
        organizer_id=row["organizer_id"],
    )


def _patch_columns(changes: dict[str, Any]) -> dict[str, Any]:
    """Patch values in their column representation."""
    columns: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "sources":
            columns[key] = sources_to_json(value)
        elif isinstance(value, frozenset):
            columns[key] = sorted(value)
        else:
            columns[key] = value
    return columns


def _merge_expression(column: str, param: str) -> str:
    """
    SQL that merges one patch value into the column's current value.

    Mirrors merge.apply_venue_patch / apply_event_patch so that concurrent
    writers holding different reads of the same row all land their changes.
    """
    if column == "name":
        return (
            f"CASE WHEN length({param}::text) > length(name) + {NAME_LENGTH_MARGIN} "
            f"THEN {param}::text ELSE name END"
        )
    if column in ("categories", "images"):
        return (
            f"ARRAY(SELECT DISTINCT v FROM unnest({column} || {param}::text[]) AS v ORDER BY v)"
        )
    if column == "sources":
        # Union keyed by (src, id); an incoming entry replaces the stored one
        return (
            "COALESCE((SELECT jsonb_agg(e) FROM jsonb_array_elements(sources) AS e"
            f" WHERE NOT EXISTS (SELECT 1 FROM jsonb_array_elements({param}::jsonb) AS n"
            " WHERE n->>'src' = e->>'src' AND n->>'id' = e->>'id')), '[]'::jsonb)"
            f" || {param}::jsonb"
        )
    return f"COALESCE(NULLIF({column}, ''), {param}::text)"


def build_update_sql(table: str, row_id: str, changes: dict[str, Any]) -> tuple[str, list[Any]]:
    """Single UPDATE merging the patched columns into the row as currently stored."""
    columns = _patch_columns(changes)
    assignments = []
    args: list[Any] = []
    for i, (column, value) in enumerate(columns.items(), start=1):
        assignments.append(f"{column} = {_merge_expression(column, f'${i}')}")
        args.append(value)
    assignments.append("updated_at = now()")
    args.append(row_id)
    sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ${len(args)}"
    return sql, args


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_VENUE_COLUMNS = """
    id, name, lat, lng, address, city, country, postal_code, phone, website,
    categories, sources, created_by
"""

_POINT = "ST_SetSRID(ST_MakePoint({lng}, {lat}), 4326)::geography"


class PostgresVenueStore:
    """
    VenueStore over asyncpg + PostGIS.

    Usage:
        pool = await asyncpg.create_pool(settings.database_url)
        store = PostgresVenueStore(pool)
        await ensure_schema(pool)
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def ping(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.fetchval("SELECT 1")

    async def find_candidates(
        self, name: str, lat: float, lng: float, radius_m: float
    ) -> list[CandidateVenue]:
        """Canonical venues within radius_m of (lat, lng), nearest first."""
        point = _POINT.format(lng="$1", lat="$2")
        row_point = _POINT.format(lng="lng", lat="lat")
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_VENUE_COLUMNS},
                       ST_Distance({row_point}, {point}) AS distance_m
                FROM venues
                WHERE ST_DWithin({row_point}, {point}, $3)
                ORDER BY distance_m ASC
                """,
                lng,
                lat,
                radius_m,
            )
        return [CandidateVenue(venue=venue_from_row(r), distance_m=r["distance_m"]) for r in rows]

    async def insert_venue(self, venue: CanonicalVenue) -> str:
        venue_id = venue.id or str(uuid.uuid4())
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO venues (
                    id, name, lat, lng, address, city, country, postal_code,
                    phone, website, categories, sources, created_by
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::text[], $12::jsonb, $13)
                """,
                venue_id,
                venue.name,
                venue.lat,
                venue.lng,
                venue.address,
                venue.city,
                venue.country,
                venue.postal_code,
                venue.phone,
                venue.website,
                sorted(venue.categories),
                sources_to_json(venue.sources),
                venue.created_by,
            )
        return venue_id

    async def update_venue(self, venue_id: str, patch: VenuePatch) -> None:
        if patch.is_empty:
            return
        sql, args = build_update_sql("venues", venue_id, patch.changes())
        async with self.pool.acquire() as conn:
            await conn.execute(sql, *args)

    async def find_event_by_source(self, source: SourceAttribution) -> Optional[CanonicalEvent]:
        containment = json.dumps([{"src": source.provider, "id": source.external_id}])
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, venue_id, title, lat, lng, start_utc, end_utc, status,
                       description, ticket_url, images, sources, organizer_id
                FROM events
                WHERE sources @> $1::jsonb
                LIMIT 1
                """,
                containment,
            )
        return event_from_row(row) if row else None

    async def insert_event(self, event: CanonicalEvent) -> str:
        event_id = event.id or str(uuid.uuid4())
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO events (
                    id, venue_id, title, lat, lng, start_utc, end_utc, status,
                    description, ticket_url, images, sources, organizer_id
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::text[], $12::jsonb, $13)
                """,
                event_id,
                event.venue_id,
                event.title,
                event.lat,
                event.lng,
                _parse_timestamp(event.start_utc),
                _parse_timestamp(event.end_utc),
                event.status,
                event.description,
                event.ticket_url,
                sorted(event.images),
                sources_to_json(event.sources),
                event.organizer_id,
            )
        return event_id

    async def update_event(self, event_id: str, patch: EventPatch) -> None:
        if patch.is_empty:
            return
        sql, args = build_update_sql("events", event_id, patch.changes())
        async with self.pool.acquire() as conn:
            await conn.execute(sql, *args)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS postgis;

CREATE TABLE IF NOT EXISTS venues (
    id          text PRIMARY KEY,
    name        text NOT NULL,
    lat         double precision NOT NULL,
    lng         double precision NOT NULL,
    address     text,
    city        text,
    country     text,
    postal_code text,
    phone       text,
    website     text,
    categories  text[] NOT NULL DEFAULT '{}',
    sources     jsonb NOT NULL DEFAULT '[]'::jsonb,
    created_by  text,
    created_at  timestamptz NOT NULL DEFAULT now(),
    updated_at  timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS events (
    id           text PRIMARY KEY,
    venue_id     text NOT NULL REFERENCES venues(id),
    title        text NOT NULL,
    lat          double precision NOT NULL,
    lng          double precision NOT NULL,
    start_utc    timestamptz,
    end_utc      timestamptz,
    status       text,
    description  text,
    ticket_url   text,
    images       text[] NOT NULL DEFAULT '{}',
    sources      jsonb NOT NULL DEFAULT '[]'::jsonb,
    organizer_id text,
    created_at   timestamptz NOT NULL DEFAULT now(),
    updated_at   timestamptz NOT NULL DEFAULT now()
);

-- Spatial index for candidate radius queries
CREATE INDEX IF NOT EXISTS idx_venues_geography
ON venues USING gist ((ST_SetSRID(ST_MakePoint(lng, lat), 4326)::geography));

-- Attribution containment lookups
CREATE INDEX IF NOT EXISTS idx_venues_sources ON venues USING gin (sources);
CREATE INDEX IF NOT EXISTS idx_events_sources ON events USING gin (sources);
"""


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create tables, the PostGIS extension and indexes if missing."""
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Venue registry schema ensured")


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryVenueStore:
    """
    Dict-backed VenueStore with haversine radius search.

    Patches go through the same merge rules as PostgresVenueStore, applied
    to the current entry. Nothing outlives the instance.
    """

    def __init__(self):
        self.venues: dict[str, CanonicalVenue] = {}
        self.events: dict[str, CanonicalEvent] = {}
        self._ids = itertools.count(1)

    def _enter(self, op: str) -> None:
        """Called at the start of every store operation."""

    async def ping(self) -> None:
        self._enter("ping")

    async def find_candidates(
        self, name: str, lat: float, lng: float, radius_m: float
    ) -> list[CandidateVenue]:
        self._enter("find_candidates")
        found = []
        for venue in self.venues.values():
            distance = haversine_m(lat, lng, venue.lat, venue.lng)
            if distance <= radius_m:
                found.append(CandidateVenue(venue=venue, distance_m=distance))
        return sorted(found, key=lambda c: c.distance_m)

    async def insert_venue(self, venue: CanonicalVenue) -> str:
        self._enter("insert_venue")
        venue_id = f"venue-{next(self._ids)}"
        self.venues[venue_id] = dataclasses.replace(venue, id=venue_id)
        return venue_id

    async def update_venue(self, venue_id: str, patch: VenuePatch) -> None:
        self._enter("update_venue")
        self.venues[venue_id] = apply_venue_patch(self.venues[venue_id], patch)

    async def find_event_by_source(self, source: SourceAttribution) -> Optional[CanonicalEvent]:
        self._enter("find_event_by_source")
        for event in self.events.values():
            if any(s.key == source.key for s in event.sources):
                return event
        return None

    async def insert_event(self, event: CanonicalEvent) -> str:
        self._enter("insert_event")
        event_id = f"event-{next(self._ids)}"
        self.events[event_id] = dataclasses.replace(event, id=event_id)
        return event_id

    async def update_event(self, event_id: str, patch: EventPatch) -> None:
        self._enter("update_event")
        self.events[event_id] = apply_event_patch(self.events[event_id], patch)
