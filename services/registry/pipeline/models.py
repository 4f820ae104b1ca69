"""
Record types flowing through the ingestion pipeline.

Raw* records are ephemeral: built by a provider adapter from one page of a
provider response and discarded once the upsert orchestrator has handled
them. Canonical* records mirror rows in the canonical store.

Attribution and category collections are typed here and only turned into
JSON / arrays at the store boundary (see venue_store.py).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class SourceAttribution:
    """One (provider, external id) pair that contributed to a canonical entity."""
    provider: str
    external_id: str
    url: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.provider, self.external_id)

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {"src": self.provider, "id": self.external_id}
        if self.url:
            data["url"] = self.url
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Optional["SourceAttribution"]:
        """Parse a stored attribution; entries without src/id are ignored."""
        if not isinstance(data, dict):
            return None
        src = data.get("src")
        ext_id = data.get("id")
        if not src or not ext_id:
            return None
        return cls(provider=str(src), external_id=str(ext_id), url=data.get("url"))


@dataclass
class RawVenueRecord:
    provider: str
    external_id: str
    name: str
    lat: float
    lng: float
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    categories: frozenset[str] = frozenset()

    @property
    def attribution(self) -> SourceAttribution:
        return SourceAttribution(self.provider, self.external_id)


@dataclass
class RawEventRecord:
    provider: str
    external_id: str
    title: str
    start_utc: Optional[str] = None
    end_utc: Optional[str] = None
    venue_external_id: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    image_url: Optional[str] = None
    # Venue embedded in the listing payload, when the provider expands it
    venue: Optional[RawVenueRecord] = None

    @property
    def attribution(self) -> SourceAttribution:
        return SourceAttribution(self.provider, self.external_id)


@dataclass
class CanonicalVenue:
    id: Optional[str]
    name: str
    lat: float
    lng: float
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    categories: frozenset[str] = frozenset()
    sources: tuple[SourceAttribution, ...] = ()
    created_by: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: RawVenueRecord, created_by: Optional[str] = None) -> "CanonicalVenue":
        return cls(
            id=None,
            name=raw.name,
            lat=raw.lat,
            lng=raw.lng,
            address=raw.address,
            city=raw.city,
            country=raw.country,
            postal_code=raw.postal_code,
            phone=raw.phone,
            website=raw.website,
            categories=frozenset(raw.categories),
            sources=(raw.attribution,),
            created_by=created_by,
        )


@dataclass
class CandidateVenue:
    """A canonical venue returned by a radius query, with its distance."""
    venue: CanonicalVenue
    distance_m: float


@dataclass
class CanonicalEvent:
    id: Optional[str]
    venue_id: str
    title: str
    lat: float
    lng: float
    start_utc: Optional[str] = None
    end_utc: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None
    ticket_url: Optional[str] = None
    images: frozenset[str] = frozenset()
    sources: tuple[SourceAttribution, ...] = ()
    organizer_id: Optional[str] = None


@dataclass
class VenuePatch:
    """Field-level changes to apply to one canonical venue. Unset fields are untouched."""
    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    categories: Optional[frozenset[str]] = None
    sources: Optional[tuple[SourceAttribution, ...]] = None

    def changes(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}

    @property
    def is_empty(self) -> bool:
        return not self.changes()


@dataclass
class EventPatch:
    description: Optional[str] = None
    ticket_url: Optional[str] = None
    images: Optional[frozenset[str]] = None
    sources: Optional[tuple[SourceAttribution, ...]] = None

    def changes(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}

    @property
    def is_empty(self) -> bool:
        return not self.changes()


@dataclass
class Page:
    """One provider response, already mapped into raw records."""
    records: list = field(default_factory=list)
    next_token: Optional[str] = None
    # Items the adapter excluded (no name / no coordinates)
    dropped: int = 0
