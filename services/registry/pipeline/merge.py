"""
Field-level merge policy for canonical venues and events.

The policy is additive:
  - name: existing name wins unless the incoming one is more than
    NAME_LENGTH_MARGIN characters longer
  - nullable scalars (address, city, country, postal code, phone, website):
    filled only when the canonical value is absent
  - categories / images: set union
  - sources: union keyed by (provider, external id); an incoming entry with
    an existing key replaces it in place

Because every rule is fill-missing, union or a monotone length comparison,
applying the same raw record twice yields an empty second patch, and the
attribution set does not depend on provider order.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from services.registry.pipeline.models import (
    CanonicalEvent,
    CanonicalVenue,
    EventPatch,
    RawEventRecord,
    RawVenueRecord,
    SourceAttribution,
    VenuePatch,
)

NAME_LENGTH_MARGIN = 5

_VENUE_FILL_FIELDS = ("address", "city", "country", "postal_code", "phone", "website")


def get_better_name(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    """Prefer the existing name unless the incoming one is clearly more descriptive."""
    if not existing:
        return incoming
    if not incoming:
        return existing
    if len(incoming) > len(existing) + NAME_LENGTH_MARGIN:
        return incoming
    return existing


def merge_sources(
    existing: Iterable[SourceAttribution],
    incoming: Iterable[SourceAttribution],
) -> tuple[SourceAttribution, ...]:
    """Union keyed by (provider, external id); later entries replace earlier ones."""
    merged: dict[tuple[str, str], SourceAttribution] = {}
    for source in existing:
        merged[source.key] = source
    for source in incoming:
        merged[source.key] = source
    return tuple(merged.values())


def merge_values(existing: Iterable[str], incoming: Iterable[str]) -> frozenset[str]:
    return frozenset(existing) | frozenset(v for v in incoming if v)


def _sources_changed(
    existing: tuple[SourceAttribution, ...],
    merged: tuple[SourceAttribution, ...],
) -> bool:
    return {s.key: s for s in existing} != {s.key: s for s in merged}


def compute_venue_patch(existing: CanonicalVenue, raw: RawVenueRecord) -> VenuePatch:
    """
    Patch that unifies a raw sighting into its matched canonical venue.

    Returns an empty patch when the sighting contributes nothing new.
    """
    patch = VenuePatch()

    better = get_better_name(existing.name, raw.name)
    if better != existing.name:
        patch.name = better

    for field_name in _VENUE_FILL_FIELDS:
        incoming = getattr(raw, field_name)
        if incoming and not getattr(existing, field_name):
            setattr(patch, field_name, incoming)

    categories = merge_values(existing.categories, raw.categories)
    if categories != existing.categories:
        patch.categories = categories

    sources = merge_sources(existing.sources, [raw.attribution])
    if _sources_changed(existing.sources, sources):
        patch.sources = sources

    return patch


def apply_venue_patch(venue: CanonicalVenue, patch: VenuePatch) -> CanonicalVenue:
    """
    Return a copy of venue with patch merged in.

    The patch is applied with the same rules that produced it, against the
    venue as it is now. A patch computed from an older read of the venue
    therefore never drops what another writer added in between. This is the
    in-memory counterpart of PostgresVenueStore.update_venue.
    """
    data = dict(venue.__dict__)
    if patch.name:
        data["name"] = get_better_name(venue.name, patch.name)
    for field_name in _VENUE_FILL_FIELDS:
        incoming = getattr(patch, field_name)
        if incoming and not data[field_name]:
            data[field_name] = incoming
    if patch.categories is not None:
        data["categories"] = merge_values(venue.categories, patch.categories)
    if patch.sources is not None:
        data["sources"] = merge_sources(venue.sources, patch.sources)
    return CanonicalVenue(**data)


def build_event(
    raw: RawEventRecord,
    venue_id: str,
    lat: float,
    lng: float,
    organizer_id: Optional[str] = None,
) -> CanonicalEvent:
    """Canonical event for a raw listing, bound to its resolved venue."""
    return CanonicalEvent(
        id=None,
        venue_id=venue_id,
        title=raw.title,
        lat=lat,
        lng=lng,
        start_utc=raw.start_utc,
        end_utc=raw.end_utc,
        status=raw.status,
        description=raw.description,
        ticket_url=raw.url,
        images=frozenset([raw.image_url]) if raw.image_url else frozenset(),
        sources=(raw.attribution,),
        organizer_id=organizer_id,
    )


def compute_event_patch(existing: CanonicalEvent, incoming: CanonicalEvent) -> EventPatch:
    """Same fill-missing-or-union policy as venues, for description, ticket url and images."""
    patch = EventPatch()

    if incoming.description and not existing.description:
        patch.description = incoming.description
    if incoming.ticket_url and not existing.ticket_url:
        patch.ticket_url = incoming.ticket_url

    images = merge_values(existing.images, incoming.images)
    if images != existing.images:
        patch.images = images

    sources = merge_sources(existing.sources, incoming.sources)
    if _sources_changed(existing.sources, sources):
        patch.sources = sources

    return patch


def apply_event_patch(event: CanonicalEvent, patch: EventPatch) -> CanonicalEvent:
    """Merge counterpart of apply_venue_patch for events."""
    data = dict(event.__dict__)
    for field_name in ("description", "ticket_url"):
        incoming = getattr(patch, field_name)
        if incoming and not data[field_name]:
            data[field_name] = incoming
    if patch.images is not None:
        data["images"] = merge_values(event.images, patch.images)
    if patch.sources is not None:
        data["sources"] = merge_sources(event.sources, patch.sources)
    return CanonicalEvent(**data)
