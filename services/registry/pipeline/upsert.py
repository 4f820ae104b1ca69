"""
Upsert orchestrator: one raw record at a time through match -> merge -> store.

Per raw venue:
  Fetched -> Normalized -> Matched{none|one} -> Inserted | Merged -> Counted

Per raw event:
  resolve venue (embedded or secondary fetch) -> upsert venue
  -> attach event by (provider, external id) containment -> Inserted | Merged

Terminal states are Inserted, Merged, Skipped(reason) and Failed(reason).
Record-level failures never escape process_page(); they are counted on the
run-scoped RunStats and, for store failures, written to the dead letter
queue.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from services.registry.pipeline.entity_resolution import CandidateMatcher, normalize_name
from services.registry.pipeline.merge import build_event, compute_event_patch, compute_venue_patch
from services.registry.pipeline.models import CanonicalVenue, Page, RawEventRecord, RawVenueRecord
from services.registry.pipeline.venue_store import VenueStore
from services.registry.scrapers.base import DeadLetterQueue, ProviderAuthError, ProviderError

logger = logging.getLogger(__name__)


class RecordState(str, Enum):
    """Terminal state of one raw record."""
    INSERTED = "inserted"
    MERGED = "merged"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RecordOutcome:
    state: RecordState
    entity_id: Optional[str] = None
    reason: Optional[str] = None
    # Canonical coordinates of the resolved venue, propagated to events
    lat: Optional[float] = None
    lng: Optional[float] = None
    changed: bool = True


@dataclass
class RunStats:
    """
    Run-scoped counters for one provider pipeline.

    seen counts venues that reached the matcher; records the adapter dropped
    for a missing name or coordinates are only counted in skipped.
    merged includes unchanged (matched, but the patch was empty).
    An event's venue is counted once per run, however many listings it has.
    """
    provider: str
    seen: int = 0
    inserted: int = 0
    merged: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0
    events_processed: int = 0
    events_inserted: int = 0
    events_merged: int = 0
    cells_processed: int = 0
    cells_failed: int = 0
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: Optional[str] = None
    error: Optional[str] = None

    def finish(self, error: Optional[str] = None) -> None:
        self.finished_at = datetime.now(timezone.utc).isoformat()
        self.error = error

    def to_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "ok": self.error is None,
            "seen": self.seen,
            "inserted": self.inserted,
            "merged": self.merged,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
            "eventsProcessed": self.events_processed,
            "cellsFailed": self.cells_failed,
            "timestamp": self.finished_at or datetime.now(timezone.utc).isoformat(),
        }
        if self.error:
            summary["error"] = self.error
        return summary


class UpsertOrchestrator:
    """
    Sequences matcher, merge policy and store mutations for one provider.

    Usage:
        orchestrator = UpsertOrchestrator(store, CandidateMatcher(store), stats, owner_id)
        await orchestrator.process_page(page, adapter)
    """

    def __init__(
        self,
        store: VenueStore,
        matcher: CandidateMatcher,
        stats: RunStats,
        owner_id: Optional[str] = None,
        dead_letter: Optional[DeadLetterQueue] = None,
    ):
        self.store = store
        self.matcher = matcher
        self.stats = stats
        self.owner_id = owner_id
        self.dead_letter = dead_letter
        # (provider, venue external id) -> outcome of that venue's upsert this run
        self._resolved_venues: dict[tuple[str, str], RecordOutcome] = {}

    async def process_page(self, page: Page, adapter=None) -> None:
        """Handle every record of a page in arrival order."""
        self.stats.skipped += page.dropped
        for record in page.records:
            if isinstance(record, RawEventRecord):
                await self.upsert_event(record, adapter)
            else:
                await self.upsert_venue(record)

    # -- Venues --------------------------------------------------------------

    async def upsert_venue(self, raw: RawVenueRecord) -> RecordOutcome:
        key = normalize_name(raw.name)
        if not key:
            self.stats.skipped += 1
            return RecordOutcome(RecordState.SKIPPED, reason="empty normalized name")

        self.stats.seen += 1
        try:
            match = await self.matcher.match(raw)
            if match.venue is None:
                venue = CanonicalVenue.from_raw(raw, created_by=self.owner_id)
                venue_id = await self.store.insert_venue(venue)
                self.stats.inserted += 1
                logger.debug("Inserted venue %r (%s/%s)", raw.name, raw.provider, raw.external_id)
                return RecordOutcome(RecordState.INSERTED, venue_id, lat=raw.lat, lng=raw.lng)

            existing = match.venue
            patch = compute_venue_patch(existing, raw)
            if not patch.is_empty:
                await self.store.update_venue(existing.id, patch)
            else:
                self.stats.unchanged += 1
            self.stats.merged += 1
            logger.debug(
                "Merged venue %r -> %r (%.1fm, %d fields)",
                raw.name, existing.name, match.distance_m or 0.0, len(patch.changes()),
            )
            return RecordOutcome(
                RecordState.MERGED,
                existing.id,
                lat=existing.lat,
                lng=existing.lng,
                changed=not patch.is_empty,
            )
        except Exception as exc:
            return self._record_failure("venue", raw, exc)

    # -- Events --------------------------------------------------------------

    async def upsert_event(self, raw: RawEventRecord, adapter=None) -> RecordOutcome:
        """
        Resolve the event's venue, upsert it, then attach the event.

        A venue is upserted once per run; later listings at the same venue
        reuse the first outcome and skip the venue-detail fetch.
        """
        venue_key = self._venue_key(raw)
        cached = self._resolved_venues.get(venue_key) if venue_key else None
        if cached is not None:
            return await self.attach_event(raw, cached.entity_id, cached.lat, cached.lng)

        try:
            if adapter is not None:
                venue = await adapter.resolve_event_venue(raw)
            else:
                venue = raw.venue
        except ProviderAuthError:
            raise
        except ProviderError as exc:
            logger.warning("Skipping event %s: venue lookup failed: %s", raw.external_id, exc)
            self.stats.skipped += 1
            return RecordOutcome(RecordState.SKIPPED, reason=f"venue lookup failed: {exc}")

        if venue is None:
            logger.info("Skipping event %s - no venue data", raw.external_id)
            self.stats.skipped += 1
            return RecordOutcome(RecordState.SKIPPED, reason="no resolvable venue")

        venue_outcome = await self.upsert_venue(venue)
        if venue_outcome.state not in (RecordState.INSERTED, RecordState.MERGED):
            return RecordOutcome(
                RecordState.SKIPPED, reason=f"venue {venue_outcome.state.value}",
            )
        self._resolved_venues[venue.attribution.key] = venue_outcome

        return await self.attach_event(
            raw, venue_outcome.entity_id, venue_outcome.lat, venue_outcome.lng,
        )

    @staticmethod
    def _venue_key(raw: RawEventRecord) -> Optional[tuple[str, str]]:
        if raw.venue is not None:
            return raw.venue.attribution.key
        if raw.venue_external_id:
            return (raw.provider, raw.venue_external_id)
        return None

    async def attach_event(
        self, raw: RawEventRecord, venue_id: str, lat: float, lng: float
    ) -> RecordOutcome:
        """Insert the event or merge it into the one sharing its attribution."""
        incoming = build_event(raw, venue_id, lat, lng, organizer_id=self.owner_id)
        try:
            existing = await self.store.find_event_by_source(raw.attribution)
            if existing is None:
                event_id = await self.store.insert_event(incoming)
                self.stats.events_processed += 1
                self.stats.events_inserted += 1
                return RecordOutcome(RecordState.INSERTED, event_id, lat=lat, lng=lng)

            patch = compute_event_patch(existing, incoming)
            if not patch.is_empty:
                await self.store.update_event(existing.id, patch)
            self.stats.events_processed += 1
            self.stats.events_merged += 1
            return RecordOutcome(
                RecordState.MERGED, existing.id, lat=existing.lat, lng=existing.lng,
                changed=not patch.is_empty,
            )
        except Exception as exc:
            return self._record_failure("event", raw, exc)

    # -- Failures ------------------------------------------------------------

    def _record_failure(self, kind: str, raw: Any, exc: Exception) -> RecordOutcome:
        logger.exception("Error upserting %s %s/%s", kind, raw.provider, raw.external_id)
        self.stats.failed += 1
        if self.dead_letter is not None:
            item = asdict(raw)
            item["kind"] = kind
            self.dead_letter.add(raw.provider, item, str(exc))
        return RecordOutcome(RecordState.FAILED, reason=str(exc))
