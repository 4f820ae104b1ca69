"""
Geo sweep scheduler: drives one provider adapter across its sweep units.

Units (grid cells for swept providers, a search query for query-driven
ones) are visited in the adapter's deterministic order; each unit's pages
are followed until the provider reports no next page. Requests are paced
by the adapter's RequestPacer.

A unit whose page fetch fails after retries is logged, counted in
cells_failed and skipped; the sweep always continues to the next unit.
Only ProviderAuthError aborts the sweep, since every further request
would fail the same way.
"""

import logging
from typing import Any

from services.registry.pipeline.geo import BoundingBox
from services.registry.pipeline.upsert import RunStats, UpsertOrchestrator
from services.registry.scrapers.base import BaseAdapter, ProviderAuthError

logger = logging.getLogger(__name__)


class GeoSweepScheduler:
    def __init__(self, adapter: BaseAdapter, orchestrator: UpsertOrchestrator):
        self.adapter = adapter
        self.orchestrator = orchestrator

    @property
    def stats(self) -> RunStats:
        return self.orchestrator.stats

    async def run(self, bounds: BoundingBox) -> RunStats:
        """Sweep every unit covering bounds. Returns the run's stats."""
        logger.info("Starting %s sweep over %s", self.adapter.name, bounds)

        for unit in self.adapter.iter_units(bounds):
            try:
                await self.sweep_unit(unit)
            except ProviderAuthError:
                logger.error("%s: credentials rejected, aborting sweep", self.adapter.name)
                raise
            except Exception:
                logger.exception(
                    "%s: error processing %s, continuing with next unit",
                    self.adapter.name, self.adapter.unit_label(unit),
                )
                self.stats.cells_failed += 1
                self.adapter.record_unit_failure()
            else:
                self.stats.cells_processed += 1
                self.adapter.record_unit_success()

        logger.info(
            "%s sweep done: %d units ok, %d failed, seen=%d inserted=%d merged=%d",
            self.adapter.name, self.stats.cells_processed, self.stats.cells_failed,
            self.stats.seen, self.stats.inserted, self.stats.merged,
        )
        return self.stats

    async def sweep_unit(self, unit: Any) -> None:
        """Fetch and process every page of one unit."""
        page_token = None
        while True:
            page = await self.adapter.fetch_page_with_retry(unit, page_token)
            await self.orchestrator.process_page(page, self.adapter)

            if not page.next_token or page.next_token == page_token:
                return
            page_token = page.next_token
