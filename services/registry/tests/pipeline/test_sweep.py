"""
Tests for the geo sweep scheduler.

Covers:
- Every unit is visited in order, pages followed until no next token
- A failing unit is skipped and the sweep continues (coverage)
- Auth errors abort the sweep
- Consecutive unit failures raise an alert
"""

from typing import Iterator, Optional
from unittest.mock import patch

import pytest

from services.registry.pipeline.entity_resolution import CandidateMatcher
from services.registry.pipeline.geo import BoundingBox, GridCell, generate_grid
from services.registry.pipeline.models import Page
from services.registry.pipeline.sweep import GeoSweepScheduler
from services.registry.pipeline.upsert import RunStats, UpsertOrchestrator
from services.registry.scrapers.base import (
    BaseAdapter,
    FatalProviderError,
    ProviderAuthError,
    RequestPacer,
    RetryableProviderError,
    RetryPolicy,
    SourceRegistry,
)
from services.registry.tests.factories import RecordingSleep, make_raw_venue

BOX = BoundingBox(lat_min=49.0, lat_max=50.0, lng_min=11.0, lng_max=12.0)


class ScriptedAdapter(BaseAdapter):
    """Adapter whose pages are scripted per (row, col, page_token)."""

    SOURCE_REGISTRY = SourceRegistry(
        name="fake", base_url="https://fake.example", request_delay_s=0.0, grid_step_deg=0.5,
    )

    def __init__(self, pages=None, errors=None, sleep=None):
        sleep = sleep or RecordingSleep()
        super().__init__(
            client=None,
            retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0, sleep=sleep, jitter=lambda a, b: 0.0),
            pacer=RequestPacer(0.0, sleep=sleep),
        )
        self.pages = pages or {}
        self.errors = errors or {}
        self.requests: list[tuple[int, int, Optional[str]]] = []

    def iter_units(self, bounds: BoundingBox) -> Iterator[GridCell]:
        return generate_grid(bounds, self.registry.grid_step_deg)

    async def fetch_page(self, unit: GridCell, page_token: Optional[str] = None) -> Page:
        key = (unit.row, unit.col, page_token)
        self.requests.append(key)
        if key in self.errors:
            raise self.errors[key]
        return self.pages.get(key, Page())


def _venue_at(cell_row: int, cell_col: int, ext: str):
    return make_raw_venue(
        provider="fake",
        external_id=ext,
        name=f"Venue {ext}",
        lat=49.1 + cell_row * 0.5,
        lng=11.1 + cell_col * 0.5,
    )


def _scheduler(adapter, store) -> GeoSweepScheduler:
    stats = RunStats(provider=adapter.name)
    orchestrator = UpsertOrchestrator(store, CandidateMatcher(store), stats, owner_id="system-owner")
    return GeoSweepScheduler(adapter, orchestrator)


@pytest.mark.asyncio
class TestGeoSweepScheduler:
    async def test_visits_every_cell_row_major(self, store):
        adapter = ScriptedAdapter()
        stats = await _scheduler(adapter, store).run(BOX)

        assert [(r, c) for r, c, _ in adapter.requests] == [(0, 0), (0, 1), (1, 0), (1, 1)]
        assert stats.cells_processed == 4
        assert stats.cells_failed == 0

    async def test_follows_pages_until_no_next_token(self, store):
        adapter = ScriptedAdapter(pages={
            (0, 0, None): Page(records=[_venue_at(0, 0, "a")], next_token="1"),
            (0, 0, "1"): Page(records=[_venue_at(0, 0, "b")], next_token="2"),
            (0, 0, "2"): Page(records=[]),
        })
        stats = await _scheduler(adapter, store).run(BOX)

        assert [key for key in adapter.requests if key[:2] == (0, 0)] == [
            (0, 0, None), (0, 0, "1"), (0, 0, "2"),
        ]
        assert stats.seen == 2

    async def test_failed_cell_is_skipped_and_sweep_continues(self, store):
        adapter = ScriptedAdapter(
            pages={
                (0, 0, None): Page(records=[_venue_at(0, 0, "a")]),
                (1, 1, None): Page(records=[_venue_at(1, 1, "d")]),
            },
            errors={(0, 1, None): FatalProviderError("HTTP 400")},
        )
        stats = await _scheduler(adapter, store).run(BOX)

        assert stats.cells_failed == 1
        assert stats.cells_processed == 3
        assert stats.inserted == 2
        assert (1, 1, None) in adapter.requests

    async def test_retryable_error_is_retried_before_skipping(self, store):
        adapter = ScriptedAdapter(errors={(0, 0, None): RetryableProviderError("HTTP 503")})
        stats = await _scheduler(adapter, store).run(BOX)

        assert adapter.requests.count((0, 0, None)) == 2
        assert stats.cells_failed == 1
        assert stats.cells_processed == 3

    async def test_auth_error_aborts_sweep(self, store):
        adapter = ScriptedAdapter(errors={(0, 1, None): ProviderAuthError("HTTP 401", status_code=401)})

        with pytest.raises(ProviderAuthError):
            await _scheduler(adapter, store).run(BOX)

        assert (1, 0, None) not in adapter.requests

    async def test_repeated_next_token_stops_paging(self, store):
        adapter = ScriptedAdapter(pages={
            (0, 0, None): Page(next_token="1"),
            (0, 0, "1"): Page(next_token="1"),
        })
        await _scheduler(adapter, store).run(BOX)

        assert adapter.requests.count((0, 0, "1")) == 1

    async def test_consecutive_failures_alert(self, store):
        error = FatalProviderError("HTTP 400")
        adapter = ScriptedAdapter(errors={
            (0, 0, None): error, (0, 1, None): error, (1, 0, None): error,
        })

        with patch("services.registry.scrapers.base.sentry_sdk.capture_message") as capture:
            stats = await _scheduler(adapter, store).run(BOX)

        assert stats.cells_failed == 3
        capture.assert_called_once()
        assert "3 consecutive units" in capture.call_args[0][0]
        # The last cell succeeded and reset the counter
        assert adapter.consecutive_failures == 0
