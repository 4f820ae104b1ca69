"""
Tests for the ingestion entry point.

Covers:
- Setup validation: unknown provider, missing credentials, missing owner, store down
- End-to-end Overpass run against a mocked transport and the in-memory store
- Concurrent providers converge on one canonical venue without losing attributions
- Repeated provider names run a single sweep
- Auth failure ends only that provider's run
"""

import httpx
import pytest

from services.registry.pipeline.geo import BoundingBox, get_territory
from services.registry.pipeline.ingest_runner import (
    ALL_PROVIDERS,
    build_adapter,
    run_ingestion,
    validate_setup,
)
from services.registry.pipeline.models import CanonicalVenue
from services.registry.scrapers.base import IngestionSetupError
from services.registry.scrapers.eventbrite import EventbriteAdapter
from services.registry.scrapers.overpass import OverpassAdapter
from services.registry.scrapers.ticketmaster import TicketmasterAdapter
from services.registry.tests.factories import (
    StoreUnavailable,
    YieldingVenueStore,
    json_response,
    make_raw_venue,
    mock_client,
)

# Smaller than one grid step for every swept provider: one unit each
NUREMBERG = BoundingBox(lat_min=49.3, lat_max=49.6, lng_min=10.9, lng_max=11.3)

OSM_ELEMENTS = {
    "elements": [
        {
            "type": "node", "id": 1, "lat": 49.4521, "lon": 11.0767,
            "tags": {"name": "Hirsch", "amenity": "music_venue", "addr:city": "Nürnberg"},
        },
        {
            "type": "way", "id": 7, "center": {"lat": 49.4300, "lon": 11.0900},
            "tags": {"name": "Z-Bau", "amenity": "arts_centre"},
        },
        {"type": "node", "id": 3, "lat": 49.44, "lon": 11.08, "tags": {"amenity": "bar"}},
    ]
}

TM_VENUES = {
    "_embedded": {
        "venues": [
            {
                "id": "K123",
                "name": "Hirsch Live Music GmbH",
                "location": {"latitude": "49.45213", "longitude": "11.07671"},
                "city": {"name": "Nürnberg"},
                "country": {"countryCode": "DE"},
            }
        ]
    },
    "_links": {},
}


def _router(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if "interpreter" in request.url.path:
            return json_response(OSM_ELEMENTS)
        if request.url.host == "app.ticketmaster.com":
            return json_response(TM_VENUES)
        return json_response({"events": [], "pagination": {}})
    return handler


class TestValidateSetup:
    def test_accepts_all_providers(self, test_settings):
        validate_setup(test_settings, list(ALL_PROVIDERS))

    def test_unknown_provider(self, test_settings):
        with pytest.raises(IngestionSetupError, match="Unknown provider"):
            validate_setup(test_settings, ["osm", "songkick"])

    def test_missing_ticketmaster_key(self, test_settings):
        test_settings.tm_api_key = ""
        with pytest.raises(IngestionSetupError, match="TM_API_KEY"):
            validate_setup(test_settings, ["tm"])
        # Not needed when Ticketmaster is not requested
        validate_setup(test_settings, ["osm"])

    def test_missing_eventbrite_token(self, test_settings):
        test_settings.eb_token = ""
        with pytest.raises(IngestionSetupError, match="EB_TOKEN"):
            validate_setup(test_settings, ["eb"])

    def test_missing_owner(self, test_settings):
        test_settings.system_owner_id = ""
        with pytest.raises(IngestionSetupError, match="SYSTEM_OWNER_ID"):
            validate_setup(test_settings, ["osm"])


class TestBuildAdapter:
    def test_adapters_per_provider(self, test_settings):
        territory = get_territory("de")
        client = httpx.AsyncClient()

        assert isinstance(build_adapter("osm", test_settings, client, territory), OverpassAdapter)
        assert isinstance(build_adapter("tm", test_settings, client, territory), TicketmasterAdapter)
        assert isinstance(build_adapter("eb", test_settings, client, territory), EventbriteAdapter)

    def test_settings_flow_into_adapter(self, test_settings):
        test_settings.overpass_grid_step_deg = 0.25
        test_settings.overpass_request_delay_s = 0.7
        adapter = build_adapter("osm", test_settings, httpx.AsyncClient(), get_territory("de"))

        assert adapter.grid_step_deg == 0.25
        assert adapter.pacer.min_interval_s == 0.7
        assert adapter.retry_policy.max_attempts == test_settings.overpass_max_attempts


@pytest.mark.asyncio
class TestRunIngestion:
    async def test_setup_error_returns_failure_without_requests(self, test_settings, store):
        calls = []
        test_settings.system_owner_id = ""

        result = await run_ingestion(
            test_settings, ["osm"], NUREMBERG, store, mock_client(_router(calls)),
        )

        assert result["ok"] is False
        assert "SYSTEM_OWNER_ID" in result["error"]
        assert "timestamp" in result
        assert calls == []

    async def test_unreachable_store_is_setup_failure(self, test_settings, store):
        calls = []
        store.errors["ping"] = StoreUnavailable("connection refused")

        result = await run_ingestion(
            test_settings, ["osm"], NUREMBERG, store, mock_client(_router(calls)),
        )

        assert result["ok"] is False
        assert "connection refused" in result["error"]
        assert calls == []

    async def test_unknown_territory_is_setup_failure(self, test_settings, store):
        test_settings.territory = "zz"
        result = await run_ingestion(test_settings, ["osm"], NUREMBERG, store, mock_client(_router([])))

        assert result["ok"] is False
        assert "Unknown territory" in result["error"]

    async def test_overpass_run_end_to_end(self, test_settings, store, recording_sleep):
        calls = []
        result = await run_ingestion(
            test_settings, ["osm"], NUREMBERG, store, mock_client(_router(calls)),
            sleep=recording_sleep,
        )

        assert result["ok"] is True
        assert (result["seen"], result["inserted"], result["merged"]) == (2, 2, 0)
        assert result["eventsProcessed"] == 0
        assert result["providers"]["osm"]["skipped"] == 1
        assert result["totals"]["cellsFailed"] == 0
        assert len(calls) == 1
        assert calls[0].method == "POST"
        assert {v.name for v in store.venues.values()} == {"Hirsch", "Z-Bau"}
        assert all(v.created_by == "system-owner" for v in store.venues.values())

    async def test_second_run_only_merges(self, test_settings, store, recording_sleep):
        client = mock_client(_router([]))
        await run_ingestion(test_settings, ["osm"], NUREMBERG, store, client, sleep=recording_sleep)
        snapshot = dict(store.venues)

        result = await run_ingestion(test_settings, ["osm"], NUREMBERG, store, client, sleep=recording_sleep)

        assert (result["inserted"], result["merged"]) == (0, 2)
        assert result["totals"]["unchanged"] == 2
        assert store.venues == snapshot

    async def test_concurrent_providers_converge(self, test_settings, store, recording_sleep):
        result = await run_ingestion(
            test_settings, ["osm", "tm"], NUREMBERG, store, mock_client(_router([])),
            sleep=recording_sleep,
        )

        assert result["ok"] is True
        assert set(result["providers"]) == {"osm", "tm"}
        assert result["seen"] == 3
        assert result["inserted"] == 2
        assert result["merged"] == 1
        assert len(store.venues) == 2
        assert store.attribution_keys() == {("osm", "node/1"), ("osm", "way/7"), ("tm", "K123")}
        hirsch = next(v for v in store.venues.values() if len(v.sources) == 2)
        assert hirsch.name == "Hirsch Live Music GmbH"

    async def test_concurrent_merges_into_one_venue_keep_all_attributions(
        self, test_settings, recording_sleep
    ):
        store = YieldingVenueStore()
        await store.insert_venue(CanonicalVenue.from_raw(make_raw_venue(), created_by="system-owner"))

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "app.ticketmaster.com":
                return json_response(TM_VENUES)
            return json_response({
                "events": [{
                    "id": "E1",
                    "name": {"text": "Konzert im Hirsch"},
                    "status": "live",
                    "venue": {"id": "V9", "name": "Hirsch", "latitude": "49.45211", "longitude": "11.07672"},
                }],
                "pagination": {"has_more_items": False},
            })

        result = await run_ingestion(
            test_settings, ["tm", "eb"], NUREMBERG, store, mock_client(handler),
            sleep=recording_sleep,
        )

        assert result["ok"] is True
        assert result["merged"] == 2
        venue = store.only_venue()
        assert {s.key for s in venue.sources} == {("osm", "node/1"), ("tm", "K123"), ("eb", "V9")}
        assert venue.name == "Hirsch Live Music GmbH"
        assert result["eventsProcessed"] == 1

    async def test_duplicate_providers_sweep_once(self, test_settings, store, recording_sleep):
        calls = []

        result = await run_ingestion(
            test_settings, ["osm", "osm"], NUREMBERG, store, mock_client(_router(calls)),
            sleep=recording_sleep,
        )

        assert list(result["providers"]) == ["osm"]
        assert len(calls) == 1
        assert result["inserted"] == 2

    async def test_auth_failure_ends_only_that_provider(self, test_settings, store, recording_sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "app.ticketmaster.com":
                return json_response({"fault": "Invalid ApiKey"}, status_code=401)
            return json_response(OSM_ELEMENTS)

        result = await run_ingestion(
            test_settings, ["osm", "tm"], NUREMBERG, store, mock_client(handler),
            sleep=recording_sleep,
        )

        assert result["ok"] is True
        assert result["providers"]["tm"]["ok"] is False
        assert "authentication failed" in result["providers"]["tm"]["error"]
        assert result["providers"]["osm"]["ok"] is True
        assert result["providers"]["osm"]["inserted"] == 2
