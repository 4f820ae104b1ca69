"""
Tests for POST /ingest/run.

Tests:
- Request validation (providers, bounds)
- Setup failures map to 500 INGESTION_SETUP_FAILED
- Successful run returns the summary in the success envelope
- End-to-end Overpass run through the API with a mocked transport
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from services.registry.pipeline.geo import BoundingBox
from services.registry.tests.factories import json_response, mock_client

SUMMARY = {
    "ok": True,
    "seen": 3,
    "inserted": 2,
    "merged": 1,
    "eventsProcessed": 0,
    "timestamp": "2026-10-16T12:00:00+00:00",
    "providers": {},
    "totals": {},
}

NUREMBERG = {"south": 49.3, "west": 10.9, "north": 49.6, "east": 11.3}


class TestIngestRunValidation:
    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(self, client):
        response = await client.post("/ingest/run", json={"providers": ["songkick"]})

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_empty_provider_list_rejected(self, client):
        response = await client.post("/ingest/run", json={"providers": []})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_inverted_bounds_rejected(self, client):
        bounds = {**NUREMBERG, "south": 49.7}
        response = await client.post("/ingest/run", json={"bounds": bounds})

        assert response.status_code == 422
        assert "south must be less than north" in response.json()["error"]["message"]


class TestIngestRun:
    @pytest.mark.asyncio
    async def test_defaults_to_all_providers(self, client, app, store):
        run = AsyncMock(return_value=SUMMARY)
        with patch("services.registry.routers.ingest.run_ingestion", run):
            response = await client.post("/ingest/run")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"] == SUMMARY

        args, kwargs = run.call_args
        assert args[0] is app.state.settings
        assert kwargs["providers"] is None
        assert kwargs["bounds"] is None
        assert kwargs["store"] is store

    @pytest.mark.asyncio
    async def test_providers_and_bounds_forwarded(self, client):
        run = AsyncMock(return_value=SUMMARY)
        with patch("services.registry.routers.ingest.run_ingestion", run):
            await client.post("/ingest/run", json={"providers": ["osm", "tm"], "bounds": NUREMBERG})

        kwargs = run.call_args.kwargs
        assert kwargs["providers"] == ["osm", "tm"]
        assert kwargs["bounds"] == BoundingBox(lat_min=49.3, lat_max=49.6, lng_min=10.9, lng_max=11.3)

    @pytest.mark.asyncio
    async def test_setup_failure_is_500(self, client):
        failure = {"ok": False, "error": "Ticketmaster API key missing (TM_API_KEY)", "timestamp": "t"}
        with patch("services.registry.routers.ingest.run_ingestion", AsyncMock(return_value=failure)):
            response = await client.post("/ingest/run", json={"providers": ["tm"]})

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INGESTION_SETUP_FAILED"
        assert "TM_API_KEY" in body["error"]["message"]
        assert "requestId" in body

    @pytest.mark.asyncio
    async def test_overpass_run_end_to_end(self, client, app, store):
        def handler(request: httpx.Request) -> httpx.Response:
            return json_response({
                "elements": [
                    {"type": "node", "id": 1, "lat": 49.4521, "lon": 11.0767,
                     "tags": {"name": "Hirsch", "amenity": "music_venue"}},
                ]
            })

        app.state.http_client = mock_client(handler)
        app.state.settings.overpass_request_delay_s = 0.0

        response = await client.post("/ingest/run", json={"providers": ["osm"], "bounds": NUREMBERG})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["ok"] is True
        assert data["inserted"] == 1
        assert data["providers"]["osm"]["cellsFailed"] == 0
        assert store.only_venue().name == "Hirsch"
