"""
Tests for POST /events/external.

Tests:
- Request validation (bounds, date window)
- Bounds and dates are forwarded to the aggregation
- End-to-end aggregation through the API with a mocked transport
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from services.registry.pipeline.geo import BoundingBox
from services.registry.tests.factories import json_response, mock_client

RESULT = {
    "events": [],
    "venueCount": 0,
    "skipped": 0,
    "warnings": [],
    "timestamp": "2026-10-16T12:00:00+00:00",
}

NUREMBERG = {"south": 49.3, "west": 10.9, "north": 49.6, "east": 11.3}


class TestExternalEventsValidation:
    @pytest.mark.asyncio
    async def test_inverted_window_rejected(self, client):
        response = await client.post(
            "/events/external",
            json={"date_from": "2026-11-08T00:00:00Z", "date_to": "2026-11-01T00:00:00Z"},
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert "date_to must be after date_from" in body["error"]["message"]

    @pytest.mark.asyncio
    async def test_inverted_bounds_rejected(self, client):
        response = await client.post("/events/external", json={"bounds": {**NUREMBERG, "west": 11.5}})
        assert response.status_code == 422


class TestExternalEvents:
    @pytest.mark.asyncio
    async def test_defaults(self, client, app):
        fetch = AsyncMock(return_value=RESULT)
        with patch("services.registry.routers.events.fetch_live_events", fetch):
            response = await client.post("/events/external")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"] == RESULT
        assert "requestId" in body

        args, kwargs = fetch.call_args
        assert args == (app.state.settings, app.state.http_client)
        assert kwargs == {"bounds": None, "date_from": None, "date_to": None}

    @pytest.mark.asyncio
    async def test_bounds_and_window_forwarded(self, client):
        fetch = AsyncMock(return_value=RESULT)
        with patch("services.registry.routers.events.fetch_live_events", fetch):
            await client.post(
                "/events/external",
                json={
                    "bounds": NUREMBERG,
                    "date_from": "2026-11-01T00:00:00Z",
                    "date_to": "2026-11-08T00:00:00Z",
                },
            )

        kwargs = fetch.call_args.kwargs
        assert kwargs["bounds"] == BoundingBox(lat_min=49.3, lat_max=49.6, lng_min=10.9, lng_max=11.3)
        assert kwargs["date_from"] == datetime(2026, 11, 1, tzinfo=timezone.utc)
        assert kwargs["date_to"] == datetime(2026, 11, 8, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_aggregation_end_to_end(self, client, app, store):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "app.ticketmaster.com":
                return json_response({"page": {"totalElements": 0}})
            return json_response({
                "events": [{
                    "id": "E1",
                    "name": {"text": "Konzert im Hirsch"},
                    "start": {"utc": "2026-11-01T19:00:00Z"},
                    "status": "live",
                    "venue": {"id": "V1", "name": "Hirsch", "latitude": "49.4521", "longitude": "11.0767"},
                }],
                "pagination": {"has_more_items": False},
            })

        app.state.http_client = mock_client(handler)
        app.state.settings.tm_request_delay_s = 0.0
        app.state.settings.eb_request_delay_s = 0.0

        response = await client.post(
            "/events/external",
            json={"bounds": NUREMBERG, "date_from": "2026-10-16T00:00:00Z"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert [e["title"] for e in data["events"]] == ["Konzert im Hirsch"]
        assert data["events"][0]["venue"]["name"] == "Hirsch"
        assert data["warnings"] == []
        # Aggregation never writes to the canonical store
        assert store.venues == {}
