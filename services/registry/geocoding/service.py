"""
ReverseGeocoder: Mapbox reverse geocoding client.

Mapbox /geocoding/v5/mapbox.places/{lng},{lat}.json returns:
  {
    "features": [{
      "text": "Hirsch",
      "place_name": "Vogelweiherstraße 66, 90441 Nürnberg, Deutschland",
      "place_type": ["address"],
      "context": [
        {"id": "place.123", "text": "Nürnberg"},
        {"id": "region.456", "text": "Bayern"}
      ]
    }]
  }

Result shape:
  {"address": str, "city": str, "region": str, "coordinates": "lat, lng"}

No feature found -> address falls back to the formatted coordinates and
city to UNKNOWN_PLACE.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

_MAPBOX_BASE = "https://api.mapbox.com/geocoding/v5/mapbox.places"

_PLACE_TYPES = "place,locality,neighborhood,address"

UNKNOWN_PLACE = "Unbekannter Ort"


def format_coordinates(lat: float, lng: float) -> str:
    return f"{lat:.4f}, {lng:.4f}"


def parse_feature(payload: dict[str, Any], lat: float, lng: float) -> dict[str, str]:
    """Extract address/city/region from the first Mapbox feature."""
    coordinates = format_coordinates(lat, lng)
    features = payload.get("features") or []
    if not features:
        return {
            "address": coordinates,
            "city": UNKNOWN_PLACE,
            "region": "",
            "coordinates": coordinates,
        }

    feature = features[0]
    city = ""
    region = ""
    for item in feature.get("context") or []:
        item_id = item.get("id", "")
        if item_id.startswith("place."):
            city = item.get("text", "")
        elif item_id.startswith(("region.", "province.")):
            region = item.get("text", "")

    # The feature itself is the place when no context entry names one
    if not city and "place" in (feature.get("place_type") or []):
        city = feature.get("text", "")

    return {
        "address": feature.get("place_name") or coordinates,
        "city": city or feature.get("text") or UNKNOWN_PLACE,
        "region": region,
        "coordinates": coordinates,
    }


class ReverseGeocoder:
    """
    Mapbox reverse geocoding.

    Usage:
        geocoder = ReverseGeocoder(token=settings.mapbox_token, client=http_client)
        place = await geocoder.reverse(49.4521, 11.0767)
    """

    def __init__(
        self,
        token: str,
        client: httpx.AsyncClient | None = None,
        language: str = "de",
        timeout_s: float = 8.0,
    ) -> None:
        self._token = token
        self._client = client
        self._language = language
        self._timeout_s = timeout_s

    @property
    def configured(self) -> bool:
        return bool(self._token)

    async def reverse(self, lat: float, lng: float) -> dict[str, str] | None:
        """
        Resolve coordinates to a place.

        Returns None when the token is missing or Mapbox is unreachable;
        callers must handle None.
        """
        if not self._token:
            logger.warning("MAPBOX_TOKEN not set; skipping reverse geocode for %.4f,%.4f", lat, lng)
            return None

        url = f"{_MAPBOX_BASE}/{lng},{lat}.json"
        params = {
            "types": _PLACE_TYPES,
            "language": self._language,
            "limit": "1",
            "access_token": self._token,
        }

        try:
            if self._client is not None:
                resp = await self._client.get(url, params=params, timeout=self._timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    resp = await client.get(url, params=params)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Mapbox returned %d for %.4f,%.4f: %s",
                exc.response.status_code, lat, lng, exc.response.text[:200],
            )
            return None
        except Exception:
            logger.exception("Mapbox reverse geocode failed for %.4f,%.4f", lat, lng)
            return None

        return parse_feature(payload, lat, lng)
