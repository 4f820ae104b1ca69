"""
Reverse geocoding endpoint.

POST /geocode/reverse  {"lat": 49.45, "lng": 11.08}
- 503 GEOCODER_NOT_CONFIGURED when no Mapbox token is set
- 502 GEOCODER_UNAVAILABLE when Mapbox cannot be reached
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse

router = APIRouter(prefix="/geocode", tags=["geocode"])


class ReverseGeocodeRequest(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


def _error(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message},
            "requestId": request.state.request_id,
        },
    )


@router.post("/reverse")
async def reverse_geocode(body: ReverseGeocodeRequest, request: Request):
    geocoder = request.app.state.geocoder
    if not geocoder.configured:
        return _error(request, 503, "GEOCODER_NOT_CONFIGURED", "Mapbox token not configured.")

    place = await geocoder.reverse(body.lat, body.lng)
    if place is None:
        return _error(request, 502, "GEOCODER_UNAVAILABLE", "Reverse geocoding failed.")

    return {
        "success": True,
        "data": place,
        "requestId": request.state.request_id,
    }
