"""
Ingestion trigger endpoint.

POST /ingest/run
- Runs the requested providers (default: all) over the territory or an
  optional bounding box
- Blocks until the run completes and returns the run summary
- Setup failures (missing credentials, owner identity, store) return 500
  with code INGESTION_SETUP_FAILED
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field, model_validator
from starlette.responses import JSONResponse

from services.registry.pipeline.geo import BoundingBox
from services.registry.pipeline.ingest_runner import run_ingestion

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingest", tags=["ingest"])


class BoundsPayload(BaseModel):
    south: float = Field(ge=-90.0, le=90.0)
    west: float = Field(ge=-180.0, le=180.0)
    north: float = Field(ge=-90.0, le=90.0)
    east: float = Field(ge=-180.0, le=180.0)

    @model_validator(mode="after")
    def check_ordering(self) -> "BoundsPayload":
        if self.south >= self.north:
            raise ValueError("south must be less than north")
        if self.west >= self.east:
            raise ValueError("west must be less than east")
        return self

    def to_bbox(self) -> BoundingBox:
        return BoundingBox(
            lat_min=self.south, lat_max=self.north, lng_min=self.west, lng_max=self.east,
        )


class IngestRunRequest(BaseModel):
    providers: Optional[list[Literal["osm", "tm", "eb"]]] = Field(default=None, min_length=1)
    bounds: Optional[BoundsPayload] = None


@router.post("/run")
async def trigger_ingestion(request: Request, body: Optional[IngestRunRequest] = None):
    body = body or IngestRunRequest()
    state = request.app.state

    result = await run_ingestion(
        state.settings,
        providers=body.providers,
        bounds=body.bounds.to_bbox() if body.bounds else None,
        store=getattr(state, "store", None),
        client=getattr(state, "http_client", None),
    )

    if not result["ok"]:
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {"code": "INGESTION_SETUP_FAILED", "message": result["error"]},
                "requestId": request.state.request_id,
            },
        )

    return {
        "success": True,
        "data": result,
        "requestId": request.state.request_id,
    }
