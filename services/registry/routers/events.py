"""
Live event aggregation endpoint.

POST /events/external
- Searches the event sources around an optional bounding box and date
  range, without touching the canonical store
- Sources without credentials or with failing searches are reported under
  data.warnings; the request itself still succeeds
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, field_validator, model_validator

from services.registry.pipeline.live_events import fetch_live_events
from services.registry.routers.ingest import BoundsPayload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


class ExternalEventsRequest(BaseModel):
    bounds: Optional[BoundsPayload] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    @field_validator("date_from", "date_to")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def check_window(self) -> "ExternalEventsRequest":
        if self.date_from and self.date_to and self.date_to <= self.date_from:
            raise ValueError("date_to must be after date_from")
        return self


@router.post("/external")
async def external_events(request: Request, body: Optional[ExternalEventsRequest] = None):
    body = body or ExternalEventsRequest()
    state = request.app.state

    result = await fetch_live_events(
        state.settings,
        state.http_client,
        bounds=body.bounds.to_bbox() if body.bounds else None,
        date_from=body.date_from,
        date_to=body.date_to,
    )

    return {
        "success": True,
        "data": result,
        "requestId": request.state.request_id,
    }
