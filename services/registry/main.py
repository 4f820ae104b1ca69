"""
Venue registry FastAPI service: ingestion trigger, live events, health checks and reverse geocoding.

Entrypoint: uvicorn services.registry.main:app --host 0.0.0.0 --port 8000
"""

import logging
import uuid
from contextlib import asynccontextmanager

import asyncpg
import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from services.registry.config import settings
from services.registry.geocoding import ReverseGeocoder
from services.registry.middleware.sentry import setup_sentry
from services.registry.pipeline.venue_store import PostgresVenueStore
from services.registry.routers import events, geocode, health, ingest

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    setup_sentry()

    app.state.settings = settings

    # Store is optional at startup; ingestion reports a setup failure without it
    db_pool = None
    if settings.database_url:
        try:
            db_pool = await asyncpg.create_pool(
                settings.database_url,
                min_size=1,
                max_size=10,
                command_timeout=30,
            )
        except Exception as e:
            logger.warning("DB pool failed to connect: %s", e)

    app.state.db = db_pool
    app.state.store = PostgresVenueStore(db_pool) if db_pool else None

    http_client = httpx.AsyncClient(timeout=30.0, follow_redirects=True)
    app.state.http_client = http_client
    app.state.geocoder = ReverseGeocoder(
        token=settings.mapbox_token,
        client=http_client,
        timeout_s=settings.geocode_timeout_s,
    )

    yield

    await http_client.aclose()
    if db_pool:
        await db_pool.close()


app = FastAPI(
    title="Venue Registry API",
    version=settings.app_version,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(ingest.router)
app.include_router(geocode.router)
app.include_router(events.router)


# Request ID injection
@app.middleware("http")
async def request_envelope_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# -- Exception Handlers --

def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


@app.exception_handler(404)
async def not_found_handler(request: Request, exc) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "success": False,
            "error": {"code": "NOT_FOUND", "message": "Resource not found."},
            "requestId": _request_id(request),
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "; ".join(str(err.get("msg")) for err in exc.errors()) or "Validation error.",
            },
            "requestId": _request_id(request),
        },
    )


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred."},
            "requestId": _request_id(request),
        },
    )
