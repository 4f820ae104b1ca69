"""
Ingestion entry point: validate setup, then run one sweep per provider.

Providers run concurrently as independent sequential pipelines, each with
its own adapter, pacer and RunStats. They share only the canonical store.

Setup failures (unknown provider, missing credentials, missing system owner
identity, unreachable store) abort before any provider request and are
returned as {"ok": False, "error": ...}. Everything after setup is reported
through per-provider summaries.

Usage:
    result = await run_ingestion(settings, providers=["osm"])
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import asyncpg
import httpx

from services.registry.config import Settings
from services.registry.pipeline.entity_resolution import CandidateMatcher
from services.registry.pipeline.geo import BoundingBox, TerritoryConfig, get_territory
from services.registry.pipeline.sweep import GeoSweepScheduler
from services.registry.pipeline.upsert import RunStats, UpsertOrchestrator
from services.registry.pipeline.venue_store import PostgresVenueStore, VenueStore
from services.registry.scrapers.base import (
    BaseAdapter,
    DeadLetterQueue,
    IngestionSetupError,
    ProviderAuthError,
    RequestPacer,
    RetryPolicy,
)
from services.registry.scrapers.eventbrite import EventbriteAdapter
from services.registry.scrapers.overpass import OverpassAdapter
from services.registry.scrapers.ticketmaster import TicketmasterAdapter

logger = logging.getLogger(__name__)

ALL_PROVIDERS = ("osm", "tm", "eb")

_TOTAL_KEYS = (
    "seen", "inserted", "merged", "unchanged", "failed", "skipped",
    "eventsProcessed", "cellsFailed",
)

Sleep = Callable[[float], Awaitable[Any]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_setup(settings: Settings, providers: list[str]) -> None:
    """Raise IngestionSetupError if the requested run cannot start."""
    unknown = [p for p in providers if p not in ALL_PROVIDERS]
    if unknown:
        raise IngestionSetupError(
            f"Unknown provider(s): {', '.join(unknown)}; expected one of {', '.join(ALL_PROVIDERS)}"
        )
    if not providers:
        raise IngestionSetupError("No providers requested")
    if "tm" in providers and not settings.tm_api_key:
        raise IngestionSetupError("Ticketmaster API key missing (TM_API_KEY)")
    if "eb" in providers and not settings.eb_token:
        raise IngestionSetupError("Eventbrite token missing (EB_TOKEN)")
    if not settings.system_owner_id:
        raise IngestionSetupError("System owner identity missing (SYSTEM_OWNER_ID)")


def build_adapter(
    provider: str,
    settings: Settings,
    client: httpx.AsyncClient,
    territory: TerritoryConfig,
    sleep: Optional[Sleep] = None,
) -> BaseAdapter:
    """Adapter for one provider, configured from settings."""
    sleep = sleep or asyncio.sleep

    if provider == "osm":
        return OverpassAdapter(
            client,
            grid_step_deg=settings.overpass_grid_step_deg,
            timeout_s=settings.overpass_timeout_s,
            country=territory.country_code,
            retry_policy=RetryPolicy(
                max_attempts=settings.overpass_max_attempts,
                base_delay=settings.overpass_base_delay_s,
                sleep=sleep,
            ),
            pacer=RequestPacer(settings.overpass_request_delay_s, sleep=sleep),
        )
    if provider == "tm":
        return TicketmasterAdapter(
            client,
            settings.tm_api_key,
            territory=territory,
            grid_step_deg=settings.tm_grid_step_deg,
            radius_km=settings.tm_radius_km,
            retry_policy=RetryPolicy(
                max_attempts=settings.tm_max_attempts,
                base_delay=settings.tm_base_delay_s,
                sleep=sleep,
            ),
            pacer=RequestPacer(settings.tm_request_delay_s, sleep=sleep),
        )
    if provider == "eb":
        return EventbriteAdapter(
            client,
            settings.eb_token,
            territory=territory,
            window_days=settings.eb_window_days,
            retry_policy=RetryPolicy(
                max_attempts=settings.eb_max_attempts,
                base_delay=settings.eb_base_delay_s,
                sleep=sleep,
            ),
            pacer=RequestPacer(settings.eb_request_delay_s, sleep=sleep),
        )
    raise IngestionSetupError(f"Unknown provider: {provider}")


async def run_provider(
    adapter: BaseAdapter,
    store: VenueStore,
    bounds: BoundingBox,
    settings: Settings,
    dead_letter: Optional[DeadLetterQueue] = None,
) -> RunStats:
    """One provider's sweep. Never raises; failures end up on the stats."""
    stats = RunStats(provider=adapter.name)
    orchestrator = UpsertOrchestrator(
        store,
        CandidateMatcher(store, radius_m=settings.match_radius_m),
        stats,
        owner_id=settings.system_owner_id,
        dead_letter=dead_letter,
    )
    try:
        await GeoSweepScheduler(adapter, orchestrator).run(bounds)
    except ProviderAuthError as exc:
        stats.finish(error=f"authentication failed: {exc}")
    except Exception as exc:
        logger.exception("%s ingestion aborted", adapter.name)
        stats.finish(error=str(exc))
    else:
        stats.finish()

    logger.info("%s ingestion completed: %s", adapter.name, stats.to_summary())
    return stats


async def _open_store(settings: Settings) -> tuple[VenueStore, asyncpg.Pool]:
    try:
        pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=30,
        )
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
        raise IngestionSetupError(f"Canonical store unreachable: {exc}") from exc
    return PostgresVenueStore(pool), pool


async def run_ingestion(
    settings: Settings,
    providers: Optional[list[str]] = None,
    bounds: Optional[BoundingBox] = None,
    store: Optional[VenueStore] = None,
    client: Optional[httpx.AsyncClient] = None,
    *,
    dead_letter: Optional[DeadLetterQueue] = None,
    sleep: Optional[Sleep] = None,
) -> dict[str, Any]:
    """
    Run an ingestion pass and return its summary.

    Returns:
        {"ok": True, "seen", "inserted", "merged", "eventsProcessed",
         "timestamp", "providers": {name: summary}, "totals": {...}}
        or {"ok": False, "error", "timestamp"} on setup failure.
    """
    # One sweep per provider: a repeat would run with its own pacer
    providers = list(dict.fromkeys(providers)) if providers else list(ALL_PROVIDERS)
    pool = None
    owns_client = client is None

    try:
        validate_setup(settings, providers)
        territory = get_territory(settings.territory)
        bounds = bounds or territory.bbox

        if store is None:
            store, pool = await _open_store(settings)
        try:
            await store.ping()
        except Exception as exc:
            raise IngestionSetupError(f"Canonical store unreachable: {exc}") from exc
    except (IngestionSetupError, ValueError) as exc:
        logger.error("Ingestion setup failed: %s", exc)
        if pool is not None:
            await pool.close()
        return {"ok": False, "error": str(exc), "timestamp": _now()}

    if dead_letter is None:
        dead_letter = DeadLetterQueue(settings.dead_letter_path)
    if owns_client:
        client = httpx.AsyncClient(timeout=30.0, follow_redirects=True)

    logger.info("Starting ingestion: providers=%s bounds=%s", providers, bounds)
    try:
        adapters = [build_adapter(p, settings, client, territory, sleep) for p in providers]
        results = await asyncio.gather(
            *(run_provider(a, store, bounds, settings, dead_letter) for a in adapters)
        )
    finally:
        if owns_client:
            await client.aclose()
        if pool is not None:
            await pool.close()

    summaries = {stats.provider: stats.to_summary() for stats in results}
    totals = {key: sum(s[key] for s in summaries.values()) for key in _TOTAL_KEYS}

    result = {
        "ok": True,
        "seen": totals["seen"],
        "inserted": totals["inserted"],
        "merged": totals["merged"],
        "eventsProcessed": totals["eventsProcessed"],
        "timestamp": _now(),
        "providers": summaries,
        "totals": totals,
    }
    logger.info("Ingestion completed: %s", totals)
    return result
