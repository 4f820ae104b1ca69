#!/usr/bin/env python3
"""
Run a venue ingestion pass from the command line.

Runs the requested providers (default: all) over the configured territory,
or over a bounding box given as south,west,north,east. Prints the run
summary as JSON and exits non-zero on setup failure.

Usage:
    PYTHONPATH=. python3 scripts/run_ingestion.py [--provider osm --provider tm] [--bbox 49.3,10.9,49.6,11.3]
    PYTHONPATH=. python3 scripts/run_ingestion.py --init-schema
"""

import argparse
import asyncio
import json
import logging
import os
import sys

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run_ingestion")

logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


async def init_schema(database_url: str) -> None:
    import asyncpg

    from services.registry.pipeline.venue_store import ensure_schema

    pool = await asyncpg.create_pool(database_url, min_size=1, max_size=2)
    try:
        await ensure_schema(pool)
    finally:
        await pool.close()


async def main(args: argparse.Namespace) -> int:
    from services.registry.config import settings
    from services.registry.middleware.sentry import setup_sentry
    from services.registry.pipeline.geo import BoundingBox
    from services.registry.pipeline.ingest_runner import run_ingestion

    setup_sentry(settings)

    if args.init_schema:
        await init_schema(settings.database_url)
        logger.info("Schema ready")
        return 0

    bounds = None
    if args.bbox:
        try:
            bounds = BoundingBox.parse(args.bbox)
        except ValueError as exc:
            logger.error("Invalid --bbox: %s", exc)
            return 2

    result = await run_ingestion(settings, providers=args.provider, bounds=bounds)
    print(json.dumps(result, indent=2))
    return 0 if result["ok"] else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Ingest venues from external providers")
    parser.add_argument(
        "--provider",
        action="append",
        choices=["osm", "tm", "eb"],
        help="Provider to run (repeatable; default: all)",
    )
    parser.add_argument("--bbox", help="Restrict the sweep to south,west,north,east")
    parser.add_argument("--init-schema", action="store_true", help="Create tables and indexes, then exit")
    sys.exit(asyncio.run(main(parser.parse_args())))
