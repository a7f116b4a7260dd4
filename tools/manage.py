#!/usr/bin/env python3
"""
Restroom Directory Management CLI

Commands for managing the location store:
- init-db: Create the PostgreSQL tables and indexes
- stats: Show how much of the store came from hydration
- hydrate-location: Backfill around a coordinate from the remote API
- hydrate-search: Backfill by free-text search from the remote API
- seed-test-data: Replace test data with fresh synthetic restrooms
- clear-source: Delete every location with a given meta.source

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage stats
    python -m tools.manage hydrate-location --lat 40.7128 --lng -74.0060
    python -m tools.manage clear-source --source legacy-api
"""

import argparse
import asyncio
import json
import sys

from restrooms.core.config import HydrationConfig
from restrooms.core.hydration import HydrationService
from restrooms.core.remote import RefugeApiClient
from restrooms.db.config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver
from restrooms.db.fixtures import seed_test_locations
from restrooms.db.store import AsyncPostgresLocationStore, open_location_store
from restrooms.observability import setup_logging


async def _hydrate(args, selector: str) -> int:
    config = HydrationConfig.from_env()
    # Running the command is the opt-in
    config.enabled = True
    store = await open_location_store()
    client = RefugeApiClient(config.api_url, config.timeout_seconds)
    try:
        service = HydrationService(store, client, config)
        if selector == "location":
            outcome = await service.hydrate_by_location(args.lat, args.lng, args.per_page)
        else:
            outcome = await service.hydrate_by_search(args.query, args.per_page)
    finally:
        await client.aclose()
        await store.close()

    print(json.dumps(outcome.model_dump(mode="json"), indent=2))
    return 0


def cmd_init_db(args):
    """Create tables and indexes in PostgreSQL."""
    if get_store_driver() != StoreDriver.ASYNCPG or get_database_url() is None:
        print("Error: no PostgreSQL database configured (set DATABASE_URL)")
        return 1

    async def run():
        store = await open_location_store(StoreDriver.ASYNCPG)
        try:
            if not isinstance(store, AsyncPostgresLocationStore):
                print("[FAIL] Could not connect to PostgreSQL")
                return 1
            await store.init_schema()
        finally:
            await store.close()
        config = DatabaseConfig.from_env()
        print(f"[OK] Schema ready on {config.to_url(include_password=False)}")
        return 0

    return asyncio.run(run())


def cmd_stats(args):
    """Show store totals and the hydrated share."""
    async def run():
        store = await open_location_store()
        try:
            service = HydrationService(store, client=None)
            stats = await service.get_stats()
        finally:
            await store.close()
        print(f"Store: {type(store).__name__}")
        print(f"  Total locations: {stats.total}")
        print(f"  Hydrated (legacy-api): {stats.hydrated}")
        print(f"  Local: {stats.local}")
        print(f"  Hydrated share: {stats.hydration_percentage}%")
        return 0

    return asyncio.run(run())


def cmd_hydrate_location(args):
    """Backfill around a coordinate."""
    return asyncio.run(_hydrate(args, "location"))


def cmd_hydrate_search(args):
    """Backfill by text search."""
    return asyncio.run(_hydrate(args, "search"))


def cmd_seed_test_data(args):
    """Replace test data with fresh synthetic restrooms."""
    async def run():
        store = await open_location_store()
        try:
            ids = await seed_test_locations(store, args.count)
        finally:
            await store.close()
        print(f"[OK] Inserted {len(ids)} test restrooms")
        return 0

    return asyncio.run(run())


def cmd_clear_source(args):
    """Delete all locations with the given meta.source."""
    async def run():
        store = await open_location_store()
        try:
            removed = await store.delete_by_source(args.source)
        finally:
            await store.close()
        print(f"[OK] Removed {removed} locations with source '{args.source}'")
        return 0

    return asyncio.run(run())


def main():
    parser = argparse.ArgumentParser(
        description="Restroom Directory Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create PostgreSQL tables and indexes")
    subparsers.add_parser("stats", help="Show hydration statistics")

    p_loc = subparsers.add_parser("hydrate-location", help="Hydrate around a coordinate")
    p_loc.add_argument("--lat", type=float, required=True)
    p_loc.add_argument("--lng", type=float, required=True)
    p_loc.add_argument("--per-page", type=int, default=None)

    p_search = subparsers.add_parser("hydrate-search", help="Hydrate by text search")
    p_search.add_argument("--query", "-q", required=True)
    p_search.add_argument("--per-page", type=int, default=None)

    p_seed = subparsers.add_parser("seed-test-data", help="Insert synthetic test restrooms")
    p_seed.add_argument("--count", type=int, default=10)

    p_clear = subparsers.add_parser("clear-source", help="Delete locations by meta.source")
    p_clear.add_argument(
        "--source",
        required=True,
        help="legacy-api, local-submission or test-data",
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()

    commands = {
        "init-db": cmd_init_db,
        "stats": cmd_stats,
        "hydrate-location": cmd_hydrate_location,
        "hydrate-search": cmd_hydrate_search,
        "seed-test-data": cmd_seed_test_data,
        "clear-source": cmd_clear_source,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
