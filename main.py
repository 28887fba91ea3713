#!/usr/bin/env python3
"""
News Gateway command line

Modes:
1. serve   - run the HTTP API (GET /api/s, /api/sources, /api/health)
2. fetch   - run one orchestrated source request and print the JSON response
3. sources - list registered sources, their refresh intervals and redirects
4. prune   - delete cache entries older than --days (never done automatically)

The fetch mode goes through the same cache tiers as the HTTP endpoint, so it
doubles as a way to warm the cache from cron.
"""

import argparse
import asyncio
import json
import sys
from typing import Optional

from cache import SqliteCache
from config import config, get_logger, MINUTE_MS
from errors import CacheUnavailableError
from filters import decode_filter_param
from orchestrator import FetchOrchestrator
from server import run as run_server
from sources import build_registry
from telemetry import init_telemetry
from upstream import create_strategy

logger = get_logger("main")


async def run_fetch(source_id: str, filter_json: Optional[str] = None, latest: bool = False, use_cache: bool = True) -> dict:
    """Serve one source request from the command line.

    Command line callers are trusted, so ``latest`` always forces a refresh.
    """
    rules = decode_filter_param(filter_json)
    strategy = create_strategy()
    cache = None
    if use_cache and not config.DISABLE_CACHE:
        cache = SqliteCache()
        try:
            await cache.start()
        except CacheUnavailableError as e:
            logger.warning(f"⚠️ Running without cache: {e}")
            await cache.close()
            cache = None
    try:
        orchestrator = FetchOrchestrator(build_registry(strategy), cache=cache)
        response = await orchestrator.serve(source_id, rules=rules, latest=latest, eligible=True)
        return response.to_dict()
    finally:
        if cache is not None:
            await cache.close()
        await strategy.close()


async def prune_cache(max_age_days: int) -> int:
    """Delete cache entries older than ``max_age_days``.

    The server never prunes on its own: an entry of any age is still served
    when its source cannot be fetched.
    """
    cache = SqliteCache()
    await cache.start()
    try:
        return await cache.expire(max_age_ms=max_age_days * 24 * 60 * MINUTE_MS)
    finally:
        await cache.close()


def print_sources() -> None:
    registry = build_registry(create_strategy())
    print(f"\n📰 {len(registry)} sources")
    for descriptor in registry.descriptors():
        if descriptor.redirects_to:
            print(f"   {descriptor.id:<14} → {descriptor.redirects_to}")
            continue
        minutes = descriptor.refresh_interval_ms / MINUTE_MS
        paged = " (paginated)" if descriptor.supports_pagination else ""
        print(f"   {descriptor.id:<14} {descriptor.name} every {minutes:g}m{paged}")


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='News Gateway')
    subparsers = parser.add_subparsers(dest='mode', required=True)

    serve_parser = subparsers.add_parser('serve', help='Run the HTTP API')
    serve_parser.add_argument('--host', type=str, help=f'Bind address (default {config.HOST})')
    serve_parser.add_argument('--port', type=int, help=f'Port (default {config.PORT})')

    fetch_parser = subparsers.add_parser('fetch', help='Fetch one source and print the response')
    fetch_parser.add_argument('source_id', help='Source id, e.g. hackernews')
    fetch_parser.add_argument('--filter', type=str,
                              help='JSON array of filter rules, e.g. \'[{"pattern": "rust", "type": "include"}]\'')
    fetch_parser.add_argument('--latest', action='store_true',
                              help='Bypass stale cache entries and fetch upstream')
    fetch_parser.add_argument('--no-cache', action='store_true',
                              help='Do not read or write the cache database')

    subparsers.add_parser('sources', help='List registered sources')

    prune_parser = subparsers.add_parser('prune', help='Delete old cache entries')
    prune_parser.add_argument('--days', type=int, default=30,
                              help='Delete entries not refreshed for this many days (default 30)')

    args = parser.parse_args()

    try:
        if args.mode == 'serve':
            run_server(host=args.host, port=args.port)

        elif args.mode == 'fetch':
            init_telemetry("news-gateway-cli")
            result = asyncio.run(run_fetch(args.source_id, args.filter, latest=args.latest, use_cache=not args.no_cache))
            print(json.dumps(result, indent=2, ensure_ascii=False))

        elif args.mode == 'sources':
            print_sources()

        elif args.mode == 'prune':
            if args.days < 1:
                parser.error('--days must be at least 1')
            deleted = asyncio.run(prune_cache(args.days))
            print(f"🧹 Deleted {deleted} cache entries older than {args.days} days")

    except KeyboardInterrupt:
        logger.info("👋 News gateway shutting down")
    except Exception as e:
        logger.error(f"💥 {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
