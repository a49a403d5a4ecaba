"""
Operator command line for the marketplace cache.

Checks health, prints stats, runs invalidation helpers and pre-loads keys from a
seed file. ``--memory`` runs against an in-process store instead of Redis, which
is handy for trying out seed files.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from shared.config import get_settings
from shared.errors import CacheLayerException, ValidationError
from shared.logging import configure_logging, set_run_id

from .caching.backend import BackingStore
from .caching.cache_service import CacheService
from .caching.invalidation import CacheInvalidation
from .caching.memory_store import InMemoryStore
from .caching.ttl_policy import resolve_ttl

INVALIDATION_TARGETS = ("domains", "user", "search", "analytics", "inquiries", "dashboard", "pattern")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cache-admin", description="Inspect and maintain the marketplace cache.")
    parser.add_argument("--redis-url", default=None, help="Redis connection URL (defaults to CACHE_REDIS_URL)")
    parser.add_argument("--memory", action="store_true", help="Use an in-process store instead of Redis")
    parser.add_argument("--log-level", default=None, help="Log level override")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("health", help="Ping the backing store")
    commands.add_parser("stats", help="Print key count, memory, hit rate and operations")

    invalidate = commands.add_parser("invalidate", help="Delete keys for an entity")
    invalidate.add_argument("target", choices=INVALIDATION_TARGETS)
    invalidate.add_argument("value", nargs="?", default=None, help="Entity id, search query or raw pattern")

    warm = commands.add_parser("warm", help="Pre-load keys from a JSON object of key -> value")
    warm.add_argument("--seed-file", type=Path, required=True, help="JSON file mapping cache keys to values")
    warm.add_argument("--ttl", default="medium", help="TTL tier name or seconds")
    warm.add_argument("--concurrency", type=int, default=None, help="Concurrent warm operations")
    warm.add_argument("--dry-run", action="store_true", help="Do not write to Redis; report planned keys")
    warm.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser


async def _invalidate(cache: CacheService, target: str, value: Optional[str]) -> int:
    helpers = CacheInvalidation(cache)
    if target == "domains":
        return await helpers.invalidate_domains(value)
    if target == "user":
        if not value:
            raise ValidationError("user invalidation needs a user id")
        return await helpers.invalidate_user(value)
    if target == "search":
        if value is None:
            raise ValidationError("search invalidation needs a query")
        return await helpers.invalidate_search(value)
    if target == "analytics":
        return await helpers.invalidate_analytics()
    if target == "inquiries":
        return await helpers.invalidate_inquiries(value)
    if target == "dashboard":
        return await helpers.invalidate_dashboard(value)
    if not value:
        raise ValidationError("pattern invalidation needs a pattern")
    return await cache.delete_pattern(value)


async def _warm(cache: CacheService, args: argparse.Namespace) -> Dict[str, Any]:
    seeds = json.loads(args.seed_file.read_text())
    if not isinstance(seeds, dict):
        raise ValidationError("seed file must contain a JSON object")

    async def fetch(key: str) -> Any:
        return seeds[key]

    summary = await cache.warm_cache(list(seeds), fetch, resolve_ttl(args.ttl))
    result = summary.as_dict()
    if args.dry_run:
        result["dry_run"] = True
        result["keys"] = sorted(seeds)
    return result


async def run(args: argparse.Namespace, store: Optional[BackingStore] = None) -> Tuple[int, Dict[str, Any]]:
    """Execute one command; returns the exit code and the JSON-able result."""
    overrides: Dict[str, Any] = {}
    if args.redis_url:
        overrides["redis_url"] = args.redis_url
    if getattr(args, "concurrency", None):
        overrides["warm_concurrency"] = args.concurrency
    settings = get_settings(**overrides)

    if store is None and (args.memory or getattr(args, "dry_run", False)):
        store = InMemoryStore()

    cache = CacheService(store, settings)
    await cache.start()
    try:
        if args.command == "health":
            healthy = await cache.health_check()
            return (0 if healthy else 1), {"healthy": healthy}
        if args.command == "stats":
            stats = await cache.get_stats()
            return 0, stats.model_dump()
        if args.command == "invalidate":
            deleted = await _invalidate(cache, args.target, args.value)
            return 0, {"target": args.target, "value": args.value, "deleted": deleted}

        result = await _warm(cache, args)
        return (0 if not result["failed"] else 1), result
    finally:
        await cache.stop()


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging("cache", args.log_level or get_settings().log_level, stream=sys.stderr)
    set_run_id()

    try:
        code, result = asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130
    except CacheLayerException as exc:
        print(exc.to_response().model_dump_json(), file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        print(f"[cache-admin] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    output = getattr(args, "output", None)
    if output:
        output.write_text(json.dumps(result, indent=2))
    return code


if __name__ == "__main__":
    raise SystemExit(main())
