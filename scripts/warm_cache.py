#!/usr/bin/env python3
"""
Warm the edge cache for a list of document keys.

This helper mirrors the service's warmup action but can be executed manually
from a developer workstation or CI job. Each key is read from the durable
store and written under the regional cache key the data endpoint uses.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from service_cache.app.caching import CacheManager
from service_cache.app.documents import load_document
from service_cache.app.main import DATA_TTL_SECONDS
from service_cache.app.store import DurableStore, RedisStore
from shared.logging import configure_logging


def _load_keys(keys: List[str], keys_file: Optional[Path]) -> List[str]:
    """Combine keys from the command line and an optional JSON array or newline file."""
    collected = list(keys)
    if keys_file is not None:
        text = keys_file.read_text()
        try:
            loaded = json.loads(text)
        except json.JSONDecodeError:
            loaded = [line.strip() for line in text.splitlines()]
        collected.extend(str(key) for key in loaded if str(key).strip())
    # Preserve order, drop duplicates
    return list(dict.fromkeys(collected))


async def warm(
    *,
    store: DurableStore,
    keys: List[str],
    region: str,
    concurrency: int,
    ttl_seconds: int = DATA_TTL_SECONDS,
) -> dict:
    """Execute cache warming and return the summary."""
    manager = CacheManager(store, warm_concurrency=concurrency)
    sources = {f"data:{key}:{region}": key for key in keys}

    def fetcher_for(cache_key: str):
        async def fetch():
            return await load_document(store, sources[cache_key], region)
        return fetch

    await store.start()
    try:
        return await manager.warmup(list(sources), fetcher_for, ttl_seconds)
    finally:
        await store.stop()


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm the edge cache for document keys.")
    parser.add_argument("keys", nargs="*", help="Document keys to warm")
    parser.add_argument("--redis-url", default=os.getenv("EDGE_REDIS_URL", "redis://localhost:6379/0"), help="Redis connection URL")
    parser.add_argument("--keys-file", type=Path, default=None, help="JSON array or newline-separated file of keys")
    parser.add_argument("--region", default="unknown", help="Region segment of the cache key")
    parser.add_argument("--concurrency", type=int, default=5, help="Concurrent warm operations")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging("cache-warm", os.getenv("EDGE_LOG_LEVEL", "info"))

    keys = _load_keys(args.keys, args.keys_file)
    if not keys:
        print("[cache-warm] no keys given", file=sys.stderr)
        return 2

    try:
        summary = asyncio.run(
            warm(
                store=RedisStore(args.redis_url),
                keys=keys,
                region=args.region,
                concurrency=args.concurrency,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[cache-warm] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0 if summary["summary"]["failed"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
