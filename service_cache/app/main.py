"""
Edge cache service.

Composes the tiered cache, the rate limiter and the performance monitor
behind a small HTTP API. The three components never call each other; every
request handler wires them together explicitly.
"""

import asyncio
import json
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import Body, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreaker
from shared.config import ServiceConfig, get_config
from shared.errors import (
    DurableStoreError,
    EdgeCacheException,
    NotFoundError,
    PayloadTooLargeError,
    RateLimitError,
    ValidationError,
)
from shared.logging import set_client_context

from .caching import CacheManager
from .documents import document_key, load_document
from .models import CacheCommand, UpdateDataRequest, api_response
from .monitoring import CacheStatus, PerformanceMonitor
from .ratelimit import SlidingWindowRateLimiter
from .store import DurableStore, InMemoryStore, RedisStore
from .store.base import WILDCARD

SERVICE_NAME = "edge-cache"
SERVICE_PORT = 8080
DATA_TTL_SECONDS = 30
HEALTH_PING_TIMEOUT = 2.0
STATS_KEY_SAMPLE = 20

CACHE_CONTROL = {
    CacheStatus.HIT: "public, s-maxage=30, stale-while-revalidate=59",
    CacheStatus.MISS: "public, s-maxage=10, stale-while-revalidate=50",
    CacheStatus.STALE: "public, s-maxage=10, stale-while-revalidate=50",
}


def validation_messages(error: PydanticValidationError) -> List[str]:
    """Flatten pydantic errors into ``"field: message"`` strings."""
    return [
        f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
        for err in error.errors()
    ]


def build_store(config: ServiceConfig) -> DurableStore:
    """Create the durable store selected by configuration."""
    if config.durable_backend == "memory":
        return InMemoryStore()
    return RedisStore(config.redis_url)


class EdgeCacheService(BaseService):
    """Edge cache service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[DurableStore] = None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))

        self.store = store or build_store(self.config)
        self.cache = CacheManager(
            self.store,
            prefix=self.config.cache_prefix,
            default_ttl=self.config.cache_default_ttl,
            local_refresh_window=self.config.local_refresh_window_seconds,
            sweep_interval=self.config.cache_sweep_interval_seconds,
            fetch_timeout=self.config.fetch_timeout_seconds,
            local_shards=self.config.local_tier_shards,
            breaker=CircuitBreaker(
                failure_threshold=self.config.store_failure_threshold,
                recovery_timeout=self.config.store_recovery_timeout,
                expected_exception=DurableStoreError,
                name=f"durable_store.{self.store.name}",
            ),
            metrics=self.metrics,
        )
        self.rate_limiter = SlidingWindowRateLimiter(
            self.config.rate_limit_max_requests,
            self.config.rate_limit_window_ms,
            gc_interval=self.config.rate_limit_gc_interval_seconds,
            metrics=self.metrics,
        )
        self.performance = PerformanceMonitor(self.config.perf_max_samples)

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_data_routes()
        self._setup_cache_routes()

        self.app.state.edge_cache_service = self

    async def start(self):
        """Start the durable store and background maintenance."""
        try:
            await self.store.start()
        except DurableStoreError as e:
            # The breaker keeps the cache serving from the local tier until the store recovers
            self.logger.error("Durable store unavailable at startup", error=str(e))
        await self.cache.start()
        await self.rate_limiter.start()
        self.logger.info("Edge cache service components started", backend=self.store.name)

    async def stop(self):
        """Stop background maintenance and release the durable store."""
        await self.rate_limiter.stop()
        await self.cache.stop()
        await self.store.stop()
        self.logger.info("Edge cache service components stopped")

    # Request helpers

    @staticmethod
    def _get_client_ip(request: Request) -> str:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip
        if request.client and request.client.host:
            return request.client.host
        return "unknown"

    @staticmethod
    def _get_region(request: Request) -> str:
        return (
            request.headers.get("x-client-region")
            or request.headers.get("cf-ipcountry")
            or request.headers.get("x-vercel-ip-country")
            or "unknown"
        )

    @staticmethod
    def _get_city(request: Request) -> str:
        return request.headers.get("x-client-city") or request.headers.get("x-vercel-ip-city") or "unknown"

    def _enforce_rate_limit(self, identifier: str) -> None:
        """Raise RateLimitError when ``identifier`` has used up its window."""
        decision = self.rate_limiter.check(identifier)
        if not decision.allowed:
            raise RateLimitError(
                "Too many requests. Please try again later.",
                {"limit": decision.limit, "retry_after_ms": decision.retry_after_ms},
                retry_after_seconds=decision.retry_after_seconds,
            )

    def _error_content(self, exc: EdgeCacheException) -> Dict[str, Any]:
        return api_response(error=exc.message, code=exc.code, details=exc.details)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check edge cache dependencies."""
        try:
            healthy = await asyncio.wait_for(self.store.ping(), HEALTH_PING_TIMEOUT)
        except asyncio.TimeoutError:
            self.logger.warning("Durable store ping timed out", timeout=HEALTH_PING_TIMEOUT)
            healthy = False
        return {
            "durable_store": "ok" if healthy else "error",
            "circuit_breaker": "error" if self.cache.breaker.is_open() else "ok",
        }

    def _health_details(self) -> Dict[str, Any]:
        cache_stats = self.cache.stats()
        perf = self.performance.get_stats()
        return {
            "backend": self.store.name,
            "metrics": {
                "cacheStats": {
                    "memoryEntries": cache_stats["memoryEntries"],
                    "hitRate": perf.cache_hit_rate,
                },
                "performance": {
                    "averageResponseTime": round(perf.average_response_time),
                    "p95ResponseTime": round(perf.p95_response_time),
                    "p99ResponseTime": round(perf.p99_response_time),
                    "totalRequests": perf.count,
                },
            },
        }

    # Routes

    def _setup_data_routes(self):
        """Set up data read/update routes."""

        @self.app.get("/api/v1/stats")
        async def get_stats(limit: int = Query(10, ge=0, le=100)):
            """Cache occupancy, performance stats and recent samples."""
            recent = [asdict(sample) for sample in self.performance.get_recent_metrics(limit)]
            return api_response({
                "cache": self.cache.stats(),
                "performance": self.performance.get_stats().model_dump(by_alias=True),
                "recent": recent,
                "rateLimiter": {
                    "maxRequests": self.rate_limiter.max_requests,
                    "windowMs": self.rate_limiter.window_ms,
                    "trackedIdentifiers": len(self.rate_limiter),
                },
            })

        @self.app.get("/api/v1/data/{key}")
        async def get_data(
            key: str,
            request: Request,
            nocache: bool = Query(False),
            response_format: str = Query("json", alias="format", pattern="^(json|raw)$"),
        ):
            """Read a document through the cache."""
            start = time.perf_counter()
            client_ip = self._get_client_ip(request)
            region = self._get_region(request)
            city = self._get_city(request)
            set_client_context(client_ip, region)

            self._enforce_rate_limit(client_ip)

            async def fetch():
                return await load_document(self.store, key, region, city)

            status = CacheStatus.MISS
            if nocache:
                data = await fetch()
            else:
                result = await self.cache.get(f"data:{key}:{region}", fetch, DATA_TTL_SECONDS)
                if result.found:
                    data = result.value
                    status = CacheStatus(result.outcome.status)
                elif result.error is not None:
                    # The fetcher already ran under the fetch timeout
                    self.logger.warning("Cached read failed", key=key, error=str(result.error))
                    raise result.error
                else:
                    data = await fetch()

            response_time = (time.perf_counter() - start) * 1000
            self.performance.record(response_time, status, region)

            headers = {
                "X-Cache-Status": status.value,
                "X-Response-Time": str(round(response_time)),
                "Cache-Control": CACHE_CONTROL[status],
            }
            if response_format == "raw" and isinstance(data, dict) and data.get("data"):
                return JSONResponse(content=data["data"], headers=headers)

            return JSONResponse(
                content=api_response(
                    data,
                    cache_status=status.value,
                    region=region,
                    response_time_ms=response_time,
                ),
                headers=headers,
            )

        @self.app.put("/api/v1/data/{key}")
        async def update_data(key: str, request: Request, payload: Dict[str, Any] = Body(...)):
            """Store a document and drop every cached regional copy of it."""
            start = time.perf_counter()
            self._enforce_rate_limit(f"update:{self._get_client_ip(request)}")

            if WILDCARD in key:
                raise ValidationError("Key must not contain '*'", {"key": key})
            try:
                update = UpdateDataRequest.model_validate(payload)
            except PydanticValidationError as e:
                raise ValidationError("Invalid update request", {"errors": validation_messages(e)}) from e

            size = len(json.dumps(update.data))
            if size > self.config.max_payload_bytes:
                raise PayloadTooLargeError(size, self.config.max_payload_bytes)

            await self.store.set(document_key(key), update.data, update.ttl)
            removed = await self.cache.invalidate_pattern(f"data:{key}:*")
            updates = await self.store.increment(f"updates:{key}")

            self.logger.info("Data updated", key=key, size=size, invalidated=removed)
            response_time = (time.perf_counter() - start) * 1000
            return JSONResponse(
                content=api_response(
                    {
                        "key": key,
                        "size": size,
                        "ttl": update.ttl or "permanent",
                        "updates": updates,
                        "url": f"/api/v1/data/{key}",
                    },
                    message="Data updated successfully",
                    response_time_ms=response_time,
                ),
                headers={"X-Response-Time": str(round(response_time))},
            )

    def _setup_cache_routes(self):
        """Set up cache administration routes."""

        @self.app.get("/api/v1/cache")
        async def inspect_cache(
            request: Request,
            action: str = Query("stats"),
            key: Optional[str] = Query(None),
            limit: int = Query(50, ge=1, le=1000),
        ):
            """Read-only cache diagnostics."""
            self._enforce_rate_limit(f"cache:{self._get_client_ip(request)}")

            if action == "stats":
                durable = await self.cache.list_keys(limit=STATS_KEY_SAMPLE)
                memory = self.cache.stats()
                return api_response({
                    "durable": {
                        "totalEntries": durable["total"],
                        "keys": durable["keys"],
                        "hasMore": durable["hasMore"],
                    },
                    "memory": {
                        "entries": memory["memoryEntries"],
                        "keys": memory["memoryKeys"],
                    },
                    "summary": {
                        "totalCacheKeys": durable["total"] + memory["memoryEntries"],
                        "durableCacheSize": durable["total"],
                        "memoryCacheSize": memory["memoryEntries"],
                    },
                })

            if action == "keys":
                return api_response(await self.cache.list_keys(limit=limit))

            if action == "info":
                if not key:
                    raise ValidationError("Key parameter is required")
                record = await self.cache.entry_info(key)
                if record is None:
                    raise NotFoundError("Cache entry not found", {"key": key})
                return api_response({"key": record.id, **record.model_dump(mode="json", exclude={"id"})})

            raise ValidationError("Invalid action. Use: stats, keys, info", {"action": action})

        @self.app.post("/api/v1/cache")
        async def manage_cache(request: Request, payload: Dict[str, Any] = Body(...)):
            """Cache invalidation, warmup and clear."""
            self._enforce_rate_limit(f"cache-post:{self._get_client_ip(request)}")

            try:
                command = CacheCommand.model_validate(payload)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid action. Use: invalidate, invalidatePattern, warmup, clear",
                    {"errors": validation_messages(e)},
                ) from e

            if command.action == "invalidate":
                if not command.key:
                    raise ValidationError("Key is required for invalidation")
                await self.cache.invalidate(command.key)
                return api_response({"key": command.key}, message=f"Cache invalidated for key: {command.key}")

            if command.action == "invalidatePattern":
                if not command.pattern:
                    raise ValidationError("Pattern is required for pattern invalidation")
                removed = await self.cache.invalidate_pattern(command.pattern)
                return api_response(
                    {"pattern": command.pattern, "removed": removed},
                    message=f"Cache invalidated for pattern: {command.pattern}",
                )

            if command.action == "warmup":
                if not command.keys:
                    raise ValidationError("Keys array is required for warmup")
                city = self._get_city(request)
                sources = {f"data:{key}:{command.region}": key for key in command.keys}

                def fetcher_for(cache_key: str):
                    async def fetch():
                        return await load_document(self.store, sources[cache_key], command.region, city)
                    return fetch

                return api_response(await self.cache.warmup(list(sources), fetcher_for, DATA_TTL_SECONDS))

            removed = await self.cache.clear()
            return api_response({"cleared": True, "removed": removed}, message="All caches cleared successfully")


def create_app():
    """Create edge cache service application."""
    service = EdgeCacheService()
    return service.app


if __name__ == "__main__":
    service = EdgeCacheService()
    service.run()
