"""
Two-tier cache manager.

Reads go local tier -> durable tier -> caller-supplied fetcher. The durable
tier honours the caller's TTL; the local tier only ever holds a value for a
short refresh window, which bounds how stale one process can be after
another process invalidated a key. Local tiers of different processes are
never synchronised.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import DurableStoreError, FetchTimeoutError, ValidationError
from shared.logging import get_logger

from ..store.base import WILDCARD, DurableStore, StoredRecord, pattern_prefix
from .local_tier import LocalTier

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_CACHE_PREFIX = "cache:"
DEFAULT_TTL = 60
LOCAL_REFRESH_WINDOW = 10
SWEEP_INTERVAL = 30.0

Fetcher = Callable[[], Awaitable[Any]]


class CacheOutcome(str, Enum):
    """Where a ``get`` was answered from."""

    HIT_LOCAL = "hit_local"
    HIT_DURABLE = "hit_durable"
    MISS = "miss"

    @property
    def status(self) -> str:
        """Collapse to the hit/miss vocabulary used by performance samples."""
        return "miss" if self is CacheOutcome.MISS else "hit"


@dataclass
class CacheResult:
    """Answer to a cache lookup.

    ``value`` is ``None`` when nothing was found. ``error`` carries the
    fetcher's exception (or a :class:`FetchTimeoutError`) so the caller can
    log it; failures are never cached.
    """

    key: str
    value: Any = None
    outcome: CacheOutcome = CacheOutcome.MISS
    error: Optional[BaseException] = None

    @property
    def found(self) -> bool:
        return self.value is not None


class CacheManager:
    """Read-through/write-through cache over a process-local and a durable tier."""

    def __init__(
        self,
        store: DurableStore,
        *,
        prefix: str = DEFAULT_CACHE_PREFIX,
        default_ttl: int = DEFAULT_TTL,
        local_refresh_window: int = LOCAL_REFRESH_WINDOW,
        sweep_interval: float = SWEEP_INTERVAL,
        fetch_timeout: Optional[float] = None,
        local_shards: int = 16,
        warm_concurrency: int = 5,
        breaker: Optional[CircuitBreaker] = None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not prefix or WILDCARD in prefix:
            raise ValueError("cache prefix must be non-empty and free of wildcards")

        self.store = store
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.local_refresh_window = local_refresh_window
        self.sweep_interval = sweep_interval
        self.fetch_timeout = fetch_timeout
        self.warm_concurrency = max(1, warm_concurrency)
        self.metrics = metrics
        self.logger = get_logger("cache.manager")

        self.local = LocalTier(shards=local_shards, clock=clock)
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=DurableStoreError,
            name=f"durable_store.{store.name}",
            clock=clock,
        )
        self._sweep_task: Optional[asyncio.Task] = None

    def _cache_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    # Lifecycle

    async def start(self) -> None:
        """Start the periodic local-tier sweep."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            self.logger.info("Cache sweep started", interval=self.sweep_interval)

    async def stop(self) -> None:
        """Cancel the periodic sweep."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            self.logger.info("Cache sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.cleanup_expired()

    # Reads

    async def get(
        self,
        key: str,
        fetcher: Optional[Fetcher] = None,
        ttl_seconds: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
    ) -> CacheResult:
        """Look ``key`` up in both tiers, falling back to ``fetcher`` on a total miss."""
        cache_key = self._cache_key(key)

        entry = self.local.get(cache_key)
        if entry is not None:
            self.logger.debug("Local tier hit", key=key)
            return self._result(key, entry.value, CacheOutcome.HIT_LOCAL)

        record = await self._read_durable(key, cache_key)
        if record is not None and record.data is not None:
            self.local.put(cache_key, record.data, self._durable_hit_window(record))
            self.logger.debug("Durable tier hit", key=key)
            return self._result(key, record.data, CacheOutcome.HIT_DURABLE)

        if fetcher is None:
            return self._result(key, None, CacheOutcome.MISS)

        return await self._fetch(key, fetcher, ttl_seconds, timeout)

    async def _read_durable(self, key: str, cache_key: str) -> Optional[StoredRecord]:
        """Durable-tier read; any failure counts as a miss on that tier."""
        try:
            return await self.breaker.call(self.store.get_record, cache_key)
        except Exception as exc:
            self._store_failure("get", key, exc)
            return None

    def _durable_hit_window(self, record: StoredRecord) -> float:
        """Fixed refresh window, never outliving the durable record itself."""
        window = float(self.local_refresh_window)
        remaining = record.remaining_ttl()
        if remaining is not None:
            window = min(window, remaining)
        return window

    async def _fetch(
        self,
        key: str,
        fetcher: Fetcher,
        ttl_seconds: Optional[int],
        timeout: Optional[float],
    ) -> CacheResult:
        timeout = timeout if timeout is not None else self.fetch_timeout
        self.logger.info("Cache miss, fetching fresh", key=key)

        start = time.perf_counter()
        try:
            value = await asyncio.wait_for(fetcher(), timeout)
        except asyncio.TimeoutError:
            self._observe_fetch("timeout", start)
            self.logger.warning("Fetcher timed out", key=key, timeout=timeout)
            return self._result(key, None, CacheOutcome.MISS, FetchTimeoutError(key, timeout))
        except Exception as exc:
            self._observe_fetch("error", start)
            self.logger.error("Fetcher error", key=key, error=str(exc))
            return self._result(key, None, CacheOutcome.MISS, exc)

        self._observe_fetch("success", start)
        if value is not None:
            await self.set(key, value, ttl_seconds)
        return self._result(key, value, CacheOutcome.MISS)

    # Writes

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Write through both tiers.

        Returns False when the durable write failed; the local tier is
        updated either way so the process keeps serving the value.
        """
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError("ttl_seconds must be positive", {"key": key, "ttl_seconds": ttl})

        cache_key = self._cache_key(key)
        persisted = True
        try:
            await self.breaker.call(self.store.set, cache_key, value, ttl)
        except Exception as exc:
            persisted = False
            self._store_failure("set", key, exc)

        self.local.put(cache_key, value, min(ttl, self.local_refresh_window))
        return persisted

    async def invalidate(self, key: str) -> None:
        """Remove ``key`` from both tiers. Invalidating an absent key is a no-op."""
        cache_key = self._cache_key(key)
        await self._delete_durable(cache_key, "invalidate")
        self.local.delete(cache_key)

    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove every key matching ``pattern`` from both tiers.

        Only a single trailing wildcard is understood (``"user:*"``); a
        pattern without ``*`` removes one key. Empty or other wildcard forms
        raise :class:`shared.errors.InvalidPatternError` before the durable
        tier is contacted. Returns the number of cache keys removed.
        """
        prefix, is_wildcard = pattern_prefix(pattern)

        keys = await self._list_durable(self._cache_key(pattern), "invalidate_pattern")
        removed = set(await self._delete_many(keys, "invalidate_pattern"))

        local_prefix = self._cache_key(prefix)
        if is_wildcard:
            removed.update(self.local.delete_prefix(local_prefix))
        elif self.local.delete(local_prefix):
            removed.add(local_prefix)

        self.logger.info("Invalidated cache pattern", pattern=pattern, keys_count=len(removed))
        return len(removed)

    async def clear(self) -> int:
        """Remove every key under the cache prefix; the local tier is always emptied."""
        keys = await self._list_durable(self.prefix + WILDCARD, "clear")
        deleted = await self._delete_many(keys, "clear")
        self.local.clear()
        self._set_local_gauge(0)
        self.logger.info("Cache cleared", durable_keys=len(deleted))
        return len(deleted)

    async def _list_durable(self, pattern: str, operation: str) -> List[str]:
        try:
            return await self.breaker.call(self.store.list_keys, pattern)
        except Exception as exc:
            self._store_failure(operation, pattern, exc)
            return []

    async def _delete_durable(self, cache_key: str, operation: str) -> bool:
        try:
            await self.breaker.call(self.store.delete, cache_key)
            return True
        except Exception as exc:
            self._store_failure(operation, cache_key, exc)
            return False

    async def _delete_many(self, cache_keys: List[str], operation: str) -> List[str]:
        """Delete keys from both tiers; returns those the durable tier confirmed."""
        outcomes = await asyncio.gather(
            *(self._delete_durable(cache_key, operation) for cache_key in cache_keys)
        )
        for cache_key in cache_keys:
            self.local.delete(cache_key)
        return [cache_key for cache_key, ok in zip(cache_keys, outcomes) if ok]

    # Maintenance and diagnostics

    def cleanup_expired(self) -> int:
        """Evict expired local entries. Reads never depend on this having run."""
        removed = self.local.cleanup_expired()
        if removed:
            self.logger.debug("Swept expired local entries", removed=removed)
        self._set_local_gauge(len(self.local))
        return removed

    def stats(self, sample_size: int = 10) -> Dict[str, Any]:
        """Local-tier occupancy. ``memoryKeys`` is a sample, not a listing."""
        entries = len(self.local)
        self._set_local_gauge(entries)
        return {
            "memoryEntries": entries,
            "memoryKeys": self.local.keys(limit=sample_size),
        }

    async def entry_info(self, key: str) -> Optional[StoredRecord]:
        """Durable envelope for ``key`` (with or without the cache prefix)."""
        cache_key = key if key.startswith(self.prefix) else self._cache_key(key)
        return await self.breaker.call(self.store.get_record, cache_key)

    async def list_keys(self, limit: int = 50) -> Dict[str, Any]:
        """Durable keys under the cache prefix, truncated to ``limit``."""
        pattern = self.prefix + WILDCARD
        keys = await self.breaker.call(self.store.list_keys, pattern)
        shown = keys[:limit]
        return {
            "pattern": pattern,
            "keys": shown,
            "total": len(keys),
            "showing": len(shown),
            "hasMore": len(keys) > limit,
        }

    async def warmup(
        self,
        keys: Iterable[str],
        fetcher_for: Callable[[str], Fetcher],
        ttl_seconds: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Populate the cache by calling ``get`` for each key."""
        semaphore = asyncio.Semaphore(self.warm_concurrency)

        async def _warm(key: str) -> Dict[str, Any]:
            async with semaphore:
                result = await self.get(key, fetcher_for(key), ttl_seconds)
            if result.found:
                return {"key": key, "status": "warmed", "outcome": result.outcome.value}
            error = str(result.error) if result.error is not None else "fetcher returned no value"
            return {"key": key, "status": "failed", "error": error}

        results = await asyncio.gather(*(_warm(key) for key in keys))
        successful = sum(1 for item in results if item["status"] == "warmed")
        summary = {
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
        }
        self.logger.info("Cache warm completed", **summary)
        return {"warmup": list(results), "summary": summary}

    # Bookkeeping

    def _result(
        self,
        key: str,
        value: Any,
        outcome: CacheOutcome,
        error: Optional[BaseException] = None,
    ) -> CacheResult:
        if self.metrics:
            try:
                self.metrics.increment_counter("cache_requests_total", outcome=outcome.value)
            except Exception as exc:  # pragma: no cover - metrics failures should never break reads
                self.logger.debug("Failed to record cache metrics", error=str(exc))
        return CacheResult(key=key, value=value, outcome=outcome, error=error)

    def _store_failure(self, operation: str, key: str, exc: Exception) -> None:
        if isinstance(exc, CircuitBreakerOpenException):
            self.logger.debug("Durable tier skipped, circuit open", operation=operation, key=key)
            return

        self.logger.error("Durable store error", operation=operation, key=key, error=str(exc))
        if self.metrics:
            try:
                self.metrics.increment_counter("cache_store_errors_total", operation=operation)
            except Exception as metrics_exc:  # pragma: no cover
                self.logger.debug("Failed to record store error metric", error=str(metrics_exc))

    def _observe_fetch(self, result: str, start: float) -> None:
        if self.metrics:
            try:
                self.metrics.observe_histogram(
                    "cache_fetch_duration_seconds",
                    time.perf_counter() - start,
                    result=result,
                )
            except Exception as exc:  # pragma: no cover
                self.logger.debug("Failed to record fetch metrics", error=str(exc))

    def _set_local_gauge(self, entries: int) -> None:
        if self.metrics:
            try:
                self.metrics.set_gauge("cache_local_entries", entries)
            except Exception as exc:  # pragma: no cover
                self.logger.debug("Failed to record local tier gauge", error=str(exc))
