"""
Unit tests for the two-tier CacheManager.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from service_cache.app.caching import CacheManager, CacheOutcome
from service_cache.app.store import InMemoryStore
from shared.circuit_breaker import CircuitBreaker
from shared.errors import DurableStoreError, FetchTimeoutError, InvalidPatternError, ValidationError


class TestCacheManager:
    """Test cases for CacheManager."""

    @pytest.fixture
    def store(self, clock):
        return InMemoryStore(clock=clock)

    @pytest.fixture
    def cache_manager(self, store, clock, dummy_metrics):
        return CacheManager(store, clock=clock, metrics=dummy_metrics)

    @pytest.mark.asyncio
    async def test_set_then_get_hits_local(self, cache_manager):
        """A set is immediately readable from the local tier, whatever the TTL."""
        for ttl in (1, 60, 86400):
            await cache_manager.set(f"k{ttl}", {"ttl": ttl}, ttl)
            result = await cache_manager.get(f"k{ttl}")

            assert result.value == {"ttl": ttl}
            assert result.outcome is CacheOutcome.HIT_LOCAL

    @pytest.mark.asyncio
    async def test_get_unknown_key_without_fetcher(self, cache_manager):
        result = await cache_manager.get("never-set")

        assert result.value is None
        assert result.found is False
        assert result.outcome is CacheOutcome.MISS
        assert result.error is None

    @pytest.mark.asyncio
    async def test_durable_hit_populates_local(self, cache_manager, store):
        await store.set("cache:k", "durable-value", 60)

        first = await cache_manager.get("k")
        second = await cache_manager.get("k")

        assert first.outcome is CacheOutcome.HIT_DURABLE
        assert first.value == "durable-value"
        assert second.outcome is CacheOutcome.HIT_LOCAL

    @pytest.mark.asyncio
    async def test_durable_hit_uses_fixed_refresh_window(self, cache_manager, store, clock):
        """Local copies of durable hits expire after the refresh window, not the caller TTL."""
        await store.set("cache:k", "v", 3600)
        await cache_manager.get("k", ttl_seconds=3600)

        clock.advance(cache_manager.local_refresh_window + 1)
        result = await cache_manager.get("k")

        # Gone from the local tier, still in the durable tier
        assert result.outcome is CacheOutcome.HIT_DURABLE

    @pytest.mark.asyncio
    async def test_ttl_expiry_in_both_tiers(self, cache_manager, clock):
        await cache_manager.set("short", "v", 1)
        clock.advance(2)

        result = await cache_manager.get("short")

        assert result.value is None
        assert result.outcome is CacheOutcome.MISS

    @pytest.mark.asyncio
    async def test_fetcher_on_total_miss_populates_both_tiers(self, cache_manager, store):
        fetcher = AsyncMock(return_value={"fresh": True})

        result = await cache_manager.get("k", fetcher, 30)

        assert result.outcome is CacheOutcome.MISS
        assert result.value == {"fresh": True}
        fetcher.assert_awaited_once()
        assert await store.get("cache:k") == {"fresh": True}
        assert (await cache_manager.get("k")).outcome is CacheOutcome.HIT_LOCAL

    @pytest.mark.asyncio
    async def test_fetcher_failure_is_not_cached(self, cache_manager, store):
        fetcher = AsyncMock(side_effect=RuntimeError("upstream down"))

        result = await cache_manager.get("k", fetcher)

        assert result.value is None
        assert isinstance(result.error, RuntimeError)
        assert await store.get("cache:k") is None

        # Next read retries the fetcher instead of serving a cached failure
        fetcher.side_effect = None
        fetcher.return_value = "recovered"
        result = await cache_manager.get("k", fetcher)
        assert result.value == "recovered"

    @pytest.mark.asyncio
    async def test_fetcher_returning_none_is_not_cached(self, cache_manager, store):
        result = await cache_manager.get("k", AsyncMock(return_value=None))

        assert result.found is False
        assert result.error is None
        assert await store.get("cache:k") is None
        assert len(cache_manager.local) == 0

    @pytest.mark.asyncio
    async def test_fetcher_timeout(self, cache_manager, store, dummy_metrics):
        async def slow():
            await asyncio.sleep(1)
            return "late"

        result = await cache_manager.get("k", slow, timeout=0.01)

        assert result.value is None
        assert isinstance(result.error, FetchTimeoutError)
        assert await store.get("cache:k") is None
        assert len(cache_manager.local) == 0
        assert any(labels == {"result": "timeout"} for _, _, labels in dummy_metrics.histograms)

    @pytest.mark.asyncio
    async def test_set_rejects_non_positive_ttl(self, cache_manager):
        with pytest.raises(ValidationError):
            await cache_manager.set("k", "v", 0)

    @pytest.mark.asyncio
    async def test_invalidate_is_idempotent(self, cache_manager, store):
        await cache_manager.set("k", "v")

        await cache_manager.invalidate("k")
        await cache_manager.invalidate("k")

        assert (await cache_manager.get("k")).value is None
        assert await store.get("cache:k") is None

    @pytest.mark.asyncio
    async def test_invalidate_pattern(self, cache_manager, store):
        for key in ("user:1", "user:2", "order:1"):
            await cache_manager.set(key, key)

        removed = await cache_manager.invalidate_pattern("user:*")

        assert removed == 2
        assert (await cache_manager.get("user:1")).value is None
        assert (await cache_manager.get("user:2")).value is None
        assert (await cache_manager.get("order:1")).value == "order:1"
        assert await store.list_keys("cache:*") == ["cache:order:1"]

    @pytest.mark.asyncio
    async def test_invalidate_pattern_without_wildcard_is_exact(self, cache_manager):
        await cache_manager.set("user:1", "a")
        await cache_manager.set("user:10", "b")

        assert await cache_manager.invalidate_pattern("user:1") == 1
        assert (await cache_manager.get("user:10")).value == "b"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pattern", ["", "*user", "user:*:x", "a**"])
    async def test_invalid_pattern_rejected_before_store(self, cache_manager, store, pattern):
        with patch.object(store, "list_keys", new_callable=AsyncMock) as mock_list:
            with pytest.raises(InvalidPatternError):
                await cache_manager.invalidate_pattern(pattern)

            mock_list.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_clear_only_touches_cache_prefix(self, cache_manager, store):
        await store.set("user-data", {"keep": True})
        await cache_manager.set("a", 1)
        await cache_manager.set("b", 2)

        removed = await cache_manager.clear()

        assert removed == 2
        assert len(cache_manager.local) == 0
        assert await store.get("user-data") == {"keep": True}

    @pytest.mark.asyncio
    async def test_stats_and_cleanup(self, cache_manager, clock):
        await cache_manager.set("a", 1, 1)
        await cache_manager.set("b", 2, 60)

        stats = cache_manager.stats()
        assert stats["memoryEntries"] == 2
        assert set(stats["memoryKeys"]) == {"cache:a", "cache:b"}

        clock.advance(2)
        assert cache_manager.cleanup_expired() == 1
        assert cache_manager.stats()["memoryEntries"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_on_get_is_a_tier_miss(self, cache_manager, store):
        with patch.object(store, "get_record", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = DurableStoreError("get", "cache:k")

            result = await cache_manager.get("k", AsyncMock(return_value="fetched"))

        assert result.value == "fetched"
        assert result.outcome is CacheOutcome.MISS

    @pytest.mark.asyncio
    async def test_store_failure_on_set_keeps_local_copy(self, cache_manager, store, dummy_metrics):
        with patch.object(store, "set", new_callable=AsyncMock) as mock_set:
            mock_set.side_effect = DurableStoreError("set", "cache:k")

            persisted = await cache_manager.set("k", "v")

        assert persisted is False
        assert (await cache_manager.get("k")).outcome is CacheOutcome.HIT_LOCAL
        assert ("cache_store_errors_total", {"operation": "set"}) in dummy_metrics.counters

    @pytest.mark.asyncio
    async def test_store_failure_on_invalidate_still_removes_local(self, cache_manager, store):
        await cache_manager.set("k", "v")

        with patch.object(store, "delete", new_callable=AsyncMock) as mock_delete:
            mock_delete.side_effect = DurableStoreError("delete", "cache:k")
            await cache_manager.invalidate("k")

        assert cache_manager.local.get("cache:k") is None

    @pytest.mark.asyncio
    async def test_open_circuit_skips_durable_tier(self, store, clock):
        breaker = CircuitBreaker(
            failure_threshold=2,
            recovery_timeout=30.0,
            expected_exception=DurableStoreError,
            name="test",
            clock=clock,
        )
        cache_manager = CacheManager(store, breaker=breaker, clock=clock)

        with patch.object(store, "get_record", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = DurableStoreError("get")
            await cache_manager.get("a")
            await cache_manager.get("b")
            assert breaker.is_open()

            result = await cache_manager.get("c", AsyncMock(return_value="fetched"))
            assert mock_get.await_count == 2

        assert result.value == "fetched"

    @pytest.mark.asyncio
    async def test_warmup(self, cache_manager):
        def fetcher_for(key):
            if key == "bad":
                return AsyncMock(side_effect=RuntimeError("boom"))
            return AsyncMock(return_value=f"value-{key}")

        result = await cache_manager.warmup(["a", "b", "bad"], fetcher_for)

        assert result["summary"] == {"total": 3, "successful": 2, "failed": 1}
        statuses = {item["key"]: item["status"] for item in result["warmup"]}
        assert statuses == {"a": "warmed", "b": "warmed", "bad": "failed"}
        assert (await cache_manager.get("a")).value == "value-a"

    @pytest.mark.asyncio
    async def test_entry_info_and_list_keys(self, cache_manager):
        for i in range(3):
            await cache_manager.set(f"k{i}", i)

        record = await cache_manager.entry_info("k1")
        assert record.id == "cache:k1"
        assert record.data == 1
        assert await cache_manager.entry_info("cache:k2") is not None

        listing = await cache_manager.list_keys(limit=2)
        assert listing["total"] == 3
        assert listing["showing"] == 2
        assert listing["hasMore"] is True

    @pytest.mark.asyncio
    async def test_concurrent_set_get(self, cache_manager):
        """Parallel writers each read back some whole written value."""
        values = [{"writer": i, "items": list(range(i))} for i in range(20)]

        async def writer(value):
            await cache_manager.set("shared", value)
            return (await cache_manager.get("shared")).value

        observed = await asyncio.gather(*(writer(value) for value in values))

        assert all(value in values for value in observed)

    @pytest.mark.asyncio
    async def test_sweep_task_lifecycle(self, cache_manager):
        await cache_manager.start()
        assert cache_manager._sweep_task is not None

        await cache_manager.stop()
        assert cache_manager._sweep_task is None

    def test_prefix_must_not_contain_wildcard(self, store):
        with pytest.raises(ValueError):
            CacheManager(store, prefix="cache*")
