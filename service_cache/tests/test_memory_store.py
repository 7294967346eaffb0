"""
Unit tests for the in-memory durable store and pattern parsing.
"""

import pytest

from service_cache.app.store import InMemoryStore, StoredRecord, pattern_prefix
from shared.errors import DurableStoreError, InvalidPatternError


class TestPatternPrefix:
    """Test cases for pattern_prefix."""

    def test_trailing_wildcard(self):
        assert pattern_prefix("user:*") == ("user:", True)
        assert pattern_prefix("*") == ("", True)

    def test_exact_pattern(self):
        assert pattern_prefix("user:1") == ("user:1", False)

    @pytest.mark.parametrize("pattern", ["", "*user", "us*er", "user:**"])
    def test_unsupported_patterns(self, pattern):
        with pytest.raises(InvalidPatternError) as exc_info:
            pattern_prefix(pattern)

        assert exc_info.value.code == "INVALID_PATTERN"
        assert exc_info.value.status_code == 400


class TestInMemoryStore:
    """Test cases for InMemoryStore."""

    @pytest.fixture
    def store(self, clock):
        return InMemoryStore(clock=clock)

    @pytest.mark.asyncio
    async def test_set_get_roundtrip_keeps_envelope(self, store):
        await store.set("k", {"a": 1}, 30)

        record = await store.get_record("k")

        assert isinstance(record, StoredRecord)
        assert record.id == "k"
        assert record.data == {"a": 1}
        assert record.metadata.size == len('{"a": 1}')
        assert record.metadata.expires is not None
        assert await store.get("k") == {"a": 1}

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, store, clock):
        await store.set("k", "v", 5)
        clock.advance(5)

        assert await store.get("k") is None
        assert await store.list_keys("*") == []

    @pytest.mark.asyncio
    async def test_no_ttl_persists(self, store, clock):
        await store.set("k", "v")
        clock.advance(10 ** 6)

        record = await store.get_record("k")
        assert record.data == "v"
        assert record.metadata.expires is None
        assert record.remaining_ttl() is None

    @pytest.mark.asyncio
    async def test_delete_missing_key(self, store):
        await store.delete("missing")

    @pytest.mark.asyncio
    async def test_list_keys(self, store):
        for key in ("cache:user:1", "cache:user:2", "cache:order:1", "other"):
            await store.set(key, key)

        assert sorted(await store.list_keys("cache:user:*")) == ["cache:user:1", "cache:user:2"]
        assert await store.list_keys("cache:order:1") == ["cache:order:1"]
        assert await store.list_keys("cache:missing") == []
        assert len(await store.list_keys()) == 4

    @pytest.mark.asyncio
    async def test_increment(self, store):
        assert await store.increment("counter") == 1
        assert await store.increment("counter") == 2
        assert await store.get("counter") == 2

    @pytest.mark.asyncio
    async def test_increment_non_integer(self, store):
        await store.set("k", "text")

        with pytest.raises(DurableStoreError):
            await store.increment("k")

    @pytest.mark.asyncio
    async def test_set_rejects_unserializable_value(self, store):
        with pytest.raises(TypeError):
            await store.set("k", object())
