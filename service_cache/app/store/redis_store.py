"""
Redis-backed durable store.
"""

import asyncio
import json
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from shared.errors import DurableStoreError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception

from .base import WILDCARD, DurableStore, StoredRecord, pattern_prefix

_GLOB_SPECIALS = re.compile(r"([\\*?\[\]])")
_STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def escape_glob(value: str) -> str:
    """Escape Redis MATCH metacharacters so ``value`` matches literally."""
    return _GLOB_SPECIALS.sub(r"\\\1", value)


class RedisStore(DurableStore):
    """Durable store on Redis: JSON envelopes, SETEX for TTLs, SCAN for listing."""

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        scan_count: int = 500,
        connect_retry: Optional[RetryConfig] = None,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.scan_count = scan_count
        self.connect_retry = connect_retry or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self.logger = get_logger("cache.store.redis")
        self.redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        return self.redis

    @asynccontextmanager
    async def _operation(self, operation: str, key: Optional[str] = None) -> AsyncIterator[redis.Redis]:
        """Yield a client and translate transport failures into DurableStoreError."""
        try:
            yield await self._get_redis()
        except _STORE_ERRORS as e:
            raise DurableStoreError(operation, key, e) from e

    async def start(self) -> None:
        """Start the Redis store, retrying the initial ping."""
        client = await self._get_redis()
        ping = retry_on_exception(_STORE_ERRORS, self.connect_retry)(client.ping)
        try:
            await ping()
        except RetryError as e:
            self.logger.error("Failed to start Redis store", error=str(e.last_exception))
            raise DurableStoreError("start", original_error=e.last_exception) from e

        self.logger.info("Redis store started", url=self.redis_url)

    async def stop(self) -> None:
        """Stop the Redis store."""
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis store stopped")

    async def ping(self) -> bool:
        try:
            async with self._operation("ping") as client:
                return bool(await client.ping())
        except DurableStoreError as e:
            self.logger.warning("Redis ping failed", error=str(e.details.get("original_error")))
            return False

    async def get_record(self, key: str) -> Optional[StoredRecord]:
        async with self._operation("get", key) as client:
            raw = await client.get(key)
        if raw is None:
            return None
        return self._decode(key, raw)

    def _decode(self, key: str, raw: str) -> StoredRecord:
        """Parse an envelope; bare values (e.g. INCR counters) are wrapped."""
        try:
            return StoredRecord.model_validate_json(raw)
        except PydanticValidationError:
            pass

        try:
            payload: Any = json.loads(raw)
        except json.JSONDecodeError:
            payload = raw
        return StoredRecord(id=key, data=payload)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        payload = StoredRecord.wrap(key, value, ttl_seconds).model_dump_json()
        async with self._operation("set", key) as client:
            if ttl_seconds:
                await client.setex(key, ttl_seconds, payload)
            else:
                await client.set(key, payload)

    async def delete(self, key: str) -> None:
        async with self._operation("delete", key) as client:
            await client.delete(key)

    async def list_keys(self, pattern: str = WILDCARD) -> List[str]:
        prefix, is_wildcard = pattern_prefix(pattern)
        async with self._operation("list_keys", pattern) as client:
            if not is_wildcard:
                return [prefix] if await client.exists(prefix) else []

            match = escape_glob(prefix) + WILDCARD
            keys = [key async for key in client.scan_iter(match=match, count=self.scan_count)]

        # SCAN may report a key more than once
        return list(dict.fromkeys(keys))

    async def increment(self, key: str) -> int:
        async with self._operation("increment", key) as client:
            return int(await client.incr(key))
