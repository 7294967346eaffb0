"""
Process-local cache tier.

A hash-sharded in-memory table. Every shard has its own lock, and no lock is
held across an await, so the tier can be shared by coroutines and threads
alike.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


@dataclass(frozen=True)
class CacheEntry:
    """A value held by the local tier. Replaced wholesale, never mutated."""

    key: str
    value: Any
    stored_at: float
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: Dict[str, CacheEntry] = {}


class LocalTier:
    """Sharded, TTL-aware in-memory table."""

    def __init__(self, shards: int = 16, clock: Callable[[], float] = time.monotonic):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]
        self._clock = clock

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key``; expired entries are evicted and never returned."""
        shard = self._shard(key)
        now = self._clock()
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del shard.entries[key]
                return None
            return entry

    def put(self, key: str, value: Any, ttl_seconds: Optional[float]) -> CacheEntry:
        now = self._clock()
        expires_at = now + ttl_seconds if ttl_seconds is not None else None
        entry = CacheEntry(key=key, value=value, stored_at=now, expires_at=expires_at)
        shard = self._shard(key)
        with shard.lock:
            shard.entries[key] = entry
        return entry

    def delete(self, key: str) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return shard.entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> List[str]:
        """Remove every key starting with ``prefix``; returns the removed keys."""
        removed: List[str] = []
        for shard in self._shards:
            with shard.lock:
                doomed = [key for key in shard.entries if key.startswith(prefix)]
                for key in doomed:
                    del shard.entries[key]
            removed.extend(doomed)
        return removed

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()

    def cleanup_expired(self) -> int:
        """Evict expired entries from every shard; returns how many were removed."""
        now = self._clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [key for key, entry in shard.entries.items() if entry.is_expired(now)]
                for key in expired:
                    del shard.entries[key]
            removed += len(expired)
        return removed

    def keys(self, limit: Optional[int] = None) -> List[str]:
        """A point-in-time sample of keys, at most ``limit`` of them."""
        sample: List[str] = []
        for shard in self._shards:
            with shard.lock:
                sample.extend(shard.entries.keys())
            if limit is not None and len(sample) >= limit:
                return sample[:limit]
        return sample

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total
