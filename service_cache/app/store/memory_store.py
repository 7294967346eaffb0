"""
In-process durable store.

Used for local development and tests. TTLs are emulated lazily: expired
keys are dropped when they are read or listed.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.errors import DurableStoreError

from .base import WILDCARD, DurableStore, StoredRecord, pattern_prefix


class InMemoryStore(DurableStore):
    """Dictionary-backed implementation of the durable store contract."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, Tuple[StoredRecord, Optional[float]]] = {}

    def _live(self, key: str, now: float) -> Optional[StoredRecord]:
        """Return the record at ``key``, evicting it if expired. Caller holds the lock."""
        item = self._records.get(key)
        if item is None:
            return None
        record, expires_at = item
        if expires_at is not None and expires_at <= now:
            del self._records[key]
            return None
        return record

    async def get_record(self, key: str) -> Optional[StoredRecord]:
        with self._lock:
            return self._live(key, self._clock())

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        record = StoredRecord.wrap(key, value, ttl_seconds)
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._records[key] = (record, expires_at)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    async def list_keys(self, pattern: str = WILDCARD) -> List[str]:
        prefix, is_wildcard = pattern_prefix(pattern)
        now = self._clock()
        with self._lock:
            if is_wildcard:
                candidates = [key for key in self._records if key.startswith(prefix)]
            else:
                candidates = [prefix] if prefix in self._records else []
            return [key for key in candidates if self._live(key, now) is not None]

    async def increment(self, key: str) -> int:
        with self._lock:
            record = self._live(key, self._clock())
            current = record.data if record is not None else 0
            expires_at = self._records[key][1] if record is not None else None
            if isinstance(current, bool) or not isinstance(current, int):
                raise DurableStoreError("increment", key, TypeError("value is not an integer"))
            self._records[key] = (StoredRecord.wrap(key, current + 1), expires_at)
            return current + 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
