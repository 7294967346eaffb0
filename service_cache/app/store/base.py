"""
Durable store contract.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, Field

from shared.errors import InvalidPatternError

WILDCARD = "*"


class RecordMetadata(BaseModel):
    """Bookkeeping stored alongside every value."""

    size: int = 0
    format: str = "json"
    expires: Optional[datetime] = None


class StoredRecord(BaseModel):
    """Envelope persisted for each key in a durable store."""

    id: str
    data: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 1
    metadata: RecordMetadata = Field(default_factory=RecordMetadata)

    @classmethod
    def wrap(cls, key: str, value: Any, ttl_seconds: Optional[int] = None) -> "StoredRecord":
        """Build the envelope for ``value``; raises TypeError if it is not JSON-serializable."""
        now = datetime.now(timezone.utc)
        expires = now + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        return cls(
            id=key,
            data=value,
            timestamp=now,
            metadata=RecordMetadata(size=len(json.dumps(value)), expires=expires),
        )

    def remaining_ttl(self) -> Optional[float]:
        """Seconds until the record expires, ``None`` when it never does."""
        if self.metadata.expires is None:
            return None
        remaining = (self.metadata.expires - datetime.now(timezone.utc)).total_seconds()
        return max(0.0, remaining)


def pattern_prefix(pattern: str) -> Tuple[str, bool]:
    """Split a key pattern into ``(prefix, is_wildcard)``.

    Only a single trailing ``*`` is supported: ``"user:*"`` matches every key
    starting with ``"user:"``; a pattern without ``*`` matches one key
    exactly. Anything else raises :class:`InvalidPatternError`.
    """
    if not pattern:
        raise InvalidPatternError(pattern, "pattern must not be empty")

    wildcards = pattern.count(WILDCARD)
    if wildcards == 0:
        return pattern, False
    if wildcards > 1 or not pattern.endswith(WILDCARD):
        raise InvalidPatternError(pattern, "only a single trailing '*' is supported")
    return pattern[:-1], True


class DurableStore(ABC):
    """Key-value contract the cache requires from its durable tier.

    ``set`` without a TTL persists until an explicit ``delete``. Failures
    surface as :class:`shared.errors.DurableStoreError`.
    """

    name = "durable"

    async def start(self) -> None:
        """Open connections; no-op for in-process stores."""

    async def stop(self) -> None:
        """Release connections; no-op for in-process stores."""

    async def ping(self) -> bool:
        """Return True when the store answers."""
        return True

    async def get(self, key: str) -> Optional[Any]:
        """Return the value stored at ``key`` or ``None`` when absent/expired."""
        record = await self.get_record(key)
        return record.data if record is not None else None

    @abstractmethod
    async def get_record(self, key: str) -> Optional[StoredRecord]:
        """Return the full envelope stored at ``key``."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store ``value`` at ``key``, expiring after ``ttl_seconds`` when given."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; deleting an absent key is not an error."""

    @abstractmethod
    async def list_keys(self, pattern: str = WILDCARD) -> List[str]:
        """Return keys matching a single-trailing-wildcard pattern."""

    @abstractmethod
    async def increment(self, key: str) -> int:
        """Atomically increment the counter at ``key`` and return the new value."""
