"""
Durable store package.

Defines the narrow key-value contract the cache depends on and the
backends that satisfy it. Keys listed by pattern support a single trailing
wildcard only (``prefix*``).
"""

from .base import DurableStore, RecordMetadata, StoredRecord, pattern_prefix
from .memory_store import InMemoryStore
from .redis_store import RedisStore

__all__ = [
    "DurableStore",
    "InMemoryStore",
    "RecordMetadata",
    "RedisStore",
    "StoredRecord",
    "pattern_prefix",
]
