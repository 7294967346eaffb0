"""
Tiered caching: a process-local tier in front of a durable store.
"""

from .cache_manager import CacheManager, CacheOutcome, CacheResult
from .local_tier import CacheEntry, LocalTier

__all__ = [
    "CacheEntry",
    "CacheManager",
    "CacheOutcome",
    "CacheResult",
    "LocalTier",
]
