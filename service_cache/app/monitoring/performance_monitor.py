"""
Request latency and cache-effectiveness monitor.

Samples live in a fixed-capacity ring buffer. Percentiles use the
nearest-rank convention: response times are sorted ascending and p95/p99 are
the values at indices ``floor(n * 0.95)`` and ``floor(n * 0.99)``, with no
interpolation.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, Union

from pydantic import BaseModel, ConfigDict, Field


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    STALE = "stale"


@dataclass(frozen=True)
class MetricSample:
    """One observed request."""

    response_time_ms: float
    cache_status: CacheStatus
    region: str = "unknown"
    timestamp: float = field(default_factory=time.time)


class PerformanceStats(BaseModel):
    """Aggregate view over the buffered samples. Times are milliseconds, hit rate a percentage."""

    model_config = ConfigDict(populate_by_name=True)

    count: int = 0
    average_response_time: float = Field(0.0, alias="averageResponseTime")
    cache_hit_rate: float = Field(0.0, alias="cacheHitRate")
    p95_response_time: float = Field(0.0, alias="p95ResponseTime")
    p99_response_time: float = Field(0.0, alias="p99ResponseTime")


def nearest_rank(sorted_values: List[float], quantile: float) -> float:
    """Value at index ``floor(n * quantile)`` of an ascending list, 0 when empty."""
    if not sorted_values:
        return 0.0
    index = min(math.floor(len(sorted_values) * quantile), len(sorted_values) - 1)
    return sorted_values[index]


class PerformanceMonitor:
    """Bounded buffer of recent samples with on-demand statistics.

    Never raises on empty data; stats over zero samples are all zeros.
    """

    def __init__(self, max_samples: int = 100):
        if max_samples < 1:
            raise ValueError("max_samples must be >= 1")
        self.max_samples = max_samples
        self._samples: Deque[MetricSample] = deque(maxlen=max_samples)
        self._lock = threading.Lock()

    def add_metric(self, sample: MetricSample) -> None:
        with self._lock:
            self._samples.append(sample)

    def record(
        self,
        response_time_ms: float,
        cache_status: Union[CacheStatus, str],
        region: str = "unknown",
    ) -> MetricSample:
        sample = MetricSample(
            response_time_ms=response_time_ms,
            cache_status=CacheStatus(cache_status),
            region=region,
        )
        self.add_metric(sample)
        return sample

    def _snapshot(self) -> List[MetricSample]:
        with self._lock:
            return list(self._samples)

    def get_stats(self) -> PerformanceStats:
        samples = self._snapshot()
        if not samples:
            return PerformanceStats()

        count = len(samples)
        times = sorted(sample.response_time_ms for sample in samples)
        hits = sum(1 for sample in samples if sample.cache_status is CacheStatus.HIT)

        return PerformanceStats(
            count=count,
            average_response_time=sum(times) / count,
            cache_hit_rate=hits / count * 100,
            p95_response_time=nearest_rank(times, 0.95),
            p99_response_time=nearest_rank(times, 0.99),
        )

    def get_recent_metrics(self, limit: int = 10) -> List[MetricSample]:
        """The most recent ``limit`` samples, oldest first."""
        if limit <= 0:
            return []
        return self._snapshot()[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)
