"""
Unit tests for PerformanceMonitor.
"""

import pytest

from service_cache.app.monitoring import CacheStatus, MetricSample, PerformanceMonitor, PerformanceStats
from service_cache.app.monitoring.performance_monitor import nearest_rank


class TestPerformanceMonitor:
    """Test cases for PerformanceMonitor."""

    @pytest.fixture
    def monitor(self):
        return PerformanceMonitor(max_samples=100)

    def test_empty_stats_are_zero(self, monitor):
        stats = monitor.get_stats()

        assert stats == PerformanceStats()
        assert stats.model_dump(by_alias=True) == {
            "count": 0,
            "averageResponseTime": 0.0,
            "cacheHitRate": 0.0,
            "p95ResponseTime": 0.0,
            "p99ResponseTime": 0.0,
        }

    def test_nearest_rank_percentiles(self, monitor):
        for i in range(1, 101):
            status = CacheStatus.HIT if i % 4 == 0 else CacheStatus.MISS
            monitor.record(i * 10, status, "eu")

        stats = monitor.get_stats()

        assert stats.count == 100
        assert stats.average_response_time == 505
        # Sorted values at index floor(100 * 0.95) and floor(100 * 0.99)
        assert stats.p95_response_time == 960
        assert stats.p99_response_time == 1000
        assert stats.cache_hit_rate == 25.0

    def test_stale_samples_are_not_hits(self, monitor):
        monitor.record(5, CacheStatus.HIT)
        monitor.record(5, CacheStatus.STALE)

        assert monitor.get_stats().cache_hit_rate == 50.0

    def test_single_sample(self, monitor):
        monitor.record(42, "hit")

        stats = monitor.get_stats()
        assert stats.p95_response_time == 42
        assert stats.p99_response_time == 42

    def test_ring_buffer_drops_oldest(self):
        monitor = PerformanceMonitor(max_samples=3)
        for i in range(5):
            monitor.add_metric(MetricSample(response_time_ms=i, cache_status=CacheStatus.MISS))

        assert len(monitor) == 3
        assert [s.response_time_ms for s in monitor.get_recent_metrics(10)] == [2, 3, 4]

    def test_recent_metrics_oldest_first(self, monitor):
        for i in range(20):
            monitor.record(i, CacheStatus.MISS)

        recent = monitor.get_recent_metrics(3)

        assert [s.response_time_ms for s in recent] == [17, 18, 19]
        assert monitor.get_recent_metrics(0) == []
        assert monitor.get_recent_metrics(-1) == []

    def test_clear(self, monitor):
        monitor.record(1, CacheStatus.HIT)
        monitor.clear()

        assert monitor.get_stats().count == 0

    def test_unknown_cache_status_rejected(self, monitor):
        with pytest.raises(ValueError):
            monitor.record(1, "bogus")

    def test_nearest_rank_helper(self):
        assert nearest_rank([], 0.95) == 0.0
        assert nearest_rank([1, 2, 3, 4], 0.5) == 3
