"""
Response-time and cache-effectiveness tracking.
"""

from .performance_monitor import CacheStatus, MetricSample, PerformanceMonitor, PerformanceStats

__all__ = ["CacheStatus", "MetricSample", "PerformanceMonitor", "PerformanceStats"]
