"""
Per-identifier request admission.
"""

from .sliding_window import RateLimitDecision, SlidingWindowRateLimiter

__all__ = ["RateLimitDecision", "SlidingWindowRateLimiter"]
