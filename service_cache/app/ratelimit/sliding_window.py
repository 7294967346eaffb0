"""
Sliding-window log rate limiter.

Each identifier keeps the timestamps of its admitted requests. A request is
admitted while fewer than ``max_requests`` timestamps fall inside the
trailing window, so there is no burst at fixed window boundaries. State is
in-process; limits are per process, not cluster-wide.
"""

import asyncio
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, TYPE_CHECKING

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after_ms: int = 0

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds for a ``Retry-After`` header, rounded up."""
        return math.ceil(self.retry_after_ms / 1000)


class _Shard:
    __slots__ = ("lock", "windows")

    def __init__(self):
        self.lock = threading.Lock()
        self.windows: Dict[str, Deque[float]] = {}


class SlidingWindowRateLimiter:
    """In-memory sliding-window rate limiter keyed by caller identifier."""

    def __init__(
        self,
        max_requests: int = 1000,
        window_ms: int = 60000,
        *,
        shards: int = 16,
        gc_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if shards < 1:
            raise ValueError("shards must be >= 1")

        self.max_requests = max_requests
        self.window_ms = window_ms
        self.gc_interval = gc_interval
        self.metrics = metrics
        self.logger = get_logger("cache.rate_limiter")
        self._clock = clock
        self._shards = [_Shard() for _ in range(shards)]
        self._gc_task: Optional[asyncio.Task] = None

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _shard(self, identifier: str) -> _Shard:
        return self._shards[hash(identifier) % len(self._shards)]

    def _prune(self, window: Deque[float], now: float) -> None:
        """Drop timestamps that have left the trailing window. Caller holds the shard lock."""
        while window and now - window[0] >= self.window_ms:
            window.popleft()

    def _retry_after(self, window: Deque[float], now: float) -> int:
        if len(window) < self.max_requests:
            return 0
        return max(1, math.ceil(self.window_ms - (now - window[0])))

    def check(self, identifier: str) -> RateLimitDecision:
        """Admit or reject one request from ``identifier``.

        An admitted request is recorded; a rejected one is not, so a client
        hammering the limiter does not extend its own penalty.
        """
        shard = self._shard(identifier)
        now = self._now_ms()
        with shard.lock:
            window = shard.windows.get(identifier)
            if window is None:
                window = shard.windows[identifier] = deque()
            self._prune(window, now)

            if len(window) < self.max_requests:
                window.append(now)
                decision = RateLimitDecision(
                    allowed=True,
                    limit=self.max_requests,
                    remaining=self.max_requests - len(window),
                )
            else:
                decision = RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    retry_after_ms=self._retry_after(window, now),
                )

        if not decision.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                identifier=identifier,
                limit=self.max_requests,
                retry_after_ms=decision.retry_after_ms,
            )
        self._record_decision(decision)
        return decision

    def is_allowed(self, identifier: str) -> bool:
        return self.check(identifier).allowed

    def get_remaining_requests(self, identifier: str) -> int:
        """Requests ``identifier`` could still make now. Does not record anything."""
        shard = self._shard(identifier)
        now = self._now_ms()
        with shard.lock:
            window = shard.windows.get(identifier)
            if window is None:
                return self.max_requests
            self._prune(window, now)
            return max(0, self.max_requests - len(window))

    def retry_after_ms(self, identifier: str) -> int:
        """Milliseconds until ``identifier`` would be admitted again; 0 if it would be now."""
        shard = self._shard(identifier)
        now = self._now_ms()
        with shard.lock:
            window = shard.windows.get(identifier)
            if window is None:
                return 0
            self._prune(window, now)
            return self._retry_after(window, now)

    def reset(self, identifier: str) -> None:
        shard = self._shard(identifier)
        with shard.lock:
            shard.windows.pop(identifier, None)

    def purge_idle(self) -> int:
        """Forget identifiers with no timestamps left in the window."""
        now = self._now_ms()
        purged = 0
        for shard in self._shards:
            with shard.lock:
                for identifier in list(shard.windows):
                    window = shard.windows[identifier]
                    self._prune(window, now)
                    if not window:
                        del shard.windows[identifier]
                        purged += 1
        if purged:
            self.logger.debug("Purged idle rate limit windows", purged=purged)
        return purged

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.windows)
        return total

    async def start(self) -> None:
        """Start the periodic idle-identifier purge."""
        if self._gc_task is None:
            self._gc_task = asyncio.create_task(self._gc_loop())
            self.logger.info("Rate limiter cleanup started", interval=self.gc_interval)

    async def stop(self) -> None:
        if self._gc_task is not None:
            self._gc_task.cancel()
            try:
                await self._gc_task
            except asyncio.CancelledError:
                pass
            self._gc_task = None
            self.logger.info("Rate limiter cleanup stopped")

    async def _gc_loop(self) -> None:
        while True:
            await asyncio.sleep(self.gc_interval)
            self.purge_idle()

    def _record_decision(self, decision: RateLimitDecision) -> None:
        if self.metrics:
            try:
                self.metrics.increment_counter(
                    "rate_limit_decisions_total",
                    decision="allowed" if decision.allowed else "rejected",
                )
            except Exception as exc:  # pragma: no cover - metrics must not affect admission
                self.logger.debug("Failed to record rate limit metrics", error=str(exc))
