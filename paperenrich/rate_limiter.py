"""Sliding-window rate limiting for enrichment sources."""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional


@dataclass(frozen=True)
class RateLimit:
    """At most ``requests_per_interval`` requests in any ``interval_seconds`` window."""
    requests_per_interval: int
    interval_seconds: float

    def __post_init__(self):
        if self.requests_per_interval < 1:
            raise ValueError("requests_per_interval must be at least 1")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

    @classmethod
    def from_config(cls, config: Optional[dict], default: Optional["RateLimit"]) -> Optional["RateLimit"]:
        """Read ``requests_per_interval``/``interval_seconds`` from a source config.

        Returns None (unlimited) when the config sets ``requests_per_interval: 0``.
        """
        config = config or {}
        if 'requests_per_interval' not in config:
            return default
        requests = int(config['requests_per_interval'])
        if requests <= 0:
            return None
        interval = float(config.get('interval_seconds', default.interval_seconds if default else 1.0))
        return cls(requests, interval)


class RateLimiter:
    """Thread-safe sliding-window rate limiter.

    One instance per source. A ``rate_limit`` of None means unlimited.
    ``clock`` and ``sleep`` are injectable so tests can drive time.
    """

    def __init__(self, rate_limit: Optional[RateLimit] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 name: str = "source"):
        self.rate_limit = rate_limit
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._timestamps: Deque[float] = deque()
        self.logger = logging.getLogger(__name__)

    def _evict(self, now: float) -> None:
        window = self.rate_limit.interval_seconds
        while self._timestamps and now - self._timestamps[0] >= window:
            self._timestamps.popleft()

    def wait_if_needed(self) -> float:
        """Block until one more request fits in the window, then claim it.

        Returns:
            Total seconds spent waiting
        """
        if self.rate_limit is None:
            return 0.0

        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._evict(now)
                if len(self._timestamps) < self.rate_limit.requests_per_interval:
                    self._timestamps.append(now)
                    return waited
                wait_time = self._timestamps[0] + self.rate_limit.interval_seconds - now

            # Sleep outside the lock; another caller may take the slot first
            if wait_time > 0:
                self.logger.debug(f"{self.name}: rate limit reached, waiting {wait_time:.2f}s")
                self._sleep(wait_time)
                waited += wait_time

    @property
    def current_usage(self) -> int:
        """Requests admitted within the current window."""
        if self.rate_limit is None:
            return 0
        with self._lock:
            self._evict(self._clock())
            return len(self._timestamps)

    def reset(self) -> None:
        with self._lock:
            self._timestamps.clear()
