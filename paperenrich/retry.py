"""Exponential backoff policy for retried enrichment requests."""

import random
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff delay and attempt ceiling for a retried operation.

    The policy only computes; callers do the sleeping and the calling.

    Attributes:
        max_attempts: Failed attempts after which the operation gives up
        base_delay: Delay in seconds before the first retry
        jitter_factor: Fraction of the delay to randomly add or subtract.
            Zero makes delays deterministic.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    jitter_factor: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")

    @classmethod
    def from_config(cls, config: Optional[dict]) -> "RetryPolicy":
        config = config or {}
        return cls(
            max_attempts=int(config.get('max_attempts', 3)),
            base_delay=float(config.get('base_delay', 1.0)),
            jitter_factor=float(config.get('jitter_factor', 0.1)),
        )

    def delay(self, attempt: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        """Delay before retrying after 0-based ``attempt``: base_delay * 2**attempt, +/- jitter."""
        if attempt < 0:
            raise ValueError("attempt must not be negative")
        delay = self.base_delay * (2 ** attempt)
        if self.jitter_factor > 0 and delay > 0:
            spread = delay * self.jitter_factor
            delay += rng(-spread, spread)
        return max(0.0, delay)

    def is_exhausted(self, failed_attempts: int) -> bool:
        """True once ``failed_attempts`` failures have reached max_attempts."""
        return failed_attempts >= self.max_attempts

    def should_retry(self, failed_attempts: int) -> bool:
        return not self.is_exhausted(failed_attempts)
