"""Retry policy with exponential backoff.

An order gets ``max_attempts`` execution attempts in total.  After the
n-th failed attempt (``retry_count == n``) the engine asks the policy
whether another attempt is allowed and how long to wait first::

    delay(n) = base_delay * multiplier ** (n - 1)

so with ``base_delay=0.1`` the waits are 0.1s, 0.2s, 0.4s, ...  The
attempt cap is checked explicitly before every re-attempt, never
inferred from elapsed time.

Example:
    >>> policy = ExponentialBackoff(max_attempts=3, base_delay=0.1)
    >>> policy.should_retry(1), policy.next_delay(1)
    (True, 0.1)
    >>> policy.should_retry(3)
    False
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class ExponentialBackoff:
    """Exponential backoff bounded by an attempt count.

    Attributes:
        max_attempts: Total execution attempts allowed per order (>= 1)
        base_delay: Delay after the first failed attempt, in seconds
        multiplier: Growth factor between consecutive delays
        max_delay: Optional cap on a single delay, in seconds
        jitter: Add up to ``jitter_range * delay`` of random extra wait
        jitter_range: Fraction of the delay used for jitter (0.0-1.0)
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float | None = None
    jitter: bool = False
    jitter_range: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")

    @classmethod
    def from_millis(cls, max_attempts: int, base_delay_ms: int, **kwargs) -> ExponentialBackoff:
        return cls(max_attempts=max_attempts, base_delay=base_delay_ms / 1000.0, **kwargs)

    def should_retry(self, retry_count: int) -> bool:
        """Whether another attempt is allowed after ``retry_count`` failures."""
        return retry_count < self.max_attempts

    def next_delay(self, retry_count: int) -> float:
        """Seconds to wait before the attempt following failure ``retry_count``.

        Args:
            retry_count: Failed attempts so far (1 after the first failure)
        """
        if retry_count < 1:
            raise ValueError(f"retry_count must be >= 1, got {retry_count}")

        delay = self.base_delay * (self.multiplier ** (retry_count - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        # Jitter only ever lengthens the wait so the documented delay is a floor.
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter_range)

        return delay
