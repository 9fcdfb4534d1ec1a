"""Rate Limiting — token-bucket admission throttle.

Manifesto:
    The slot ceiling bounds how many orders run at once; it says nothing
    about how fast new ones start.  A burst of submissions would otherwise
    all start the instant slots free up and starve running orders of
    network and venue capacity.  The token bucket bounds the admission
    *rate* independently of slot availability.

ARCHITECTURE
────────────
::

    TokenBucketLimiter(rate, capacity)
      ├── .try_acquire(tokens)    ─ non-blocking
      ├── .acquire(tokens)        ─ await until tokens available
      ├── .get_wait_time(tokens)  ─ seconds until available
      └── .available_tokens       ─ current level

    Tokens refill continuously at ``rate`` per second up to ``capacity``.
    Over any window of length T at most ``capacity + rate * T`` tokens
    can be taken.

    The limiter is asyncio-native: ``acquire`` sleeps on the event loop
    and waiters are served in arrival order (internal ``asyncio.Lock``).

Example::

    limiter = TokenBucketLimiter.per_window(limit=100, window_seconds=60)
    await limiter.acquire()
    admit(order)

Tags:
    order-spine, dispatch, rate-limit, throttle, token-bucket

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class TokenBucketLimiter:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate up to capacity.
    Allows bursts up to capacity, then limits to rate.

    Attributes:
        rate: Tokens added per second
        capacity: Maximum tokens (burst size)
        clock: Monotonic time source, injectable for tests
    """

    rate: float  # tokens per second
    capacity: float  # max tokens
    clock: Callable[[], float] = time.monotonic

    _tokens: float = field(default=0.0, init=False)
    _last_update: float = field(default=0.0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self):
        """Validate and start with a full bucket."""
        if self.rate <= 0:
            raise ValueError(f"rate must be positive, got {self.rate}")
        if self.capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {self.capacity}")
        self._tokens = float(self.capacity)
        self._last_update = self.clock()

    @classmethod
    def per_window(
        cls,
        limit: int,
        window_seconds: float,
        burst: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> TokenBucketLimiter:
        """Build a limiter allowing ``limit`` tokens per ``window_seconds``."""
        return cls(
            rate=limit / window_seconds,
            capacity=float(burst if burst is not None else limit),
            clock=clock,
        )

    def _refill(self) -> None:
        """Add tokens based on elapsed time."""
        now = self.clock()
        elapsed = max(0.0, now - self._last_update)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_update = now

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take ``tokens`` if available right now."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def get_wait_time(self, tokens: int = 1) -> float:
        """Get seconds until tokens available."""
        self._refill()
        if self._tokens >= tokens:
            return 0.0
        return (tokens - self._tokens) / self.rate

    async def acquire(self, tokens: int = 1) -> float:
        """Wait until ``tokens`` can be taken, then take them.

        Returns:
            Seconds spent waiting.
        """
        if tokens > self.capacity:
            raise ValueError(f"cannot acquire {tokens} tokens from a bucket of {self.capacity}")

        waited = 0.0
        async with self._lock:
            while not self.try_acquire(tokens):
                delay = self.get_wait_time(tokens)
                waited += delay
                await asyncio.sleep(delay)
        return waited

    @property
    def available_tokens(self) -> float:
        """Get current available tokens."""
        self._refill()
        return self._tokens
