"""Execution strategies — how a single order attempt is carried out.

ARCHITECTURE
────────────
::

    ExecutionStrategy (Protocol)
      └── .execute(snapshot) -> ExecutionSuccess | ExecutionFailure

    SimulatedDexStrategy
      ├── quote raydium + meteora (price variance, venue fee)
      ├── pick the venue with the best effective output
      ├── sleep a uniform delay in [delay_min, delay_max]
      └── fail with probability failure_rate

The engine owns timeouts and retries; a strategy only performs one
attempt.  A strategy may report failure by returning ``ExecutionFailure``
or by raising; the engine treats both the same way.  Strategies receive a
frozen ``OrderSnapshot`` and must not assume state is shared between
calls.

Example::

    strategy = SimulatedDexStrategy(delay_min_ms=10, delay_max_ms=20, rng=random.Random(7))
    outcome = await strategy.execute(order.snapshot())
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from order_spine.core.logging import get_logger
from order_spine.dispatch.models import (
    ExecutionFailure,
    ExecutionOutcome,
    ExecutionSuccess,
    OrderSnapshot,
)

if TYPE_CHECKING:
    from order_spine.core.settings import OrderSpineSettings

logger = get_logger(__name__)

_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_PRICE_QUANTUM = Decimal("0.00000001")

# Mid prices quoted in USDC; unknown pairs fall back to 1.
REFERENCE_PRICES: dict[str, Decimal] = {
    "SOL": Decimal("150"),
    "USDC": Decimal("1"),
    "USDT": Decimal("1"),
    "BONK": Decimal("0.00002"),
    "JUP": Decimal("0.9"),
}


@runtime_checkable
class ExecutionStrategy(Protocol):
    """Performs one execution attempt for an order."""

    async def execute(self, order: OrderSnapshot) -> ExecutionOutcome:
        ...


@dataclass(frozen=True)
class VenueQuote:
    """Price offered by one venue, before fees."""

    venue: str
    price: Decimal
    fee: Decimal

    def effective_output(self, amount: Decimal) -> Decimal:
        return amount * self.price * (Decimal(1) - self.fee)


@dataclass(frozen=True)
class VenueProfile:
    """Spread of prices a simulated venue quotes around the mid."""

    name: str
    variance_low: float
    variance_high: float
    fee: Decimal


DEFAULT_VENUES: tuple[VenueProfile, ...] = (
    VenueProfile("raydium", 0.98, 1.02, Decimal("0.003")),
    VenueProfile("meteora", 0.97, 1.02, Decimal("0.002")),
)


def mid_price(input_asset: str, output_asset: str) -> Decimal:
    """Reference price of ``input_asset`` in units of ``output_asset``."""
    price_in = REFERENCE_PRICES.get(input_asset.upper(), Decimal(1))
    price_out = REFERENCE_PRICES.get(output_asset.upper(), Decimal(1))
    return price_in / price_out


def settlement_reference(rng: random.Random, length: int = 88) -> str:
    """Random base58 string shaped like a Solana transaction signature."""
    return "".join(rng.choice(_BASE58_ALPHABET) for _ in range(length))


class SimulatedDexStrategy:
    """Stand-in DEX router that quotes two venues and fills at the best one.

    Args:
        delay_min_ms: Lower bound of the simulated settlement delay.
        delay_max_ms: Upper bound of the simulated settlement delay.
        failure_rate: Probability that an attempt fails (0.0-1.0).
        venues: Venue profiles to quote.
        rng: Random source; pass a seeded ``random.Random`` for
            reproducible outcomes.
    """

    def __init__(
        self,
        *,
        delay_min_ms: int = 2000,
        delay_max_ms: int = 3000,
        failure_rate: float = 0.0,
        venues: tuple[VenueProfile, ...] = DEFAULT_VENUES,
        rng: random.Random | None = None,
    ) -> None:
        if delay_min_ms < 0 or delay_max_ms < delay_min_ms:
            raise ValueError(f"invalid delay range: [{delay_min_ms}, {delay_max_ms}]")
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError(f"failure_rate must be within [0, 1], got {failure_rate}")
        if not venues:
            raise ValueError("at least one venue is required")
        self.delay_min_ms = delay_min_ms
        self.delay_max_ms = delay_max_ms
        self.failure_rate = failure_rate
        self.venues = venues
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: OrderSpineSettings, rng: random.Random | None = None) -> SimulatedDexStrategy:
        return cls(
            delay_min_ms=settings.mock_delay_min_ms,
            delay_max_ms=settings.mock_delay_max_ms,
            failure_rate=settings.mock_failure_rate,
            rng=rng,
        )

    def quote(self, order: OrderSnapshot) -> list[VenueQuote]:
        """Quote every venue for ``order``."""
        mid = mid_price(order.input_asset, order.output_asset)
        return [
            VenueQuote(
                venue=profile.name,
                price=mid * Decimal(str(self._rng.uniform(profile.variance_low, profile.variance_high))),
                fee=profile.fee,
            )
            for profile in self.venues
        ]

    def best_quote(self, order: OrderSnapshot) -> VenueQuote:
        quotes = self.quote(order)
        return max(quotes, key=lambda q: q.effective_output(order.input_amount))

    async def execute(self, order: OrderSnapshot) -> ExecutionOutcome:
        best = self.best_quote(order)
        delay_ms = self._rng.uniform(self.delay_min_ms, self.delay_max_ms)
        logger.debug(
            "strategy.routed",
            order_id=order.order_id,
            venue=best.venue,
            quoted_price=str(best.price),
            delay_ms=round(delay_ms, 1),
        )

        await asyncio.sleep(delay_ms / 1000.0)

        if self._rng.random() < self.failure_rate:
            return ExecutionFailure(reason=f"{best.venue}_swap_failed")

        # Fill somewhere inside the caller's slippage tolerance.
        slip = Decimal(str(self._rng.uniform(0.0, float(order.max_slippage))))
        price = (best.price * (Decimal(1) - slip)).quantize(_PRICE_QUANTUM, rounding=ROUND_HALF_EVEN)
        return ExecutionSuccess(
            route=best.venue,
            price=price,
            reference=settlement_reference(self._rng),
        )
