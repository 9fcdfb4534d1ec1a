"""
Shared pytest fixtures and helpers for order-spine tests.

This module provides:
- ``RecordingTransport``: an in-memory StatusTransport that records messages
- ``ScriptedStrategy``: an ExecutionStrategy driven by a per-call script,
  tracking concurrency and attempt start times
- ``RecordingStore``: an InMemoryOrderStore that keeps every save in order
- order and settings factories with millisecond-scale timings

Usage:
    Fixtures are auto-discovered by pytest. Helpers are imported directly::

        from conftest import RecordingTransport, ScriptedStrategy
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

# Ensure the package and these helpers are importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from order_spine.core.settings import OrderSpineSettings
from order_spine.dispatch.engine import DispatchPolicy
from order_spine.dispatch.models import (
    ExecutionFailure,
    ExecutionOutcome,
    ExecutionSuccess,
    Order,
    OrderKind,
    OrderSnapshot,
)
from order_spine.dispatch.store import InMemoryOrderStore

# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark every test without an explicit marker as a unit test."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Helpers
# =============================================================================


SUCCESS = ExecutionSuccess(route="raydium", price=Decimal("150.25"), reference="5xTestSig")


def make_order(**overrides: Any) -> Order:
    """Create a PENDING SOL→USDC order."""
    fields: dict[str, Any] = dict(
        kind=OrderKind.MARKET_BUY,
        input_asset="SOL",
        output_asset="USDC",
        input_amount=Decimal("1.5"),
    )
    fields.update(overrides)
    return Order.create(**fields)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.002) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class RecordingTransport:
    """StatusTransport that records every message it is sent."""

    def __init__(self, *, fail_on_send: bool = False, send_delay: float = 0.0) -> None:
        self.messages: list[dict[str, Any]] = []
        self.close_calls = 0
        self.fail_on_send = fail_on_send
        self.send_delay = send_delay
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: dict[str, Any]) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_on_send:
            raise ConnectionResetError("peer went away")
        self.messages.append(message)

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True

    def drop(self) -> None:
        """Simulate the peer disconnecting."""
        self._closed = True

    @property
    def events(self) -> list[str]:
        return [m["event"] for m in self.messages]

    @property
    def statuses(self) -> list[str]:
        return [m["status"] for m in self.messages]

    async def wait_for_event(self, event: str, timeout: float = 2.0) -> None:
        await wait_until(lambda: event in self.events, timeout=timeout)


class ScriptedStrategy:
    """ExecutionStrategy driven by a script.

    ``script`` is called with ``(snapshot, attempt_number)`` and returns
    an outcome, raises, or returns an awaitable.  ``delay`` seconds are
    slept before each outcome.  The strategy records the maximum number
    of concurrent calls and the loop time at which each attempt started.
    """

    def __init__(
        self,
        script: Callable[[OrderSnapshot, int], Any] | None = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.script = script or (lambda snapshot, attempt: SUCCESS)
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.calls: dict[str, int] = {}
        self.starts: dict[str, list[float]] = {}
        self.call_order: list[str] = []

    async def execute(self, order: OrderSnapshot) -> ExecutionOutcome:
        loop = asyncio.get_running_loop()
        attempt = self.calls.get(order.order_id, 0) + 1
        self.calls[order.order_id] = attempt
        self.starts.setdefault(order.order_id, []).append(loop.time())
        self.call_order.append(order.order_id)

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.script(order, attempt)
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                result = await result
            return result
        finally:
            self.active -= 1


def always_fail(snapshot: OrderSnapshot, attempt: int) -> ExecutionOutcome:
    return ExecutionFailure(reason="no_liquidity")


class RecordingStore(InMemoryOrderStore):
    """InMemoryOrderStore that also keeps every saved snapshot in order."""

    def __init__(self) -> None:
        super().__init__()
        self.saves: list[OrderSnapshot] = []

    async def save(self, snapshot: OrderSnapshot) -> None:
        self.saves.append(snapshot)
        await super().save(snapshot)

    def statuses_for(self, order_id: str) -> list[str]:
        return [s.status.value for s in self.saves if s.order_id == order_id]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fast_policy() -> DispatchPolicy:
    """Policy with millisecond-scale backoff and generous rate limit."""
    return DispatchPolicy(
        max_concurrent_orders=5,
        order_rate_limit=1000,
        order_rate_window_ms=1000,
        retry_max_attempts=3,
        retry_backoff_ms=10,
        execution_timeout_ms=1000,
        shutdown_timeout_ms=500,
    )


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def test_settings(tmp_path: Path) -> OrderSpineSettings:
    """Settings isolated from the developer's environment and ``.env``."""
    return OrderSpineSettings(
        _env_file=None,
        log_level="WARNING",
        log_json=False,
        store_backend="memory",
        database_path=str(tmp_path / "orders.db"),
        max_concurrent_orders=5,
        order_rate_limit=1000,
        order_rate_window_ms=1000,
        retry_max_attempts=3,
        retry_backoff_ms=10,
        execution_timeout_ms=2000,
        shutdown_timeout_ms=500,
        mock_delay_min_ms=5,
        mock_delay_max_ms=15,
        mock_failure_rate=0.0,
    )
