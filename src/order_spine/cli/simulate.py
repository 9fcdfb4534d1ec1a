"""
CLI: ``order-spine simulate`` — push simulated orders through an in-process engine.

Useful for eyeballing concurrency, rate limiting and retry behaviour
without a server or a WebSocket client.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from decimal import Decimal

import typer

from order_spine.cli.utils import console, print_dict, print_json, print_table
from order_spine.core.logging import configure_logging
from order_spine.dispatch.engine import DispatchEngine, DispatchPolicy
from order_spine.dispatch.hub import StatusHub
from order_spine.dispatch.metrics import DispatchMetrics
from order_spine.dispatch.models import Order, OrderKind, OrderSnapshot
from order_spine.dispatch.store import InMemoryOrderStore
from order_spine.dispatch.strategy import SimulatedDexStrategy

PAIRS: tuple[tuple[str, str], ...] = (
    ("SOL", "USDC"),
    ("USDC", "SOL"),
    ("SOL", "USDT"),
    ("JUP", "USDC"),
    ("BONK", "SOL"),
)


@dataclass
class SimulationReport:
    orders: list[OrderSnapshot] = field(default_factory=list)
    metrics: DispatchMetrics = field(default_factory=DispatchMetrics)


def make_orders(count: int, rng: random.Random) -> list[Order]:
    """Random market orders over a handful of common pairs."""
    orders = []
    for _ in range(count):
        input_asset, output_asset = rng.choice(PAIRS)
        orders.append(
            Order.create(
                kind=rng.choice(list(OrderKind)),
                input_asset=input_asset,
                output_asset=output_asset,
                input_amount=Decimal(str(round(rng.uniform(0.1, 25.0), 4))),
            )
        )
    return orders


async def run_simulation(
    count: int,
    *,
    policy: DispatchPolicy,
    delay_min_ms: int,
    delay_max_ms: int,
    failure_rate: float,
    seed: int | None = None,
) -> SimulationReport:
    """Run ``count`` orders to completion and collect their final state."""
    rng = random.Random(seed)
    store = InMemoryOrderStore()
    hub = StatusHub()
    strategy = SimulatedDexStrategy(
        delay_min_ms=delay_min_ms,
        delay_max_ms=delay_max_ms,
        failure_rate=failure_rate,
        rng=rng,
    )
    engine = DispatchEngine(strategy, policy=policy, store=store, hub=hub)

    orders = make_orders(count, rng)
    async with engine:
        for order in orders:
            await store.create(order.snapshot())
            engine.submit(order)
        await engine.wait_idle()
        report = SimulationReport(
            orders=[engine.snapshot(o.order_id) for o in orders],
            metrics=engine.metrics(),
        )
    await hub.close()
    return report


def simulate(
    orders: int = typer.Option(10, "--orders", "-n", min=1, help="Number of orders to submit"),
    concurrency: int = typer.Option(5, "--concurrency", "-c", min=1, help="max_concurrent_orders"),
    rate_limit: int = typer.Option(100, "--rate-limit", min=1, help="Admissions per window"),
    rate_window_ms: int = typer.Option(1000, "--rate-window-ms", min=1, help="Rate window length"),
    max_attempts: int = typer.Option(3, "--max-attempts", min=1, help="Execution attempts per order"),
    backoff_ms: int = typer.Option(100, "--backoff-ms", min=0, help="Base retry backoff"),
    delay_min_ms: int = typer.Option(50, "--delay-min-ms", min=0, help="Simulated execution delay (min)"),
    delay_max_ms: int = typer.Option(250, "--delay-max-ms", min=0, help="Simulated execution delay (max)"),
    failure_rate: float = typer.Option(0.2, "--failure-rate", min=0.0, max=1.0, help="Attempt failure probability"),
    seed: int | None = typer.Option(None, "--seed", help="Random seed for reproducible runs"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Engine log level"),
) -> None:
    """Run simulated orders through an in-process dispatch engine."""
    if delay_min_ms > delay_max_ms:
        raise typer.BadParameter("--delay-min-ms must not exceed --delay-max-ms")

    configure_logging(level=log_level, json_format=as_json)
    policy = DispatchPolicy(
        max_concurrent_orders=concurrency,
        order_rate_limit=rate_limit,
        order_rate_window_ms=rate_window_ms,
        retry_max_attempts=max_attempts,
        retry_backoff_ms=backoff_ms,
    )

    if not as_json:
        console.print(f"[bold green]Simulating {orders} orders[/bold green] (concurrency={concurrency})")

    report = asyncio.run(
        run_simulation(
            orders,
            policy=policy,
            delay_min_ms=delay_min_ms,
            delay_max_ms=delay_max_ms,
            failure_rate=failure_rate,
            seed=seed,
        )
    )

    if as_json:
        print_json({"orders": [s.to_dict() for s in report.orders], "metrics": report.metrics.to_dict()})
        return

    print_table(
        [
            {
                "order_id": s.order_id[:8],
                "pair": f"{s.input_asset}/{s.output_asset}",
                "amount": s.input_amount,
                "status": s.status.value,
                "retries": s.retry_count,
                "route": s.selected_route,
                "price": s.executed_price,
                "failure": s.failure_reason,
            }
            for s in report.orders
        ],
        title="Orders",
    )
    print_dict(report.metrics.to_dict(), title="\nMetrics")
