"""Tests for order_spine.dispatch.engine — DispatchEngine.

Covers the admission ceiling, rate-limited admission, retry with
backoff and its attempt cap, validation failures, failure
normalisation (declared, raised, timed out), ordered emission to the
store and hub, sink-failure isolation, invariant violations, and the
submit/start/stop lifecycle.
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import (
    SUCCESS,
    RecordingStore,
    RecordingTransport,
    ScriptedStrategy,
    always_fail,
    make_order,
    wait_until,
)
from order_spine.core.errors import (
    DuplicateOrderError,
    EngineShutdownError,
    ExecutionError,
    InvalidTransitionError,
)
from order_spine.dispatch.engine import DispatchEngine, DispatchPolicy, EngineState
from order_spine.dispatch.hub import StatusHub
from order_spine.dispatch.models import ExecutionFailure, Order, OrderStatus

RETRY_PATH = [
    "validating",
    "executing",
    "retrying",
    "executing",
    "retrying",
    "executing",
    "failed",
]


def _policy(**overrides) -> DispatchPolicy:
    values = dict(
        max_concurrent_orders=5,
        order_rate_limit=1000,
        order_rate_window_ms=1000,
        retry_max_attempts=3,
        retry_backoff_ms=10,
        execution_timeout_ms=1000,
        shutdown_timeout_ms=500,
    )
    values.update(overrides)
    return DispatchPolicy(**values)


# =============================================================================
# Happy path
# =============================================================================


class TestCompletion:
    @pytest.mark.asyncio
    async def test_single_order_completes(self, store):
        strategy = ScriptedStrategy()
        engine = DispatchEngine(strategy, policy=_policy(), store=store)
        order = make_order()

        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        snapshot = engine.snapshot(order.order_id)
        assert snapshot.status is OrderStatus.COMPLETED
        assert snapshot.retry_count == 0
        assert snapshot.selected_route == "raydium"
        assert snapshot.settlement_reference == "5xTestSig"
        assert store.statuses_for(order.order_id) == ["validating", "executing", "completed"]

    @pytest.mark.asyncio
    async def test_twenty_orders_five_slots(self, store):
        """20 orders with 5 slots: never more than 5 in flight, all complete."""
        strategy = ScriptedStrategy(delay=0.02)
        engine = DispatchEngine(strategy, policy=_policy(max_concurrent_orders=5), store=store)
        orders = [make_order() for _ in range(20)]
        peak_in_flight = 0

        async def watch():
            nonlocal peak_in_flight
            while True:
                peak_in_flight = max(peak_in_flight, engine.metrics().in_flight)
                await asyncio.sleep(0.001)

        async with engine:
            watcher = asyncio.create_task(watch())
            for order in orders:
                engine.submit(order)
            await engine.wait_idle(timeout=5)
            watcher.cancel()

        assert strategy.max_active <= 5
        assert strategy.max_active == 5
        assert peak_in_flight <= 5
        metrics = engine.metrics()
        assert metrics.completed == 20
        assert metrics.failed == 0
        assert metrics.submitted == 20
        assert metrics.in_flight == 0
        assert metrics.queued == 0
        assert all(engine.snapshot(o.order_id).status is OrderStatus.COMPLETED for o in orders)

    @pytest.mark.asyncio
    async def test_admission_is_fifo(self):
        strategy = ScriptedStrategy()
        engine = DispatchEngine(strategy, policy=_policy(max_concurrent_orders=1))
        orders = [make_order() for _ in range(5)]

        async with engine:
            for order in orders:
                engine.submit(order)
            await engine.wait_idle(timeout=2)

        assert strategy.call_order == [o.order_id for o in orders]

    @pytest.mark.asyncio
    async def test_latency_is_recorded(self):
        engine = DispatchEngine(ScriptedStrategy(delay=0.01), policy=_policy())
        async with engine:
            engine.submit(make_order())
            await engine.wait_idle(timeout=2)
        assert engine.metrics().average_latency_ms >= 5


# =============================================================================
# Retry and backoff
# =============================================================================


class TestRetry:
    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_always_fail_three_attempts_with_backoff(self, store):
        """max 3 attempts, 100ms base: two RETRYING waits of >=100ms and >=200ms."""
        strategy = ScriptedStrategy(always_fail)
        hub = StatusHub()
        engine = DispatchEngine(
            strategy,
            policy=_policy(retry_max_attempts=3, retry_backoff_ms=100),
            store=store,
            hub=hub,
        )
        order = make_order()
        transport = RecordingTransport()

        async with engine:
            engine.submit(order)
            hub.subscribe(order.order_id, transport)
            await engine.wait_idle(timeout=3)
            await transport.wait_for_event("final")

        snapshot = engine.snapshot(order.order_id)
        assert snapshot.status is OrderStatus.FAILED
        assert snapshot.retry_count == 3
        assert snapshot.failure_reason == "no_liquidity"
        assert strategy.calls[order.order_id] == 3

        starts = strategy.starts[order.order_id]
        assert starts[1] - starts[0] >= 0.095
        assert starts[2] - starts[1] >= 0.195

        assert transport.statuses[1:-1] == RETRY_PATH
        assert transport.events.count("subscribed") == 1
        assert transport.events[-1] == "final"
        retrying = [m for m in transport.messages if m["status"] == "retrying"]
        assert [m["retry_count"] for m in retrying] == [1, 2]
        assert store.statuses_for(order.order_id) == RETRY_PATH
        assert engine.metrics().failed == 1

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self):
        def flaky(snapshot, attempt):
            return SUCCESS if attempt == 3 else ExecutionFailure(reason="slippage_exceeded")

        engine = DispatchEngine(ScriptedStrategy(flaky), policy=_policy(retry_max_attempts=3))
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        snapshot = engine.snapshot(order.order_id)
        assert snapshot.status is OrderStatus.COMPLETED
        assert snapshot.retry_count == 2
        assert snapshot.failure_reason is None

    @pytest.mark.asyncio
    async def test_single_attempt_policy_fails_immediately(self):
        strategy = ScriptedStrategy(always_fail)
        engine = DispatchEngine(strategy, policy=_policy(retry_max_attempts=1))
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        snapshot = engine.snapshot(order.order_id)
        assert snapshot.status is OrderStatus.FAILED
        assert snapshot.retry_count == 1
        assert strategy.calls[order.order_id] == 1

    @pytest.mark.asyncio
    async def test_retry_count_never_exceeds_cap(self, store):
        engine = DispatchEngine(ScriptedStrategy(always_fail), policy=_policy(retry_max_attempts=4), store=store)
        orders = [make_order() for _ in range(6)]
        async with engine:
            for order in orders:
                engine.submit(order)
            await engine.wait_idle(timeout=3)

        assert all(s.retry_count <= 4 for s in store.saves)
        assert all(engine.snapshot(o.order_id).retry_count == 4 for o in orders)

    @pytest.mark.asyncio
    async def test_backoff_releases_slot(self):
        """While one order backs off, another can use its slot."""
        order_a, order_b = make_order(), make_order()

        def script(snapshot, attempt):
            if snapshot.order_id == order_a.order_id and attempt == 1:
                return ExecutionFailure(reason="busy")
            return SUCCESS

        strategy = ScriptedStrategy(script)
        engine = DispatchEngine(strategy, policy=_policy(max_concurrent_orders=1, retry_backoff_ms=100))
        async with engine:
            engine.submit(order_a)
            engine.submit(order_b)
            await wait_until(lambda: engine.snapshot(order_b.order_id).status is OrderStatus.COMPLETED)
            assert engine.snapshot(order_a.order_id).status is OrderStatus.RETRYING
            assert engine.metrics().retrying == 1
            await engine.wait_idle(timeout=2)

        assert strategy.call_order == [order_a.order_id, order_b.order_id, order_a.order_id]


# =============================================================================
# Failure normalisation
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_validation_failure_is_not_retried(self, store):
        strategy = ScriptedStrategy()
        engine = DispatchEngine(
            strategy,
            policy=_policy(),
            store=store,
            validator=lambda snapshot: ["input asset is blocked"],
        )
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        snapshot = engine.snapshot(order.order_id)
        assert snapshot.status is OrderStatus.FAILED
        assert snapshot.retry_count == 0
        assert snapshot.failure_reason == "validation_failed"
        assert strategy.calls == {}
        assert store.statuses_for(order.order_id) == ["validating", "failed"]

    @pytest.mark.asyncio
    async def test_validator_exception_fails_order(self, store):
        def broken_validator(snapshot):
            raise RuntimeError("rules unavailable")

        strategy = ScriptedStrategy()
        engine = DispatchEngine(strategy, policy=_policy(), store=store, validator=broken_validator)
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        snapshot = engine.snapshot(order.order_id)
        assert snapshot.status is OrderStatus.FAILED
        assert snapshot.failure_reason == "validation_error:RuntimeError"
        assert strategy.calls == {}
        assert engine.metrics().failed == 1
        assert store.statuses_for(order.order_id) == ["validating", "failed"]

    @pytest.mark.asyncio
    async def test_builtin_validation_catches_same_assets(self):
        strategy = ScriptedStrategy()
        engine = DispatchEngine(strategy, policy=_policy())
        order = make_order(input_asset="SOL", output_asset="sol")
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)
        assert engine.snapshot(order.order_id).status is OrderStatus.FAILED
        assert strategy.calls == {}

    @pytest.mark.asyncio
    async def test_raised_exception_counts_as_failed_attempt(self):
        def boom(snapshot, attempt):
            raise ExecutionError("venue unavailable")

        strategy = ScriptedStrategy(boom)
        engine = DispatchEngine(strategy, policy=_policy(retry_max_attempts=2))
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        snapshot = engine.snapshot(order.order_id)
        assert snapshot.status is OrderStatus.FAILED
        assert snapshot.retry_count == 2
        assert snapshot.failure_reason == "error:ExecutionError"

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self):
        async def hang():
            await asyncio.sleep(10)

        strategy = ScriptedStrategy(lambda snapshot, attempt: hang())
        engine = DispatchEngine(strategy, policy=_policy(retry_max_attempts=2, execution_timeout_ms=30))
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        snapshot = engine.snapshot(order.order_id)
        assert snapshot.status is OrderStatus.FAILED
        assert snapshot.failure_reason == "timeout"
        assert strategy.calls[order.order_id] == 2

    @pytest.mark.asyncio
    async def test_garbage_outcome_counts_as_failure(self):
        engine = DispatchEngine(ScriptedStrategy(lambda s, a: "ok"), policy=_policy(retry_max_attempts=1))
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)
        assert engine.snapshot(order.order_id).failure_reason == "invalid_outcome"

    @pytest.mark.asyncio
    async def test_slow_order_does_not_block_others(self):
        slow, fast = make_order(), make_order()
        gate = asyncio.Event()

        def script(snapshot, attempt):
            if snapshot.order_id == slow.order_id:
                return _wait_then_succeed(gate)
            return SUCCESS

        engine = DispatchEngine(ScriptedStrategy(script), policy=_policy(max_concurrent_orders=2))
        async with engine:
            engine.submit(slow)
            engine.submit(fast)
            await wait_until(lambda: engine.snapshot(fast.order_id).status is OrderStatus.COMPLETED)
            assert engine.snapshot(slow.order_id).status is OrderStatus.EXECUTING
            gate.set()
            await engine.wait_idle(timeout=2)


async def _wait_then_succeed(gate: asyncio.Event):
    await gate.wait()
    return SUCCESS


# =============================================================================
# Admission rate
# =============================================================================


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_excess_orders_are_queued_not_dropped(self):
        """Rate 2 per 200ms (burst 2): five instant orders all complete, spread out."""
        strategy = ScriptedStrategy()
        engine = DispatchEngine(
            strategy,
            policy=_policy(max_concurrent_orders=10, order_rate_limit=2, order_rate_window_ms=200),
        )
        orders = [make_order() for _ in range(5)]
        loop = asyncio.get_running_loop()

        async with engine:
            t0 = loop.time()
            for order in orders:
                engine.submit(order)
            await asyncio.sleep(0.03)
            assert engine.metrics().queued >= 2
            await engine.wait_idle(timeout=3)

        assert engine.metrics().completed == 5
        starts = sorted(strategy.starts[o.order_id][0] - t0 for o in orders)
        # burst of two, then one token every 100ms
        assert sum(1 for s in starts if s < 0.05) <= 2
        assert starts[-1] >= 0.28

    @pytest.mark.asyncio
    async def test_readmission_also_needs_a_token(self):
        strategy = ScriptedStrategy(always_fail)
        engine = DispatchEngine(
            strategy,
            policy=_policy(
                order_rate_limit=1,
                order_rate_window_ms=150,
                retry_max_attempts=2,
                retry_backoff_ms=0,
            ),
        )
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        starts = strategy.starts[order.order_id]
        assert len(starts) == 2
        assert starts[1] - starts[0] >= 0.13


# =============================================================================
# Observers and sinks
# =============================================================================


class TestObservers:
    @pytest.mark.asyncio
    async def test_subscribe_before_admission(self):
        """A subscriber of a queued order sees PENDING first, then every transition."""
        gate = asyncio.Event()
        blocker, queued = make_order(), make_order()

        def script(snapshot, attempt):
            if snapshot.order_id == blocker.order_id:
                return _wait_then_succeed(gate)
            return SUCCESS

        hub = StatusHub()
        engine = DispatchEngine(ScriptedStrategy(script), policy=_policy(max_concurrent_orders=1), hub=hub)
        transport = RecordingTransport()

        async with engine:
            engine.submit(blocker)
            engine.submit(queued)
            await wait_until(lambda: engine.snapshot(blocker.order_id).status is OrderStatus.EXECUTING)

            hub.subscribe(queued.order_id, transport)
            await wait_until(lambda: transport.events == ["subscribed"])
            assert transport.statuses == ["pending"]

            gate.set()
            await transport.wait_for_event("final")
            await engine.wait_idle(timeout=2)

        assert transport.statuses == ["pending", "validating", "executing", "completed", "completed"]
        assert transport.events == ["subscribed", "status", "status", "status", "final"]

    @pytest.mark.asyncio
    async def test_store_failure_is_counted_not_fatal(self):
        class BrokenStore(RecordingStore):
            async def save(self, snapshot):
                raise OSError("disk full")

        engine = DispatchEngine(ScriptedStrategy(), policy=_policy(), store=BrokenStore())
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        assert engine.snapshot(order.order_id).status is OrderStatus.COMPLETED
        metrics = engine.metrics()
        assert metrics.sink_failures == 3
        assert metrics.completed == 1

    @pytest.mark.asyncio
    async def test_hub_failure_is_counted_not_fatal(self):
        class BrokenHub(StatusHub):
            def publish(self, update):
                raise RuntimeError("hub down")

        engine = DispatchEngine(ScriptedStrategy(), policy=_policy(), hub=BrokenHub())
        order = make_order()
        async with engine:
            engine.submit(order)
            await engine.wait_idle(timeout=2)

        assert engine.snapshot(order.order_id).status is OrderStatus.COMPLETED
        assert engine.metrics().sink_failures == 3

    @pytest.mark.asyncio
    async def test_engine_installs_itself_as_snapshot_provider(self):
        hub = StatusHub()
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy(), hub=hub)
        order = make_order()
        engine.submit(order)
        transport = RecordingTransport()
        hub.subscribe(order.order_id, transport)
        await wait_until(lambda: transport.statuses == ["pending"])
        await hub.close()


# =============================================================================
# Invariant violations
# =============================================================================


class TestInvariantViolation:
    @pytest.mark.asyncio
    async def test_illegal_transition_is_reported_and_slot_released(self, monkeypatch):
        def bad_mark_executing(self):
            self._transition_to(OrderStatus.COMPLETED)

        monkeypatch.setattr(Order, "mark_executing", bad_mark_executing)
        fatal = []
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy(max_concurrent_orders=1), on_fatal=fatal.append)
        orders = [make_order(), make_order()]

        async with engine:
            for order in orders:
                engine.submit(order)
            await engine.wait_idle(timeout=2)

        metrics = engine.metrics()
        assert metrics.invariant_violations == 2
        assert metrics.in_flight == 0
        assert len(fatal) == 2
        assert all(isinstance(e, InvalidTransitionError) for e in fatal)
        assert engine.snapshot(orders[0].order_id).status is OrderStatus.VALIDATING

    @pytest.mark.asyncio
    async def test_default_handler_collects(self, monkeypatch):
        monkeypatch.setattr(Order, "mark_validating", lambda self: self._transition_to(OrderStatus.RETRYING))
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        async with engine:
            engine.submit(make_order())
            await engine.wait_idle(timeout=2)
        assert len(engine.fatal_errors) == 1


# =============================================================================
# Submission and lifecycle
# =============================================================================


class TestSubmit:
    def test_duplicate_id_rejected(self):
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        order = make_order()
        engine.submit(order)
        with pytest.raises(DuplicateOrderError):
            engine.submit(order)
        assert engine.metrics().submitted == 1

    def test_non_pending_rejected(self):
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        order = make_order()
        order.mark_validating()
        with pytest.raises(InvalidTransitionError):
            engine.submit(order)
        assert engine.snapshot(order.order_id) is None

    def test_engine_keeps_private_copy(self):
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        order = make_order()
        engine.submit(order)
        order.mark_validating()
        order.retry_count = 99
        snapshot = engine.snapshot(order.order_id)
        assert snapshot.status is OrderStatus.PENDING
        assert snapshot.retry_count == 0

    def test_queued_before_start(self):
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        engine.submit(make_order())
        engine.submit(make_order())
        assert engine.metrics().queued == 2
        assert engine.state is EngineState.CREATED

    def test_metrics_has_no_side_effects(self):
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        engine.submit(make_order())
        assert engine.metrics() == engine.metrics()

    def test_unknown_snapshot_is_none(self):
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        assert engine.snapshot("missing") is None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_submit_after_stop_rejected(self):
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        await engine.start()
        await engine.stop()
        assert engine.state is EngineState.STOPPED
        with pytest.raises(EngineShutdownError):
            engine.submit(make_order())

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight(self):
        engine = DispatchEngine(ScriptedStrategy(delay=0.05), policy=_policy())
        order = make_order()
        await engine.start()
        engine.submit(order)
        await wait_until(lambda: engine.metrics().in_flight == 1)
        await engine.stop(timeout=1)
        assert engine.snapshot(order.order_id).status is OrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_cancels_after_timeout(self):
        async def hang():
            await asyncio.sleep(10)

        engine = DispatchEngine(ScriptedStrategy(lambda s, a: hang()), policy=_policy(execution_timeout_ms=60_000))
        order = make_order()
        await engine.start()
        engine.submit(order)
        await wait_until(lambda: engine.metrics().in_flight == 1)

        loop = asyncio.get_running_loop()
        start = loop.time()
        await engine.stop(timeout=0.05)
        assert loop.time() - start < 1
        assert engine.metrics().in_flight == 0
        assert engine.snapshot(order.order_id).status is OrderStatus.EXECUTING

    @pytest.mark.asyncio
    async def test_stop_leaves_backing_off_orders(self):
        engine = DispatchEngine(ScriptedStrategy(always_fail), policy=_policy(retry_backoff_ms=5000))
        order = make_order()
        await engine.start()
        engine.submit(order)
        await wait_until(lambda: engine.metrics().retrying == 1)
        await engine.stop(timeout=0.1)
        assert engine.snapshot(order.order_id).status is OrderStatus.RETRYING
        assert engine.metrics().retrying == 0

    @pytest.mark.asyncio
    async def test_failure_while_stopping_schedules_no_backoff(self):
        engine = DispatchEngine(ScriptedStrategy(always_fail, delay=0.05), policy=_policy(retry_backoff_ms=20))
        order = make_order()
        await engine.start()
        engine.submit(order)
        await wait_until(lambda: engine.metrics().in_flight == 1)
        await engine.stop(timeout=1)

        assert engine._backoff_tasks == {}
        assert engine.snapshot(order.order_id).status is OrderStatus.RETRYING
        await asyncio.sleep(0.05)
        metrics = engine.metrics()
        assert metrics.queued == 0
        assert metrics.retrying == 0

    @pytest.mark.asyncio
    async def test_restart_requeues_waiting_orders(self):
        strategy = ScriptedStrategy(delay=0.05)
        engine = DispatchEngine(strategy, policy=_policy(max_concurrent_orders=1))
        orders = [make_order() for _ in range(3)]
        for order in orders:
            engine.submit(order)
        await engine.start()
        await wait_until(lambda: engine.metrics().in_flight == 1)
        await engine.stop(timeout=1)
        assert [engine.snapshot(o.order_id).status for o in orders] == [
            OrderStatus.COMPLETED,
            OrderStatus.PENDING,
            OrderStatus.PENDING,
        ]

        async with engine:
            await engine.wait_idle(timeout=2)

        assert all(engine.snapshot(o.order_id).status is OrderStatus.COMPLETED for o in orders)
        assert strategy.call_order == [o.order_id for o in orders]
        assert engine.metrics().submitted == 3

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        await engine.start()
        await engine.stop()
        await engine.stop()
        assert engine.state is EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_start_drains_orders_submitted_earlier(self):
        engine = DispatchEngine(ScriptedStrategy(), policy=_policy())
        order = make_order()
        engine.submit(order)
        async with engine:
            await engine.wait_idle(timeout=2)
        assert engine.snapshot(order.order_id).status is OrderStatus.COMPLETED


class TestPolicy:
    def test_from_settings(self, test_settings):
        policy = DispatchPolicy.from_settings(test_settings)
        assert policy.max_concurrent_orders == 5
        assert policy.retry_backoff_ms == 10
        assert policy.backoff().base_delay == 0.01

    def test_rejects_zero_slots(self):
        with pytest.raises(ValueError):
            DispatchPolicy(max_concurrent_orders=0)

    def test_burst_defaults_to_limit(self):
        limiter = DispatchPolicy(order_rate_limit=7, order_rate_window_ms=1000).limiter()
        assert limiter.capacity == 7
