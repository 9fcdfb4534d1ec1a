"""Dispatch Engine — bounded, rate-limited, retrying order execution.

WHY
───
Orders arrive in bursts but must be executed with at most
``max_concurrent_orders`` in flight and at most ``order_rate_limit``
admissions per window, retried with exponential backoff, and every
status change must reach the store and live observers in order.  The
engine is the only component that mutates an order.

ARCHITECTURE
────────────
::

    submit(order) ──► admission queue (FIFO, engine-private)
                          │
                          ▼
               admission loop: head ─► wait slot ─► wait token ─► admit
                                                                  │
                        ┌─────────────────────────────────────────┘
                        ▼
        attempt task:  PENDING → VALIDATING → EXECUTING ─► strategy
                       RETRYING ───────────► EXECUTING ─► strategy
                        │                                  │
                        │     success ─► COMPLETED         │
                        │     failure ─► retry_count += 1  │
                        │        < max ─► RETRYING ─► backoff ─► tail of queue
                        │        = max ─► FAILED           │
                        └─ finally: release slot ◄─────────┘

    every transition ─► hub.publish(update)      (sync, in order)
                    └─► sink queue ─► sink writer ─► store.save(snapshot)

- Slot and token are both required for every admission, including
  re-admissions after a backoff.
- A strategy failure, a raised exception, and a timeout are the same
  failure class.
- Store and hub errors are logged and counted; they never change what
  the engine does with the order.
- An illegal transition is logged at critical level, counted, and handed
  to the fatal-error handler.

Related modules:
    models.py     — Order, OrderStatus, transition table
    rate_limit.py — TokenBucketLimiter
    retry.py      — ExponentialBackoff
    hub.py        — StatusHub
    store.py      — OrderStore

Example::

    engine = DispatchEngine(strategy, policy=DispatchPolicy(max_concurrent_orders=5),
                            store=store, hub=hub)
    await engine.start()
    engine.submit(order)
    await engine.wait_idle()
    await engine.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from order_spine.core.errors import (
    DuplicateOrderError,
    EngineShutdownError,
    InvalidTransitionError,
    OrderSpineError,
)
from order_spine.core.logging import get_logger
from order_spine.dispatch.metrics import DispatchMetrics, MetricsRecorder
from order_spine.dispatch.models import (
    ExecutionFailure,
    ExecutionOutcome,
    ExecutionSuccess,
    Order,
    OrderSnapshot,
    OrderStatus,
    StatusUpdate,
)
from order_spine.dispatch.rate_limit import TokenBucketLimiter
from order_spine.dispatch.retry import ExponentialBackoff
from order_spine.dispatch.validation import validate_order

if TYPE_CHECKING:
    from order_spine.core.settings import OrderSpineSettings
    from order_spine.dispatch.hub import StatusHub
    from order_spine.dispatch.store import OrderStore
    from order_spine.dispatch.strategy import ExecutionStrategy

logger = get_logger(__name__)

OrderValidator = Callable[[OrderSnapshot], list[str]]
FatalHandler = Callable[[OrderSpineError], None]


@dataclass(frozen=True)
class DispatchPolicy:
    """Tuning knobs of the dispatch engine (all times in milliseconds)."""

    max_concurrent_orders: int = 10
    order_rate_limit: int = 100
    order_rate_window_ms: int = 60_000
    order_rate_burst: int | None = None
    retry_max_attempts: int = 3
    retry_backoff_ms: int = 1000
    execution_timeout_ms: int = 30_000
    shutdown_timeout_ms: int = 10_000

    def __post_init__(self) -> None:
        if self.max_concurrent_orders < 1:
            raise ValueError(f"max_concurrent_orders must be >= 1, got {self.max_concurrent_orders}")
        if self.order_rate_limit < 1 or self.order_rate_window_ms < 1:
            raise ValueError("order_rate_limit and order_rate_window_ms must be >= 1")
        if self.retry_max_attempts < 1:
            raise ValueError(f"retry_max_attempts must be >= 1, got {self.retry_max_attempts}")

    @classmethod
    def from_settings(cls, settings: OrderSpineSettings) -> DispatchPolicy:
        return cls(
            max_concurrent_orders=settings.max_concurrent_orders,
            order_rate_limit=settings.order_rate_limit,
            order_rate_window_ms=settings.order_rate_window_ms,
            order_rate_burst=settings.order_rate_burst,
            retry_max_attempts=settings.retry_max_attempts,
            retry_backoff_ms=settings.retry_backoff_ms,
            execution_timeout_ms=settings.execution_timeout_ms,
            shutdown_timeout_ms=settings.shutdown_timeout_ms,
        )

    def backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff.from_millis(self.retry_max_attempts, self.retry_backoff_ms)

    def limiter(self, clock: Callable[[], float] = time.monotonic) -> TokenBucketLimiter:
        return TokenBucketLimiter.per_window(
            limit=self.order_rate_limit,
            window_seconds=self.order_rate_window_ms / 1000.0,
            burst=self.order_rate_burst,
            clock=clock,
        )


class EngineState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class DispatchEngine:
    """Owns every submitted order until it reaches a terminal status.

    Parameters
    ----------
    strategy : ExecutionStrategy
        Performs one execution attempt.
    policy : DispatchPolicy, optional
        Concurrency, rate, retry and timeout settings.
    store : OrderStore, optional
        Durable mirror; receives a snapshot after every transition.
    hub : StatusHub, optional
        Live fan-out; receives a ``StatusUpdate`` for every transition.
    validator : callable, optional
        Pre-execution check run while VALIDATING; returns problems.
    on_fatal : callable, optional
        Receives invariant violations. Defaults to collecting them in
        :attr:`fatal_errors`.
    """

    def __init__(
        self,
        strategy: ExecutionStrategy,
        *,
        policy: DispatchPolicy | None = None,
        store: OrderStore | None = None,
        hub: StatusHub | None = None,
        validator: OrderValidator = validate_order,
        on_fatal: FatalHandler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._strategy = strategy
        self.policy = policy or DispatchPolicy()
        self._store = store
        self._hub = hub
        self._validator = validator
        self.fatal_errors: list[OrderSpineError] = []
        self._on_fatal = on_fatal or self.fatal_errors.append
        self._clock = clock
        self._backoff = self.policy.backoff()

        self._metrics = MetricsRecorder()
        self._orders: dict[str, Order] = {}
        self._submitted_at: dict[str, float] = {}
        self._state = EngineState.CREATED

        self._admission_task: asyncio.Task[None] | None = None
        self._sink_task: asyncio.Task[None] | None = None
        self._attempt_tasks: set[asyncio.Task[None]] = set()
        self._backoff_tasks: dict[str, asyncio.Task[None]] = {}
        self._init_runtime()

        if hub is not None:
            hub.set_snapshot_provider(self.snapshot)

    def _init_runtime(self) -> None:
        """(Re)create the loop-bound primitives."""
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._sink_queue: asyncio.Queue[OrderSnapshot] = asyncio.Queue()
        self._slots = asyncio.Semaphore(self.policy.max_concurrent_orders)
        self._limiter = self.policy.limiter(self._clock)
        self._idle = asyncio.Event()
        self._idle.set()
        self._admitting: str | None = None
        self._in_flight = 0

    # ── Introspection ────────────────────────────────────────────────────

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is EngineState.RUNNING

    @property
    def accepting(self) -> bool:
        return self._state in (EngineState.CREATED, EngineState.RUNNING)

    def metrics(self) -> DispatchMetrics:
        """Point-in-time counters. Safe to call at any time."""
        return self._metrics.snapshot(
            queued=self._queue.qsize() + (1 if self._admitting is not None else 0),
            in_flight=self._in_flight,
            retrying=len(self._backoff_tasks),
        )

    def snapshot(self, order_id: str) -> OrderSnapshot | None:
        """Frozen view of an order the engine owns, or None."""
        order = self._orders.get(order_id)
        return None if order is None else order.snapshot()

    # ── Submission ───────────────────────────────────────────────────────

    def submit(self, order: Order) -> None:
        """Take ownership of a PENDING order and queue it for admission.

        Never blocks.  The engine keeps a private copy; later changes to
        ``order`` by the caller have no effect.

        Raises:
            EngineShutdownError: The engine is stopping or stopped.
            DuplicateOrderError: The id was submitted before.
            InvalidTransitionError: The order is not PENDING.
        """
        if not self.accepting:
            raise EngineShutdownError("dispatch engine is not accepting orders").with_context(
                order_id=order.order_id, component="engine"
            )
        if order.order_id in self._orders:
            raise DuplicateOrderError(f"Order already submitted: {order.order_id}").with_context(
                order_id=order.order_id, component="engine"
            )
        if order.status is not OrderStatus.PENDING:
            raise InvalidTransitionError(
                order.status.value, OrderStatus.VALIDATING.value, "OrderStatus"
            ).with_context(order_id=order.order_id, component="engine")

        owned = dataclasses.replace(order)
        self._orders[owned.order_id] = owned
        self._submitted_at[owned.order_id] = self._clock()
        self._metrics.submitted += 1
        self._idle.clear()
        self._queue.put_nowait(owned.order_id)

        logger.info(
            "dispatch.submitted",
            order_id=owned.order_id,
            kind=owned.kind.value,
            queued=self._queue.qsize(),
        )

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the admission loop and the sink writer."""
        if self._state is EngineState.RUNNING:
            return
        requeued = 0
        if self._state is EngineState.STOPPED:
            self._init_runtime()
            requeued = self._requeue_unfinished()
        self._state = EngineState.RUNNING
        self._sink_task = asyncio.create_task(self._sink_loop(), name="dispatch-sink")
        self._admission_task = asyncio.create_task(self._admission_loop(), name="dispatch-admission")
        logger.info(
            "dispatch.started",
            max_concurrent_orders=self.policy.max_concurrent_orders,
            order_rate_limit=self.policy.order_rate_limit,
            order_rate_window_ms=self.policy.order_rate_window_ms,
            retry_max_attempts=self.policy.retry_max_attempts,
            requeued=requeued,
        )

    def _requeue_unfinished(self) -> int:
        """Queue again every order a previous ``stop()`` left waiting.

        PENDING and RETRYING orders go back in submission order.  Orders
        whose attempt was cancelled mid-flight keep their status.
        """
        waiting = (OrderStatus.PENDING, OrderStatus.RETRYING)
        order_ids = [oid for oid, order in self._orders.items() if order.status in waiting]
        for order_id in order_ids:
            self._queue.put_nowait(order_id)
        if order_ids:
            self._idle.clear()
        return len(order_ids)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop accepting and admitting, then drain in-flight attempts.

        In-flight attempts get ``timeout`` seconds (default
        ``shutdown_timeout_ms``) to finish and are cancelled after that.
        Orders still queued or backing off stay in their last persisted
        status; a later ``start()`` queues them again.
        """
        if self._state in (EngineState.STOPPING, EngineState.STOPPED):
            return
        self._state = EngineState.STOPPING
        if timeout is None:
            timeout = self.policy.shutdown_timeout_ms / 1000.0

        if self._admission_task is not None:
            self._admission_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._admission_task
            self._admission_task = None

        abandoned = len(self._backoff_tasks) + self._queue.qsize() + (1 if self._admitting else 0)
        for task in list(self._backoff_tasks.values()):
            task.cancel()
        if self._backoff_tasks:
            await asyncio.gather(*self._backoff_tasks.values(), return_exceptions=True)

        cancelled = 0
        if self._attempt_tasks:
            _, pending = await asyncio.wait(set(self._attempt_tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            cancelled = len(pending)
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._sink_task is not None:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._sink_queue.join(), timeout=max(timeout, 0.1))
            self._sink_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sink_task
            self._sink_task = None

        self._state = EngineState.STOPPED
        logger.info(
            "dispatch.stopped",
            cancelled_in_flight=cancelled,
            left_queued=abandoned,
            **self.metrics().to_dict(),
        )

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until no order is queued, in flight, or backing off.

        Also waits for pending store writes to be flushed.
        """

        async def _wait() -> None:
            while not self._is_idle():
                self._idle.clear()
                await self._idle.wait()
            if self._sink_task is not None and not self._sink_task.done():
                await self._sink_queue.join()

        await asyncio.wait_for(_wait(), timeout=timeout)

    async def __aenter__(self) -> DispatchEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ── Admission ────────────────────────────────────────────────────────

    async def _admission_loop(self) -> None:
        while True:
            order_id = await self._queue.get()
            self._admitting = order_id

            await self._slots.acquire()
            try:
                waited = await self._limiter.acquire()
            except BaseException:
                self._slots.release()
                raise

            self._admitting = None
            self._in_flight += 1
            order = self._orders[order_id]
            logger.debug(
                "dispatch.admitted",
                order_id=order_id,
                status=order.status.value,
                in_flight=self._in_flight,
                rate_wait_ms=round(waited * 1000, 1),
            )
            task = asyncio.create_task(self._run_attempt(order), name=f"dispatch-attempt-{order_id}")
            self._attempt_tasks.add(task)
            task.add_done_callback(self._attempt_done)

    def _attempt_done(self, task: asyncio.Task[None]) -> None:
        self._attempt_tasks.discard(task)
        if not task.cancelled():
            # Already reported through the fatal handler.
            task.exception()

    # ── Execution attempt ────────────────────────────────────────────────

    async def _run_attempt(self, order: Order) -> None:
        try:
            if order.status is OrderStatus.PENDING:
                self._apply(order, order.mark_validating)
                try:
                    problems = self._validator(order.snapshot())
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "dispatch.validation_error",
                        order_id=order.order_id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    self._apply(order, order.mark_failed, f"validation_error:{type(exc).__name__}")
                    self._finish(order)
                    return
                if problems:
                    logger.warning("dispatch.validation_failed", order_id=order.order_id, problems=problems)
                    self._apply(order, order.mark_failed, "validation_failed")
                    self._finish(order)
                    return
            self._apply(order, order.mark_executing)

            outcome = await self._execute(order.snapshot())

            if isinstance(outcome, ExecutionSuccess):
                self._apply(order, order.mark_completed, outcome)
                self._finish(order)
                return

            order.retry_count += 1
            if self._backoff.should_retry(order.retry_count):
                delay = self._backoff.next_delay(order.retry_count)
                self._apply(order, order.mark_retrying)
                if self._state is not EngineState.RUNNING:
                    # Stopping: the order waits in RETRYING until a restart requeues it.
                    logger.info(
                        "dispatch.retry_deferred",
                        order_id=order.order_id,
                        retry_count=order.retry_count,
                        reason=outcome.reason,
                    )
                    return
                logger.info(
                    "dispatch.retry_scheduled",
                    order_id=order.order_id,
                    retry_count=order.retry_count,
                    reason=outcome.reason,
                    delay_ms=round(delay * 1000, 1),
                )
                self._backoff_tasks[order.order_id] = asyncio.create_task(
                    self._backoff_then_requeue(order.order_id, delay),
                    name=f"dispatch-backoff-{order.order_id}",
                )
            else:
                self._apply(order, order.mark_failed, outcome.reason)
                self._finish(order)
        except InvalidTransitionError as exc:
            self._report_violation(order, exc)
            raise
        finally:
            self._in_flight -= 1
            self._slots.release()
            self._update_idle()

    async def _execute(self, snapshot: OrderSnapshot) -> ExecutionOutcome:
        """One strategy call, bounded by ``execution_timeout_ms``."""
        timeout = self.policy.execution_timeout_ms / 1000.0
        try:
            outcome = await asyncio.wait_for(self._strategy.execute(snapshot), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "dispatch.attempt_timeout",
                order_id=snapshot.order_id,
                timeout_ms=self.policy.execution_timeout_ms,
            )
            return ExecutionFailure(reason="timeout")
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "dispatch.attempt_error",
                order_id=snapshot.order_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ExecutionFailure(reason=f"error:{type(exc).__name__}")

        if not isinstance(outcome, (ExecutionSuccess, ExecutionFailure)):
            logger.warning("dispatch.attempt_bad_outcome", order_id=snapshot.order_id, outcome=repr(outcome))
            return ExecutionFailure(reason="invalid_outcome")
        return outcome

    async def _backoff_then_requeue(self, order_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            self._queue.put_nowait(order_id)
        finally:
            self._backoff_tasks.pop(order_id, None)
            self._update_idle()

    # ── Transitions and sinks ────────────────────────────────────────────

    def _apply(self, order: Order, mark: Callable[..., None], *args) -> None:
        """Apply one transition and emit it to the store and hub."""
        previous = order.status
        mark(*args)
        snapshot = order.snapshot()
        logger.debug(
            "dispatch.transition",
            order_id=order.order_id,
            from_status=previous.value,
            to_status=snapshot.status.value,
            retry_count=snapshot.retry_count,
        )

        if self._store is not None:
            self._sink_queue.put_nowait(snapshot)

        if self._hub is not None:
            try:
                self._hub.publish(StatusUpdate.from_snapshot(snapshot))
            except Exception as exc:  # noqa: BLE001
                self._metrics.sink_failures += 1
                logger.error("dispatch.publish_failed", order_id=order.order_id, error=str(exc))

    def _finish(self, order: Order) -> None:
        started = self._submitted_at.pop(order.order_id, None)
        latency_ms = 0.0 if started is None else (self._clock() - started) * 1000.0
        completed = order.status is OrderStatus.COMPLETED
        self._metrics.record_finished(completed, latency_ms)
        logger.info(
            "dispatch.finished",
            order_id=order.order_id,
            status=order.status.value,
            retry_count=order.retry_count,
            route=order.selected_route,
            failure_reason=order.failure_reason,
            latency_ms=round(latency_ms, 1),
        )

    async def _sink_loop(self) -> None:
        """Single writer: store saves happen in transition order."""
        while True:
            snapshot = await self._sink_queue.get()
            try:
                await self._store.save(snapshot)
            except Exception as exc:  # noqa: BLE001
                self._metrics.sink_failures += 1
                logger.error(
                    "dispatch.store_failed",
                    order_id=snapshot.order_id,
                    status=snapshot.status.value,
                    error=str(exc),
                )
            finally:
                self._sink_queue.task_done()

    def _report_violation(self, order: Order, exc: InvalidTransitionError) -> None:
        self._metrics.invariant_violations += 1
        logger.critical(
            "dispatch.invariant_violation",
            order_id=order.order_id,
            current=exc.current,
            target=exc.target,
            retry_count=order.retry_count,
            error=exc.message,
        )
        self._on_fatal(exc)

    # ── Idle tracking ────────────────────────────────────────────────────

    def _is_idle(self) -> bool:
        return (
            self._queue.qsize() == 0
            and self._admitting is None
            and self._in_flight == 0
            and not self._backoff_tasks
        )

    def _update_idle(self) -> None:
        if self._is_idle():
            self._idle.set()
