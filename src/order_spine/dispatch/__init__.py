"""Order Dispatch — bounded, rate-limited, retrying order execution.

WHY
───
Orders are accepted faster than they can safely be executed.  The
dispatch package queues them, admits them under a concurrency ceiling
and a token-bucket rate limit, retries failed attempts with exponential
backoff, and streams every status change to live observers.

ARCHITECTURE
────────────
::

    Order (PENDING) ──submit──► DispatchEngine
                                  ├── admission queue + slots + TokenBucketLimiter
                                  ├── ExecutionStrategy   ─ one attempt
                                  ├── ExponentialBackoff  ─ retry cap + delays
                                  ├── OrderStore          ─ durable mirror
                                  └── StatusHub           ─ live fan-out

MODULE MAP
──────────
  1. models.py      ─ Order, OrderStatus, OrderSnapshot, StatusUpdate
  2. validation.py  ─ business rules
  3. rate_limit.py  ─ TokenBucketLimiter
  4. retry.py       ─ ExponentialBackoff
  5. strategy.py    ─ ExecutionStrategy, SimulatedDexStrategy
  6. store.py       ─ OrderStore, InMemoryOrderStore, SqliteOrderStore
  7. hub.py         ─ StatusHub, Subscription, StatusTransport
  8. metrics.py     ─ DispatchMetrics
  9. engine.py      ─ DispatchEngine, DispatchPolicy
"""

from order_spine.dispatch.engine import DispatchEngine, DispatchPolicy, EngineState
from order_spine.dispatch.hub import StatusHub, StatusTransport, Subscription
from order_spine.dispatch.metrics import DispatchMetrics
from order_spine.dispatch.models import (
    ORDER_VALID_TRANSITIONS,
    TERMINAL_STATUSES,
    ExecutionFailure,
    ExecutionOutcome,
    ExecutionSuccess,
    Order,
    OrderKind,
    OrderSnapshot,
    OrderStatus,
    StatusUpdate,
    validate_order_transition,
)
from order_spine.dispatch.rate_limit import TokenBucketLimiter
from order_spine.dispatch.retry import ExponentialBackoff
from order_spine.dispatch.store import InMemoryOrderStore, OrderStore, SqliteOrderStore, create_store
from order_spine.dispatch.strategy import ExecutionStrategy, SimulatedDexStrategy
from order_spine.dispatch.validation import validate_order, validate_order_request

__all__ = [
    # engine
    "DispatchEngine",
    "DispatchPolicy",
    "EngineState",
    "DispatchMetrics",
    # models
    "ORDER_VALID_TRANSITIONS",
    "TERMINAL_STATUSES",
    "ExecutionFailure",
    "ExecutionOutcome",
    "ExecutionSuccess",
    "Order",
    "OrderKind",
    "OrderSnapshot",
    "OrderStatus",
    "StatusUpdate",
    "validate_order_transition",
    # resilience
    "TokenBucketLimiter",
    "ExponentialBackoff",
    # collaborators
    "ExecutionStrategy",
    "SimulatedDexStrategy",
    "OrderStore",
    "InMemoryOrderStore",
    "SqliteOrderStore",
    "create_store",
    "StatusHub",
    "StatusTransport",
    "Subscription",
    # validation
    "validate_order",
    "validate_order_request",
]
