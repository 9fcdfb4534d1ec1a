"""Dispatch domain models.

Defines the core data structures for the order dispatcher:

- OrderStatus: the order state machine and its transition table
- Order: the mutable record owned by the dispatch engine
- OrderSnapshot: the frozen, read-only view handed to everyone else
- StatusUpdate: one message on the live status stream
- ExecutionSuccess / ExecutionFailure: what an execution strategy returns

Valid transition graph::

    PENDING     → VALIDATING
    VALIDATING  → EXECUTING | FAILED
    EXECUTING   → COMPLETED | RETRYING | FAILED
    RETRYING    → EXECUTING
    COMPLETED   → (terminal)
    FAILED      → (terminal)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from order_spine.core.errors import InvalidTransitionError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class OrderKind(str, Enum):
    """Enumerated order types."""

    MARKET_BUY = "market_buy"
    MARKET_SELL = "market_sell"


class OrderStatus(str, Enum):
    """Status of an order.

    Transitions are enforced via ``ORDER_VALID_TRANSITIONS``; only the
    dispatch engine applies them, through the ``Order.mark_*`` methods.
    """

    PENDING = "pending"
    VALIDATING = "validating"
    EXECUTING = "executing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ORDER_VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.VALIDATING,
    }),
    OrderStatus.VALIDATING: frozenset({
        OrderStatus.EXECUTING,
        OrderStatus.FAILED,  # non-retryable validation failure
    }),
    OrderStatus.EXECUTING: frozenset({
        OrderStatus.COMPLETED,
        OrderStatus.RETRYING,
        OrderStatus.FAILED,  # attempts exhausted
    }),
    OrderStatus.RETRYING: frozenset({
        OrderStatus.EXECUTING,
    }),
    OrderStatus.COMPLETED: frozenset(),  # terminal
    OrderStatus.FAILED: frozenset(),  # terminal
}

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.FAILED,
})


def validate_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_order_transition(OrderStatus.EXECUTING, OrderStatus.COMPLETED)
        >>> validate_order_transition(OrderStatus.COMPLETED, OrderStatus.EXECUTING)
        Traceback (most recent call last):
        ...
        InvalidTransitionError: Invalid OrderStatus transition: completed → executing
    """
    allowed = ORDER_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value, "OrderStatus")


# ── Execution outcomes ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionSuccess:
    """A filled execution attempt."""

    route: str
    price: Decimal
    reference: str


@dataclass(frozen=True)
class ExecutionFailure:
    """A failed execution attempt (declared, raised, or timed out)."""

    reason: str


ExecutionOutcome = ExecutionSuccess | ExecutionFailure


# ── Snapshots ────────────────────────────────────────────────────────────


def _decimal_str(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only point-in-time view of an order.

    Strategies, stores, the hub, and API handlers only ever see snapshots;
    the mutable :class:`Order` never leaves the dispatch engine.
    """

    order_id: str
    kind: OrderKind
    input_asset: str
    output_asset: str
    input_amount: Decimal
    max_slippage: Decimal
    status: OrderStatus
    retry_count: int
    created_at: datetime
    updated_at: datetime
    selected_route: str | None = None
    executed_price: Decimal | None = None
    settlement_reference: str | None = None
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/storage."""
        return {
            "order_id": self.order_id,
            "kind": self.kind.value,
            "input_asset": self.input_asset,
            "output_asset": self.output_asset,
            "input_amount": str(self.input_amount),
            "max_slippage": str(self.max_slippage),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "selected_route": self.selected_route,
            "executed_price": _decimal_str(self.executed_price),
            "settlement_reference": self.settlement_reference,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrderSnapshot:
        """Rebuild a snapshot from :meth:`to_dict` output."""
        price = data.get("executed_price")
        return cls(
            order_id=data["order_id"],
            kind=OrderKind(data["kind"]),
            input_asset=data["input_asset"],
            output_asset=data["output_asset"],
            input_amount=Decimal(str(data["input_amount"])),
            max_slippage=Decimal(str(data["max_slippage"])),
            status=OrderStatus(data["status"]),
            retry_count=int(data.get("retry_count", 0)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            selected_route=data.get("selected_route"),
            executed_price=None if price is None else Decimal(str(price)),
            settlement_reference=data.get("settlement_reference"),
            failure_reason=data.get("failure_reason"),
        )


@dataclass(frozen=True)
class StatusUpdate:
    """One message on an order's live status stream.

    ``event`` is ``"subscribed"`` for the first message a subscriber
    receives, ``"status"`` for each transition, and ``"final"`` for the
    closing message after a terminal state.
    """

    order_id: str
    status: OrderStatus
    retry_count: int
    updated_at: datetime
    event: str = "status"
    selected_route: str | None = None
    executed_price: Decimal | None = None
    settlement_reference: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: OrderSnapshot, event: str = "status") -> StatusUpdate:
        return cls(
            order_id=snapshot.order_id,
            status=snapshot.status,
            retry_count=snapshot.retry_count,
            updated_at=snapshot.updated_at,
            event=event,
            selected_route=snapshot.selected_route,
            executed_price=snapshot.executed_price,
            settlement_reference=snapshot.settlement_reference,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_message(self) -> dict[str, Any]:
        """Wire form; fill fields are included only when present."""
        message: dict[str, Any] = {
            "event": self.event,
            "order_id": self.order_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "updated_at": self.updated_at.isoformat(),
        }
        if self.selected_route is not None:
            message["selected_route"] = self.selected_route
        if self.executed_price is not None:
            message["executed_price"] = str(self.executed_price)
        if self.settlement_reference is not None:
            message["settlement_reference"] = self.settlement_reference
        return message


# ── Order ────────────────────────────────────────────────────────────────


@dataclass
class Order:
    """The unit of work.

    Created by the submission layer in PENDING; owned by the dispatch
    engine from ``submit()`` until a terminal status.  Status changes go
    through the ``mark_*`` methods, which validate against
    ``ORDER_VALID_TRANSITIONS`` and refresh ``updated_at``.

    Example:
        >>> order = Order.create(
        ...     kind=OrderKind.MARKET_BUY,
        ...     input_asset="SOL",
        ...     output_asset="USDC",
        ...     input_amount=Decimal("1.5"),
        ... )
        >>> order.status
        <OrderStatus.PENDING: 'pending'>
    """

    order_id: str
    """Unique identifier (UUID), immutable"""

    kind: OrderKind
    input_asset: str
    output_asset: str
    input_amount: Decimal
    max_slippage: Decimal = Decimal("0.01")

    status: OrderStatus = OrderStatus.PENDING
    """Current state machine state"""

    retry_count: int = 0
    """Failed execution attempts so far"""

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # === FILL (set iff COMPLETED) ===
    selected_route: str | None = None
    executed_price: Decimal | None = None
    settlement_reference: str | None = None

    # === DIAGNOSTICS ===
    failure_reason: str | None = None
    """Internal failure tag, set on FAILED"""

    @classmethod
    def create(
        cls,
        *,
        kind: OrderKind,
        input_asset: str,
        output_asset: str,
        input_amount: Decimal,
        max_slippage: Decimal = Decimal("0.01"),
    ) -> Order:
        """Build a new PENDING order with a fresh id."""
        now = utcnow()
        return cls(
            order_id=str(uuid.uuid4()),
            kind=kind,
            input_asset=input_asset,
            output_asset=output_asset,
            input_amount=Decimal(str(input_amount)),
            max_slippage=Decimal(str(max_slippage)),
            created_at=now,
            updated_at=now,
        )

    def _transition_to(self, target: OrderStatus) -> None:
        """Validate and apply a status transition.

        Raises:
            InvalidTransitionError: If *self.status → target* is illegal.
        """
        try:
            validate_order_transition(self.status, target)
        except InvalidTransitionError as exc:
            raise exc.with_context(order_id=self.order_id, status=self.status.value)
        self.status = target
        self.updated_at = utcnow()

    def mark_validating(self) -> None:
        self._transition_to(OrderStatus.VALIDATING)

    def mark_executing(self) -> None:
        self._transition_to(OrderStatus.EXECUTING)

    def mark_retrying(self) -> None:
        """Record a failed attempt and move to RETRYING."""
        self._transition_to(OrderStatus.RETRYING)

    def mark_completed(self, outcome: ExecutionSuccess) -> None:
        """Move to COMPLETED and record the fill."""
        self._transition_to(OrderStatus.COMPLETED)
        self.selected_route = outcome.route
        self.executed_price = outcome.price
        self.settlement_reference = outcome.reference

    def mark_failed(self, reason: str) -> None:
        """Move to FAILED; fill fields stay empty."""
        self._transition_to(OrderStatus.FAILED)
        self.failure_reason = reason

    def snapshot(self) -> OrderSnapshot:
        """Return a frozen copy of the current state."""
        return OrderSnapshot(
            order_id=self.order_id,
            kind=self.kind,
            input_asset=self.input_asset,
            output_asset=self.output_asset,
            input_amount=self.input_amount,
            max_slippage=self.max_slippage,
            status=self.status,
            retry_count=self.retry_count,
            created_at=self.created_at,
            updated_at=self.updated_at,
            selected_route=self.selected_route,
            executed_price=self.executed_price,
            settlement_reference=self.settlement_reference,
            failure_reason=self.failure_reason,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/storage."""
        return self.snapshot().to_dict()
