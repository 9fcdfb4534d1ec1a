"""
Structured error types for order-spine.

Every error raised by the dispatcher, the stores, and the API layer extends
:class:`OrderSpineError` so that it carries the same metadata: a category
for routing, an explicit retry flag, structured context, and the chained
cause.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      OrderSpineError                          │
        │        (category, retryable, context, cause, to_dict)        │
        ├──────────────────────────────────────────────────────────────┤
        │  OrderValidationError    ExecutionError      SinkError        │
        │  (VALIDATION)            (EXECUTION,         (STORAGE |       │
        │   rejected submission)    retryable)          NOTIFICATION)   │
        │                                                               │
        │  InvalidTransitionError  EngineShutdownError                  │
        │  (INTERNAL, fatal)       DuplicateOrderError                  │
        │                          OrderNotFoundError                   │
        └──────────────────────────────────────────────────────────────┘

    Error taxonomy of the dispatcher:

    (a) rejected submission  -> OrderValidationError, surfaced synchronously
    (b) execution failure    -> ExecutionError, retried per policy
    (c) sink failure         -> SinkError, logged and counted
    (d) invariant violation  -> InvalidTransitionError, fatal-class

Examples:
    >>> err = ExecutionError("venue timeout").with_context(order_id="abc")
    >>> err.retryable
    True
    >>> err.to_dict()["context"]
    {'order_id': 'abc'}

Tags:
    error-handling, exception-hierarchy, retry-logic, order-spine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"        # Rejected submissions
    EXECUTION = "EXECUTION"          # Strategy / venue failures
    STORAGE = "STORAGE"              # Order record store writes
    NOTIFICATION = "NOTIFICATION"    # Status hub delivery
    LIFECYCLE = "LIFECYCLE"          # Engine start/stop, ownership
    CONFIG = "CONFIG"                # Invalid settings
    INTERNAL = "INTERNAL"            # Bugs, invariant violations


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging.

    Attributes:
        order_id: Order the error relates to
        status: Order status at the time of the error
        attempt: Execution attempt number, if any
        component: Component that raised (engine, hub, store, strategy)
        metadata: Additional key-value pairs
    """

    order_id: str | None = None
    status: str | None = None
    attempt: int | None = None
    component: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["order_id", "status", "attempt", "component"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class OrderSpineError(Exception):
    """Base exception for all order-spine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    call sites rarely need to pass them explicitly.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> OrderSpineError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# SUBMISSION ERRORS
# =============================================================================


class OrderValidationError(OrderSpineError):
    """A submission was malformed or violates a business rule.

    Never enters the dispatcher.  ``errors`` holds one human-readable
    message per violated rule.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, message: str, errors: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.errors = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["errors"] = self.errors
        return result


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class ExecutionError(OrderSpineError):
    """An execution attempt failed.

    Strategies may raise this (or anything else); the engine treats a
    raised exception exactly like a declared ``ExecutionFailure``.
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = True


# =============================================================================
# SINK ERRORS
# =============================================================================


class SinkError(OrderSpineError):
    """Writing to the order store or the status hub failed."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


# =============================================================================
# LIFECYCLE / OWNERSHIP ERRORS
# =============================================================================


class EngineShutdownError(OrderSpineError):
    """The dispatch engine no longer accepts submissions."""

    default_category = ErrorCategory.LIFECYCLE


class DuplicateOrderError(OrderSpineError):
    """An order id was submitted to the engine twice."""

    default_category = ErrorCategory.LIFECYCLE


class OrderNotFoundError(OrderSpineError):
    """No order with the requested id is known."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, order_id: str, **kwargs: Any):
        super().__init__(f"Order not found: {order_id}", **kwargs)
        self.order_id = order_id
        self.context.order_id = order_id


# =============================================================================
# INVARIANT VIOLATIONS
# =============================================================================


class InvalidTransitionError(OrderSpineError):
    """Raised when an illegal order status transition is attempted.

    Transition validation is strict.  A legitimate transition
    that is blocked belongs in ``ORDER_VALID_TRANSITIONS``; the guard itself
    is never removed.
    """

    default_category = ErrorCategory.INTERNAL
    default_retryable = False

    def __init__(self, current: str, target: str, enum_name: str = "OrderStatus", **kwargs: Any) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}", **kwargs)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "OrderSpineError",
    "OrderValidationError",
    "ExecutionError",
    "SinkError",
    "EngineShutdownError",
    "DuplicateOrderError",
    "OrderNotFoundError",
    "InvalidTransitionError",
]
