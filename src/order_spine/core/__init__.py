"""Core primitives shared by every order-spine component.

Modules
-------
errors      OrderSpineError hierarchy with categories and context
logging     structlog configuration and ``get_logger``
settings    OrderSpineSettings (pydantic-settings)
health      health response models and router factory
"""

from order_spine.core.errors import (
    DuplicateOrderError,
    EngineShutdownError,
    ErrorCategory,
    ErrorContext,
    ExecutionError,
    InvalidTransitionError,
    OrderNotFoundError,
    OrderSpineError,
    OrderValidationError,
    SinkError,
)
from order_spine.core.logging import LogContext, configure_logging, get_logger
from order_spine.core.settings import OrderSpineSettings

__all__ = [
    "DuplicateOrderError",
    "EngineShutdownError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionError",
    "InvalidTransitionError",
    "OrderNotFoundError",
    "OrderSpineError",
    "OrderValidationError",
    "SinkError",
    "LogContext",
    "configure_logging",
    "get_logger",
    "OrderSpineSettings",
]
