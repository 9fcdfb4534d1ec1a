"""
API schemas — request bodies and response envelopes.

Request bodies accept both ``snake_case`` and the ``camelCase`` field
names older clients send (``tokenIn``, ``amountIn``).  Responses are
always ``snake_case``.

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from order_spine.dispatch.models import OrderKind, OrderSnapshot, OrderStatus

# ── Requests ─────────────────────────────────────────────────────────────


class CreateOrderBody(BaseModel):
    """Request body for ``POST /orders/execute``.

    Example:
        {"type": "market_buy", "token_in": "SOL", "token_out": "USDC", "amount_in": 1.5}
    """

    model_config = ConfigDict(populate_by_name=True)

    type: OrderKind = Field(description="Order type: 'market_buy' | 'market_sell'")
    token_in: str = Field(
        min_length=1,
        max_length=44,
        validation_alias=AliasChoices("token_in", "tokenIn"),
        description="Asset being sold",
    )
    token_out: str = Field(
        min_length=1,
        max_length=44,
        validation_alias=AliasChoices("token_out", "tokenOut"),
        description="Asset being bought",
    )
    amount_in: Decimal = Field(
        gt=0,
        validation_alias=AliasChoices("amount_in", "amountIn"),
        description="Quantity of token_in to sell",
    )
    slippage: Decimal = Field(default=Decimal("0.01"), ge=0, le=Decimal("0.5"), description="Max slippage (0-0.5)")


# ── Responses ────────────────────────────────────────────────────────────


class OrderAcceptedSchema(BaseModel):
    """Returned by ``POST /orders/execute`` (201)."""

    order_id: str
    status: OrderStatus
    message: str = "Order created successfully"
    websocket_url: str
    note: str = "Connect to the WebSocket endpoint for real-time status updates"


class OrderSchema(BaseModel):
    """Full order record."""

    order_id: str
    type: OrderKind
    token_in: str
    token_out: str
    amount_in: str
    slippage: str
    status: OrderStatus
    retry_count: int
    selected_route: str | None = None
    executed_price: str | None = None
    settlement_reference: str | None = None
    failure_reason: str | None = None
    created_at: str
    updated_at: str

    @classmethod
    def from_snapshot(cls, snapshot: OrderSnapshot) -> OrderSchema:
        data = snapshot.to_dict()
        return cls(
            order_id=data["order_id"],
            type=snapshot.kind,
            token_in=data["input_asset"],
            token_out=data["output_asset"],
            amount_in=data["input_amount"],
            slippage=data["max_slippage"],
            status=snapshot.status,
            retry_count=data["retry_count"],
            selected_route=data["selected_route"],
            executed_price=data["executed_price"],
            settlement_reference=data["settlement_reference"],
            failure_reason=data["failure_reason"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    count: int
    limit: int
    offset: int


class WebSocketStats(BaseModel):
    active_connections: int


class QueueMetricsResponse(BaseModel):
    queue: dict[str, Any]
    websocket: WebSocketStats


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx response."""

    error: str
    message: str = ""
    details: list[Any] = Field(default_factory=list)
    order_id: str | None = None
