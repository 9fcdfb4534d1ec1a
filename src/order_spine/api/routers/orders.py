"""
Orders router — submit orders, follow them live, and query them.

Endpoints:
    POST   /orders/execute              Validate, persist and queue an order
    WS     /orders/execute?order_id=... Live status stream for one order
    GET    /orders/queue/metrics        Dispatcher and connection metrics
    GET    /orders/{order_id}           Full order record
    GET    /orders                      List orders (newest first)

Manifesto:
    The router owns the HTTP/WebSocket boundary only.  Admission,
    execution and retries belong to the dispatch engine; live fan-out
    belongs to the status hub.

Tags:
    order-spine, api, orders, submission, websocket, status

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from fastapi import APIRouter, Path, Query, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from order_spine.api.deps import Engine, Hub, Settings, Store, get_engine, get_hub, get_store
from order_spine.api.schemas import (
    CreateOrderBody,
    OrderAcceptedSchema,
    OrderListResponse,
    OrderSchema,
    QueueMetricsResponse,
    WebSocketStats,
)
from order_spine.core.errors import EngineShutdownError, OrderNotFoundError, OrderValidationError
from order_spine.core.logging import get_logger
from order_spine.dispatch.models import Order, OrderStatus
from order_spine.dispatch.validation import validate_order_request

logger = get_logger(__name__)

router = APIRouter(prefix="/orders")


# ── WebSocket transport ──────────────────────────────────────────────────


class WebSocketTransport:
    """Adapts a FastAPI ``WebSocket`` to the hub's ``StatusTransport``."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return (
            self._closed.is_set()
            or self._websocket.client_state != WebSocketState.CONNECTED
            or self._websocket.application_state != WebSocketState.CONNECTED
        )

    async def send(self, message: dict[str, Any]) -> None:
        await self._websocket.send_json(message)

    async def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._websocket.application_state == WebSocketState.CONNECTED:
            with contextlib.suppress(RuntimeError):
                await self._websocket.close()

    def mark_disconnected(self) -> None:
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()


async def _drain_client(websocket: WebSocket, transport: WebSocketTransport) -> None:
    """Read (and ignore) client frames until the peer disconnects."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        transport.mark_disconnected()


async def _reject(websocket: WebSocket, payload: dict[str, Any]) -> None:
    await websocket.send_json(payload)
    await websocket.close()


# ── Submission ───────────────────────────────────────────────────────────


@router.post("/execute", response_model=OrderAcceptedSchema, status_code=201)
async def execute_order(body: CreateOrderBody, engine: Engine, store: Store, settings: Settings):
    """Create an order and queue it for execution.

    The order is validated against the business rules, persisted as
    PENDING, and handed to the dispatch engine.  Connect to
    ``websocket_url`` for live status updates.

    Raises:
        400: Schema or business-rule violation.
        503: The engine is shutting down.

    Example:
        POST /api/orders/execute
        {"type": "market_buy", "token_in": "SOL", "token_out": "USDC", "amount_in": 1.5}

        Response (201):
        {"order_id": "…", "status": "pending", "websocket_url": "/api/orders/execute?order_id=…"}
    """
    problems = validate_order_request(
        body.type,
        body.token_in,
        body.token_out,
        body.amount_in,
        body.slippage,
    )
    if problems:
        raise OrderValidationError("Order validation failed", errors=problems)
    if not engine.accepting:
        raise EngineShutdownError("Service is shutting down; order not accepted")

    order = Order.create(
        kind=body.type,
        input_asset=body.token_in,
        output_asset=body.token_out,
        input_amount=body.amount_in,
        max_slippage=body.slippage,
    )
    await store.create(order.snapshot())
    try:
        engine.submit(order)
    except EngineShutdownError:
        # Shutdown began while the record was being written.
        await store.delete(order.order_id)
        raise

    logger.info("api.order_created", order_id=order.order_id, kind=order.kind.value)
    return OrderAcceptedSchema(
        order_id=order.order_id,
        status=OrderStatus.PENDING,
        websocket_url=f"{settings.api_prefix}/orders/execute?order_id={order.order_id}",
    )


# ── Live status ──────────────────────────────────────────────────────────


@router.websocket("/execute")
async def order_status_stream(websocket: WebSocket, order_id: str | None = Query(None)):
    """Stream status updates for one order.

    The first message is the current status (``event: subscribed``),
    then one ``status`` message per transition, then a ``final`` message
    after which the server closes the socket.
    """
    await websocket.accept()
    if not order_id:
        await _reject(
            websocket,
            {
                "error": "Missing order_id query parameter",
                "message": "Connect with: /api/orders/execute?order_id=<your-order-id>",
            },
        )
        return

    engine = get_engine(websocket)
    hub = get_hub(websocket)
    current = None if engine.snapshot(order_id) is not None else await get_store(websocket).get(order_id)

    transport = WebSocketTransport(websocket)
    try:
        hub.subscribe(order_id, transport, current=current)
    except OrderNotFoundError:
        await _reject(websocket, {"error": "Order not found", "order_id": order_id})
        return

    receiver = asyncio.create_task(_drain_client(websocket, transport))
    try:
        await transport.wait_closed()
    finally:
        receiver.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await receiver
        hub.disconnect(transport)
        logger.debug("api.websocket_closed", order_id=order_id)


# ── Queries ──────────────────────────────────────────────────────────────


@router.get("/queue/metrics", response_model=QueueMetricsResponse)
async def queue_metrics(engine: Engine, hub: Hub):
    """Dispatcher counters and the number of live status subscriptions."""
    return QueueMetricsResponse(
        queue=engine.metrics().to_dict(),
        websocket=WebSocketStats(active_connections=hub.connection_count()),
    )


@router.get("/{order_id}", response_model=OrderSchema)
async def get_order(engine: Engine, store: Store, order_id: str = Path(..., description="Order id")):
    """Get one order; engine memory first, then the store."""
    snapshot = engine.snapshot(order_id) or await store.get(order_id)
    if snapshot is None:
        raise OrderNotFoundError(order_id)
    return OrderSchema.from_snapshot(snapshot)


@router.get("", response_model=OrderListResponse)
async def list_orders(
    store: Store,
    status: OrderStatus | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=500, description="Maximum items to return (1-500)"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
):
    """List orders from the store, newest first."""
    snapshots = await store.list(status=status, limit=limit, offset=offset)
    return OrderListResponse(
        orders=[OrderSchema.from_snapshot(s) for s in snapshots],
        count=len(snapshots),
        limit=limit,
        offset=offset,
    )
