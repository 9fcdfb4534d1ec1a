"""
Status notification hub — live per-order status fan-out.

Manifesto:
    Observers (WebSocket clients, tests, the CLI) want every transition of
    one order, in order, starting from whatever the order looks like right
    now.  The engine, on the other hand, must never wait for a slow or dead
    client.  The hub sits between the two.

Architecture:
    ::

        engine ──publish(update)──► StatusHub
                                      │  (sync enqueue, never blocks)
                                      ▼
                    ┌─────────── subscriptions[order_id] ───────────┐
                    │ Subscription ─ queue ─► sender task ─► transport│
                    │ Subscription ─ queue ─► sender task ─► transport│
                    └────────────────────────────────────────────────┘

    - ``subscribe`` registers and enqueues the current status in one step,
      so no transition can slip in between "read status" and "register".
    - Each subscription has its own FIFO queue and sender task: per-order
      ordering is preserved and one stalled transport delays nobody else.
    - A subscription whose ``send`` raised is dropped by its sender; one
      whose transport was closed is pruned on the next ``publish``.
    - After a terminal update the sender flushes one ``final`` message,
      drops the subscription, and closes the transport.

Tags:
    order-spine, notifications, pubsub, websocket, asyncio

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from order_spine.core.errors import OrderNotFoundError
from order_spine.core.logging import get_logger
from order_spine.dispatch.models import OrderSnapshot, StatusUpdate, utcnow

logger = get_logger(__name__)

__all__ = ["StatusTransport", "Subscription", "StatusHub", "SnapshotProvider"]

SnapshotProvider = Callable[[str], "OrderSnapshot | None"]


@runtime_checkable
class StatusTransport(Protocol):
    """Anything that can carry status messages to one observer."""

    @property
    def closed(self) -> bool:
        """True once the peer has gone away."""
        ...

    async def send(self, message: dict[str, Any]) -> None:
        """Deliver one JSON-serializable message."""
        ...

    async def close(self) -> None:
        """Close the underlying channel; must be safe to call twice."""
        ...


@dataclass(eq=False)
class Subscription:
    """Live interest of one transport in one order's status stream."""

    subscription_id: str
    order_id: str
    transport: StatusTransport
    subscribed_at: datetime = field(default_factory=utcnow)
    delivered: int = 0
    failed: bool = False
    _queue: asyncio.Queue[StatusUpdate] = field(default_factory=asyncio.Queue, repr=False)
    _sender: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        return not self.failed and not self.transport.closed

    def enqueue(self, update: StatusUpdate) -> None:
        self._queue.put_nowait(update)


class StatusHub:
    """Registry of live subscriptions keyed by order id.

    Example::

        hub = StatusHub(snapshot_provider=engine.snapshot)
        sub = hub.subscribe(order_id, transport)   # first message: current status
        ...
        hub.publish(StatusUpdate.from_snapshot(order.snapshot()))
    """

    def __init__(
        self,
        snapshot_provider: SnapshotProvider | None = None,
        *,
        close_transport_on_final: bool = True,
    ) -> None:
        self._snapshot_provider = snapshot_provider
        self._close_transport_on_final = close_transport_on_final
        self._by_order: dict[str, dict[str, Subscription]] = {}
        self._by_id: dict[str, Subscription] = {}

    def set_snapshot_provider(self, provider: SnapshotProvider) -> None:
        """Install the source of current order status (normally the engine)."""
        self._snapshot_provider = provider

    # ── Registration ─────────────────────────────────────────────────────

    def subscribe(
        self,
        order_id: str,
        transport: StatusTransport,
        *,
        current: OrderSnapshot | None = None,
    ) -> Subscription:
        """Register ``transport`` for ``order_id`` and queue its current status.

        Args:
            order_id: Order to follow.
            transport: Destination for messages.
            current: Fallback snapshot (e.g. read from the store) used when
                the snapshot provider does not know the order.

        Raises:
            OrderNotFoundError: If no current status can be found.
        """
        for existing in self._by_order.get(order_id, {}).values():
            if existing.transport is transport and existing.alive:
                return existing

        snapshot = self._snapshot_provider(order_id) if self._snapshot_provider else None
        snapshot = snapshot or current
        if snapshot is None:
            raise OrderNotFoundError(order_id)

        sub = Subscription(
            subscription_id=f"sub_{uuid.uuid4().hex[:12]}",
            order_id=order_id,
            transport=transport,
        )
        self._by_order.setdefault(order_id, {})[sub.subscription_id] = sub
        self._by_id[sub.subscription_id] = sub

        sub.enqueue(StatusUpdate.from_snapshot(snapshot, event="subscribed"))
        if snapshot.status.is_terminal:
            sub.enqueue(StatusUpdate.from_snapshot(snapshot, event="final"))
        sub._sender = asyncio.create_task(self._pump(sub), name=f"hub-sender-{sub.subscription_id}")

        logger.debug(
            "hub.subscribed",
            order_id=order_id,
            subscription_id=sub.subscription_id,
            status=snapshot.status.value,
        )
        return sub

    def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription; unknown ids are ignored."""
        sub = self._by_id.get(subscription_id)
        if sub is not None:
            self._remove(sub, reason="unsubscribed")

    def disconnect(self, transport: StatusTransport) -> int:
        """Remove every subscription carried by ``transport``.

        Returns:
            Number of subscriptions removed.
        """
        doomed = [sub for sub in self._by_id.values() if sub.transport is transport]
        for sub in doomed:
            self._remove(sub, reason="disconnected")
        return len(doomed)

    # ── Fan-out ──────────────────────────────────────────────────────────

    def publish(self, update: StatusUpdate) -> int:
        """Queue ``update`` for every live subscriber of its order.

        Never blocks and never raises because of a single subscriber.
        Terminal updates are followed by one ``final`` message.

        Returns:
            Number of subscriptions the update was queued on.
        """
        subs = self._by_order.get(update.order_id)
        if not subs:
            return 0

        queued = 0
        for sub in list(subs.values()):
            if not sub.alive:
                self._remove(sub, reason="transport_closed")
                continue
            sub.enqueue(update)
            if update.is_terminal:
                sub.enqueue(
                    StatusUpdate(
                        order_id=update.order_id,
                        status=update.status,
                        retry_count=update.retry_count,
                        updated_at=update.updated_at,
                        event="final",
                        selected_route=update.selected_route,
                        executed_price=update.executed_price,
                        settlement_reference=update.settlement_reference,
                    )
                )
            queued += 1
        return queued

    def connection_count(self) -> int:
        """Current number of live subscriptions."""
        return sum(1 for sub in self._by_id.values() if sub.alive)

    def subscriptions_for(self, order_id: str) -> list[Subscription]:
        return list(self._by_order.get(order_id, {}).values())

    async def close(self) -> None:
        """Drop every subscription and stop all sender tasks."""
        subs = list(self._by_id.values())
        for sub in subs:
            self._remove(sub, reason="hub_closed")
        senders = [sub._sender for sub in subs if sub._sender is not None]
        if senders:
            await asyncio.gather(*senders, return_exceptions=True)

    # ── Internals ────────────────────────────────────────────────────────

    def _remove(self, sub: Subscription, *, reason: str) -> None:
        if self._by_id.pop(sub.subscription_id, None) is None:
            return
        order_subs = self._by_order.get(sub.order_id)
        if order_subs is not None:
            order_subs.pop(sub.subscription_id, None)
            if not order_subs:
                del self._by_order[sub.order_id]

        sender = sub._sender
        if sender is not None and not sender.done() and sender is not asyncio.current_task():
            sender.cancel()

        logger.debug(
            "hub.pruned",
            order_id=sub.order_id,
            subscription_id=sub.subscription_id,
            reason=reason,
            delivered=sub.delivered,
        )

    async def _pump(self, sub: Subscription) -> None:
        """Drain one subscription's queue into its transport, in order."""
        while True:
            update = await sub._queue.get()
            try:
                await sub.transport.send(update.to_message())
            except Exception as exc:  # noqa: BLE001
                sub.failed = True
                logger.warning(
                    "hub.send_failed",
                    order_id=sub.order_id,
                    subscription_id=sub.subscription_id,
                    error=str(exc),
                )
                self._remove(sub, reason="send_failed")
                return
            sub.delivered += 1
            if update.event == "final":
                break

        self._remove(sub, reason="final_flushed")
        if self._close_transport_on_final:
            try:
                await sub.transport.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("hub.close_failed", order_id=sub.order_id, error=str(exc))
