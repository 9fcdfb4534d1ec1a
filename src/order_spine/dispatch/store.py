"""Order record store — the durable mirror of order state.

WHY
───
The dispatch engine decides everything from its own memory; the store
exists so that order status survives the process and can be queried by
id at any time.  The engine writes a snapshot after every transition and
never reads back for admission decisions.

ARCHITECTURE
────────────
::

    OrderStore (Protocol)
      ├── InMemoryOrderStore   ─ dict, tests and development
      └── SqliteOrderStore     ─ stdlib sqlite3, one ``orders`` table

    create(snapshot)  save(snapshot)  get(order_id)
    list(status, limit, offset)  ping()  close()

Related modules:
    engine.py  — single writer of order snapshots
    models.py  — OrderSnapshot.to_dict / from_dict
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Protocol, runtime_checkable

from order_spine.core.errors import SinkError
from order_spine.dispatch.models import OrderSnapshot, OrderStatus

__all__ = ["OrderStore", "InMemoryOrderStore", "SqliteOrderStore", "create_store"]


@runtime_checkable
class OrderStore(Protocol):
    """Keyed storage for order snapshots."""

    async def create(self, snapshot: OrderSnapshot) -> None:
        """Insert a new order; raises ``SinkError`` if the id exists."""
        ...

    async def save(self, snapshot: OrderSnapshot) -> None:
        """Insert or replace the record for ``snapshot.order_id``."""
        ...

    async def get(self, order_id: str) -> OrderSnapshot | None:
        ...

    async def delete(self, order_id: str) -> bool:
        """Remove a record; returns False if there was none."""
        ...

    async def list(
        self,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[OrderSnapshot]:
        """Newest first."""
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class InMemoryOrderStore:
    """Dict-backed store; not durable, but honours the same contract."""

    def __init__(self) -> None:
        self._orders: dict[str, OrderSnapshot] = {}

    async def create(self, snapshot: OrderSnapshot) -> None:
        if snapshot.order_id in self._orders:
            raise SinkError(f"Order already exists: {snapshot.order_id}").with_context(
                order_id=snapshot.order_id, component="store"
            )
        self._orders[snapshot.order_id] = snapshot

    async def save(self, snapshot: OrderSnapshot) -> None:
        self._orders[snapshot.order_id] = snapshot

    async def get(self, order_id: str) -> OrderSnapshot | None:
        return self._orders.get(order_id)

    async def delete(self, order_id: str) -> bool:
        return self._orders.pop(order_id, None) is not None

    async def list(
        self,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[OrderSnapshot]:
        rows = [s for s in self._orders.values() if status is None or s.status == status]
        rows.sort(key=lambda s: s.created_at, reverse=True)
        return rows[offset : offset + limit]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._orders)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    order_id             TEXT PRIMARY KEY,
    kind                 TEXT NOT NULL,
    input_asset          TEXT NOT NULL,
    output_asset         TEXT NOT NULL,
    input_amount         TEXT NOT NULL,
    max_slippage         TEXT NOT NULL,
    status               TEXT NOT NULL,
    retry_count          INTEGER NOT NULL DEFAULT 0,
    selected_route       TEXT,
    executed_price       TEXT,
    settlement_reference TEXT,
    failure_reason       TEXT,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status);
CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders (created_at);
"""

_COLUMNS = (
    "order_id",
    "kind",
    "input_asset",
    "output_asset",
    "input_amount",
    "max_slippage",
    "status",
    "retry_count",
    "selected_route",
    "executed_price",
    "settlement_reference",
    "failure_reason",
    "created_at",
    "updated_at",
)


class SqliteOrderStore:
    """SQLite-backed store.

    Calls run in a worker thread via ``asyncio.to_thread`` so a slow disk
    never stalls the event loop; an ``asyncio.Lock`` serializes them over
    the single connection.

    Args:
        path: Database file, or ``":memory:"``.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._lock = asyncio.Lock()

    async def _run(self, fn, *args):
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as exc:
                raise SinkError(f"sqlite store error: {exc}", cause=exc).with_context(component="store") from exc

    @staticmethod
    def _row_values(snapshot: OrderSnapshot) -> tuple:
        data = snapshot.to_dict()
        return tuple(data[col] for col in _COLUMNS)

    def _insert(self, snapshot: OrderSnapshot, replace: bool) -> None:
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        placeholders = ", ".join("?" for _ in _COLUMNS)
        self._conn.execute(
            f"{verb} INTO orders ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            self._row_values(snapshot),
        )
        self._conn.commit()

    def _select_one(self, order_id: str) -> OrderSnapshot | None:
        row = self._conn.execute("SELECT * FROM orders WHERE order_id = ?", (order_id,)).fetchone()
        return None if row is None else OrderSnapshot.from_dict(dict(row))

    def _select_many(self, status: OrderStatus | None, limit: int, offset: int) -> list[OrderSnapshot]:
        if status is None:
            rows = self._conn.execute(
                "SELECT * FROM orders ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM orders WHERE status = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (status.value, limit, offset),
            ).fetchall()
        return [OrderSnapshot.from_dict(dict(row)) for row in rows]

    async def create(self, snapshot: OrderSnapshot) -> None:
        await self._run(self._insert, snapshot, False)

    async def save(self, snapshot: OrderSnapshot) -> None:
        await self._run(self._insert, snapshot, True)

    async def get(self, order_id: str) -> OrderSnapshot | None:
        return await self._run(self._select_one, order_id)

    def _delete(self, order_id: str) -> bool:
        cursor = self._conn.execute("DELETE FROM orders WHERE order_id = ?", (order_id,))
        self._conn.commit()
        return cursor.rowcount > 0

    async def delete(self, order_id: str) -> bool:
        return await self._run(self._delete, order_id)

    async def list(
        self,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[OrderSnapshot]:
        return await self._run(self._select_many, status, limit, offset)

    async def ping(self) -> bool:
        await self._run(lambda: self._conn.execute("SELECT 1").fetchone())
        return True

    async def close(self) -> None:
        self._conn.close()


def create_store(backend: str, database_path: str = "order_spine.db") -> OrderStore:
    """Build the store named by ``backend`` (``memory`` or ``sqlite``)."""
    if backend == "memory":
        return InMemoryOrderStore()
    if backend == "sqlite":
        return SqliteOrderStore(database_path)
    raise ValueError(f"unknown store backend: {backend}")
