"""
FastAPI dependency injection — shared singletons for routers.

The app factory builds one store, one hub and one engine per application
and stashes them on ``app.state``; the dependencies below hand them to
endpoints.

Usage in routers::

    from order_spine.api.deps import Engine, Store

    @router.get("/things")
    async def list_things(engine: Engine, store: Store):
        ...

Tags:
    order-spine, api, dependency-injection, singletons

Doc-Types:
    api-reference
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Request
from starlette.requests import HTTPConnection

from order_spine.core.settings import OrderSpineSettings
from order_spine.dispatch.engine import DispatchEngine
from order_spine.dispatch.hub import StatusHub
from order_spine.dispatch.store import OrderStore

# ── Settings (singleton) ─────────────────────────────────────────────────


@lru_cache(maxsize=1)
def get_settings() -> OrderSpineSettings:
    """Cached settings — loaded once per process."""
    return OrderSpineSettings()


# ── Application singletons ───────────────────────────────────────────────


def get_engine(conn: HTTPConnection) -> DispatchEngine:
    return conn.app.state.engine


def get_store(conn: HTTPConnection) -> OrderStore:
    return conn.app.state.store


def get_hub(conn: HTTPConnection) -> StatusHub:
    return conn.app.state.hub


def get_app_settings(request: Request) -> OrderSpineSettings:
    return request.app.state.settings


Settings = Annotated[OrderSpineSettings, Depends(get_app_settings)]
Engine = Annotated[DispatchEngine, Depends(get_engine)]
Store = Annotated[OrderStore, Depends(get_store)]
Hub = Annotated[StatusHub, Depends(get_hub)]
