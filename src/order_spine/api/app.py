"""
FastAPI application factory.

``create_app()`` builds the store, status hub, execution strategy and
dispatch engine, then wires middleware, routers, error handlers, and
lifespan events into a single ``FastAPI`` instance.

Manifesto:
    The app factory is the single composition root.  Everything the
    routers need hangs off ``app.state``; the lifespan starts the engine
    before the first request and drains it after the last one.

Tags:
    order-spine, api, app-factory, composition-root, FastAPI

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from order_spine import __version__
from order_spine.api.deps import get_settings
from order_spine.api.middleware.errors import (
    order_spine_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from order_spine.api.middleware.request_context import RequestContextMiddleware
from order_spine.core.errors import ErrorCategory, OrderSpineError
from order_spine.core.health import create_health_router, dispatch_checks
from order_spine.core.logging import configure_logging, get_logger
from order_spine.core.settings import OrderSpineSettings
from order_spine.dispatch.engine import DispatchEngine, DispatchPolicy
from order_spine.dispatch.hub import StatusHub
from order_spine.dispatch.store import OrderStore, create_store
from order_spine.dispatch.strategy import ExecutionStrategy, SimulatedDexStrategy


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — start the engine, then drain it on shutdown."""
    settings: OrderSpineSettings = app.state.settings
    configure_logging(
        level=settings.log_level,
        json_format=settings.log_json if settings.log_json is not None else settings.is_production,
    )
    log = get_logger("order_spine.api")

    engine: DispatchEngine = app.state.engine
    await engine.start()
    log.info(
        "order-spine API starting",
        version=app.version,
        store_backend=settings.store_backend,
        mock_mode=settings.mock_mode,
    )

    yield

    log.info("order-spine API shutting down")
    await engine.stop()
    await app.state.hub.close()
    await app.state.store.close()


def _build_strategy(settings: OrderSpineSettings) -> ExecutionStrategy:
    if not settings.mock_mode:
        raise OrderSpineError(
            "No execution strategy configured: pass one to create_app() or set MOCK_MODE=true",
            category=ErrorCategory.CONFIG,
        )
    return SimulatedDexStrategy.from_settings(settings)


def create_app(
    settings: OrderSpineSettings | None = None,
    *,
    strategy: ExecutionStrategy | None = None,
    store: OrderStore | None = None,
) -> FastAPI:
    """Build and return a fully-configured FastAPI application.

    Parameters
    ----------
    settings : OrderSpineSettings | None
        Override settings (useful for testing).  When ``None`` the cached
        singleton from :func:`get_settings` is used.
    strategy : ExecutionStrategy | None
        Execution strategy; defaults to :class:`SimulatedDexStrategy`
        when ``mock_mode`` is on.
    store : OrderStore | None
        Order store; defaults to the backend named in settings.
    """
    settings = settings or get_settings()
    if store is None:
        store = create_store(settings.store_backend, settings.database_path)
    if strategy is None:
        strategy = _build_strategy(settings)

    hub = StatusHub()
    engine = DispatchEngine(
        strategy,
        policy=DispatchPolicy.from_settings(settings),
        store=store,
        hub=hub,
    )

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )

    app.state.settings = settings
    app.state.store = store
    app.state.hub = hub
    app.state.engine = engine

    app.dependency_overrides[get_settings] = lambda: settings

    # ── Middleware (outermost → innermost) ────────────────────────────
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Exception handlers ───────────────────────────────────────────
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(OrderSpineError, order_spine_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routers ──────────────────────────────────────────────────────
    from order_spine.api.routers import orders

    prefix = settings.api_prefix

    app.include_router(
        create_health_router(
            "order-spine",
            version=settings.api_version,
            checks=dispatch_checks(engine, store),
            prefix=f"{prefix}/health",
        ),
        tags=["health"],
    )
    app.include_router(orders.router, prefix=prefix, tags=["orders"])

    @app.get("/", tags=["discovery"])
    async def index():
        """Service index."""
        return {
            "service": "order-spine",
            "title": settings.api_title,
            "version": __version__,
            "endpoints": {
                "execute_order": f"POST {prefix}/orders/execute",
                "order_stream": f"WS {prefix}/orders/execute?order_id=<order_id>",
                "get_order": f"GET {prefix}/orders/{{order_id}}",
                "list_orders": f"GET {prefix}/orders",
                "queue_metrics": f"GET {prefix}/orders/queue/metrics",
                "health": f"GET {prefix}/health",
            },
        }

    return app
