"""
HTTP and WebSocket layer for order-spine.

Provides a FastAPI application factory whose routers delegate to the
dispatch engine (``order_spine.dispatch``).  This package handles only
transport concerns: serialisation, error mapping, and request context.

Quick start::

    from order_spine.api import create_app

    app = create_app()  # ready for uvicorn

Tags:
    order-spine, api, REST, WebSocket, FastAPI, transport-layer

Doc-Types:
    api-reference
"""

from order_spine.api.app import create_app

__all__ = ["create_app"]
