"""API routers package.

Manifesto:
    Each router module owns one API domain and delegates to
    ``order_spine.dispatch`` for the actual work.

Tags:
    order-spine, api, routers, REST, websocket

Doc-Types:
    api-reference
"""
