"""API middleware package.

Manifesto:
    Cross-cutting concerns (request correlation, timing, error mapping)
    belong in middleware so routers stay focused on orders.

Tags:
    order-spine, api, middleware, cross-cutting

Doc-Types:
    api-reference
"""
