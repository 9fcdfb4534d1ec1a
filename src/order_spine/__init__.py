"""
order-spine - asynchronous order execution engine.

Packages:
- order_spine.core: errors, logging, settings, health
- order_spine.dispatch: the dispatch engine and its collaborators
- order_spine.api: FastAPI transport (HTTP + WebSocket)
- order_spine.cli: ``order-spine`` command line
"""

__version__ = "1.0.0"
