"""
Command line interface for order-spine.

Usage::

    order-spine serve --port 3000
    order-spine simulate --orders 20 --concurrency 5
    order-spine config --format json
"""

from order_spine.cli.app import app

__all__ = ["app"]
