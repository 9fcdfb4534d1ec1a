"""Business validation for orders.

Two checkpoints use the same rules:

- ``validate_order_request`` runs at the submission boundary, before an
  order record exists; a non-empty result means HTTP 400 and the order
  never reaches the engine.
- ``validate_order`` runs inside the engine while the order is
  VALIDATING; a non-empty result fails the order without retry.

Both return a list of human-readable problems (empty means valid).
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from order_spine.dispatch.models import OrderKind, OrderSnapshot

MAX_INPUT_AMOUNT = Decimal("1000000")
MAX_SLIPPAGE = Decimal("0.5")
MAX_ASSET_LENGTH = 44

_ASSET_RE = re.compile(r"^[A-Za-z0-9]+$")


def _check_asset(label: str, value: str, errors: list[str]) -> None:
    if not value:
        errors.append(f"{label} is required")
    elif len(value) > MAX_ASSET_LENGTH:
        errors.append(f"{label} must be at most {MAX_ASSET_LENGTH} characters")
    elif not _ASSET_RE.match(value):
        errors.append(f"{label} must be alphanumeric")


def validate_order_request(
    kind: str | OrderKind,
    input_asset: str,
    output_asset: str,
    input_amount: Decimal | float | str,
    max_slippage: Decimal | float | str = Decimal("0.01"),
) -> list[str]:
    """Check a would-be order against the business rules.

    Example:
        >>> validate_order_request("market_buy", "SOL", "SOL", 1)
        ['input and output assets must differ']
    """
    errors: list[str] = []

    try:
        OrderKind(kind)
    except ValueError:
        errors.append(f"unsupported order type: {kind}")

    _check_asset("input asset", input_asset, errors)
    _check_asset("output asset", output_asset, errors)
    if input_asset and output_asset and input_asset.upper() == output_asset.upper():
        errors.append("input and output assets must differ")

    try:
        amount = Decimal(str(input_amount))
    except InvalidOperation:
        errors.append(f"input amount is not a number: {input_amount}")
    else:
        if not amount.is_finite() or amount <= 0:
            errors.append("input amount must be positive")
        elif amount > MAX_INPUT_AMOUNT:
            errors.append(f"input amount exceeds maximum of {MAX_INPUT_AMOUNT}")

    try:
        slippage = Decimal(str(max_slippage))
    except InvalidOperation:
        errors.append(f"slippage is not a number: {max_slippage}")
    else:
        if not slippage.is_finite() or slippage < 0 or slippage > MAX_SLIPPAGE:
            errors.append(f"slippage must be between 0 and {MAX_SLIPPAGE}")

    return errors


def validate_order(snapshot: OrderSnapshot) -> list[str]:
    """Pre-execution check of an admitted order."""
    return validate_order_request(
        snapshot.kind,
        snapshot.input_asset,
        snapshot.output_asset,
        snapshot.input_amount,
        snapshot.max_slippage,
    )
