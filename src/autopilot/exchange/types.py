"""Exchange-specific type definitions and quantity formatting helpers.

All monetary values use Decimal. Never use float for prices, quantities, or fees.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Literal

MarketType = Literal["spot", "futures"]


@dataclass(frozen=True)
class LotSizeRules:
    """LOT_SIZE filter of a symbol on one market.

    Fetched from exchangeInfo and cached by the client. Every order
    quantity the engine submits passes through these rules first.
    """

    symbol: str
    min_qty: Decimal
    max_qty: Decimal
    step_size: Decimal


def round_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Round a value down to the nearest step increment.

    Uses integer division to ensure we always round DOWN (never up),
    which prevents exceeding available balance or position limits.
    A zero step leaves the value untouched.
    """
    if step <= 0:
        return value
    return (value // step) * step


def clamp_to_rules(quantity: Decimal, rules: LotSizeRules) -> Decimal | None:
    """Floor a quantity to the step size and clamp it into [min_qty, max_qty].

    Returns None when the floored quantity is below min_qty: rounding
    a sell up to the minimum could sell more than is held.
    """
    rounded = round_to_step(quantity, rules.step_size)
    if rounded < rules.min_qty or rounded <= 0:
        return None
    if rules.max_qty > 0 and rounded > rules.max_qty:
        rounded = round_to_step(rules.max_qty, rules.step_size)
    return rounded


def coarsen_quantity(quantity: Decimal, step: Decimal) -> Decimal:
    """Round down to ten times the step size.

    Used for the single retry after a precision rejection. Integer lots
    (step 1) coarsen to tens, so the retry never resubmits the same quantity.
    """
    coarser = step * 10 if step > 0 else Decimal("0.01")
    return round_to_step(quantity, coarser)


def format_quantity(quantity: Decimal, step: Decimal) -> str:
    """Render a quantity with exactly the step size's decimal places."""
    exponent = step.normalize().as_tuple().exponent
    places = -exponent if isinstance(exponent, int) and exponent < 0 else 0
    quantized = round_to_step(quantity, step).quantize(Decimal(1).scaleb(-places))
    return f"{quantized:f}"
