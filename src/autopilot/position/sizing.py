"""Order quantity calculation for the two deployment paths.

All calculations use Decimal arithmetic and round DOWN to the futures
step size, so a hedge can under-hedge slightly but never over-hedge.
"""

from decimal import ROUND_DOWN, Decimal

from autopilot.config import TradingSettings
from autopilot.exceptions import InsufficientSizeError
from autopilot.exchange.types import LotSizeRules, round_to_step

_CENT = Decimal("0.01")


class HedgeSizer:
    """Sizes spot spend, futures hedges and directional entries.

    Args:
        settings: Trading settings with hedge_ratio and max_leverage.
    """

    def __init__(self, settings: TradingSettings) -> None:
        self._settings = settings

    @staticmethod
    def quote_amount(capital: Decimal) -> Decimal:
        """Spot spend in USDT, floored to the cent."""
        return capital.quantize(_CENT, rounding=ROUND_DOWN)

    def hedge_quantity(self, spot_qty: Decimal, rules: LotSizeRules) -> Decimal:
        """Futures short quantity for a filled spot quantity.

        spot_qty * hedge_ratio, rounded down to the futures step and capped
        at max_qty. Never rounded up to the minimum: that could over-hedge.

        Raises:
            InsufficientSizeError: If the result is below the futures min_qty.
        """
        raw = spot_qty * self._settings.hedge_ratio
        quantity = round_to_step(raw, rules.step_size)
        if quantity <= 0 or quantity < rules.min_qty:
            raise InsufficientSizeError(
                f"Hedge quantity {quantity} below minimum {rules.min_qty} for {rules.symbol}"
            )
        if rules.max_qty > 0 and quantity > rules.max_qty:
            quantity = round_to_step(rules.max_qty, rules.step_size)
        return quantity

    def directional_quantity(
        self, capital: Decimal, mark_price: Decimal, rules: LotSizeRules
    ) -> Decimal:
        """Futures long quantity using capital as margin at max leverage.

        Raises:
            InsufficientSizeError: If the quantity is below the futures min_qty.
        """
        if mark_price <= 0:
            raise InsufficientSizeError(f"No mark price for {rules.symbol}")
        raw = capital * Decimal(self._settings.max_leverage) / mark_price
        quantity = round_to_step(raw, rules.step_size)
        if quantity <= 0 or quantity < rules.min_qty:
            raise InsufficientSizeError(
                f"Quantity {quantity} below minimum {rules.min_qty} for {rules.symbol}"
            )
        if rules.max_qty > 0 and quantity > rules.max_qty:
            quantity = round_to_step(rules.max_qty, rules.step_size)
        return quantity
