"""Hedge ratio validation for spot + futures-short deployments.

hedge_ratio = futures_qty / spot_qty. A deployment is confirmed only when
min_hedge_ratio <= hedge_ratio <= max_hedge_ratio: under-hedging up to the
configured margin is accepted, over-hedging never is.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal

from autopilot.config import TradingSettings
from autopilot.logging import get_logger

logger = get_logger(__name__)


@dataclass
class HedgeStatus:
    symbol: str
    spot_qty: Decimal
    futures_qty: Decimal
    hedge_ratio: Decimal
    is_confirmed: bool
    checked_at: float = field(default_factory=time.time)

    @property
    def unhedged_qty(self) -> Decimal:
        """Spot quantity not offset by the futures short (0 when over-hedged)."""
        return max(Decimal("0"), self.spot_qty - self.futures_qty)


class HedgeValidator:
    """Checks filled quantities against the accepted hedge-ratio band.

    Args:
        settings: Trading settings with min_hedge_ratio and max_hedge_ratio.
    """

    def __init__(self, settings: TradingSettings) -> None:
        self._settings = settings

    def validate(self, symbol: str, spot_qty: Decimal, futures_qty: Decimal) -> HedgeStatus:
        """Compute the hedge ratio of two fills. Never negative; 0 when spot is 0."""
        if spot_qty > 0:
            hedge_ratio = abs(futures_qty) / spot_qty
        else:
            hedge_ratio = Decimal("0")

        is_confirmed = (
            spot_qty > 0
            and self._settings.min_hedge_ratio <= hedge_ratio <= self._settings.max_hedge_ratio
        )
        status = HedgeStatus(
            symbol=symbol,
            spot_qty=spot_qty,
            futures_qty=abs(futures_qty),
            hedge_ratio=hedge_ratio,
            is_confirmed=is_confirmed,
        )
        if not is_confirmed:
            logger.warning(
                "hedge_ratio_out_of_band",
                symbol=symbol,
                hedge_ratio=str(hedge_ratio),
                min_ratio=str(self._settings.min_hedge_ratio),
                max_ratio=str(self._settings.max_hedge_ratio),
                spot_qty=str(spot_qty),
                futures_qty=str(futures_qty),
            )
        return status
