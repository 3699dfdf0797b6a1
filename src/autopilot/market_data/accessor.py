"""Market data accessor -- funding rates, mark prices and liquidity for all perpetuals.

Fetches the three public feeds concurrently on every call; nothing is cached
between cycles. Funding rates change slowly (every 8h) but the engine
re-reads them each decision cycle so ranking never acts on a stale view.

BINANCE CONVENTION: positive funding means longs pay shorts.
"""

import asyncio
from decimal import Decimal

from autopilot.config import TradingSettings
from autopilot.exceptions import MarketDataError
from autopilot.exchange.client import ExchangeClient
from autopilot.logging import get_logger
from autopilot.models import Opportunity

logger = get_logger(__name__)


class MarketDataAccessor:
    """Builds the unranked opportunity set from live exchange data.

    Args:
        exchange: Exchange client providing public market feeds.
        settings: Trading settings with the funding-rate and liquidity floors.
    """

    def __init__(self, exchange: ExchangeClient, settings: TradingSettings) -> None:
        self._exchange = exchange
        self._settings = settings

    async def get_opportunities(self) -> list[Opportunity]:
        """Return every dual-listed perpetual passing the rate and liquidity filters.

        Raises:
            MarketDataError: If the funding/price or volume feed is unreachable.
        """
        try:
            marks, volumes = await asyncio.gather(
                self._exchange.get_mark_prices_and_funding(),
                self._exchange.get_24h_volume(),
            )
        except Exception as exc:
            raise MarketDataError(f"Market data feed unavailable: {exc}") from exc

        dual_listed = self._exchange.get_dual_listed_symbols()
        quote = self._settings.quote_asset

        opportunities: list[Opportunity] = []
        for mark in marks:
            if not mark.symbol.endswith(quote):
                continue
            base_asset = dual_listed.get(mark.symbol)
            if base_asset is None:
                continue
            if abs(mark.funding_rate) < self._settings.min_funding_rate:
                continue
            volume = volumes.get(mark.symbol, Decimal("0"))
            if volume < self._settings.min_liquidity:
                continue
            if mark.mark_price <= 0:
                continue

            opportunities.append(
                Opportunity.from_market(
                    symbol=mark.symbol,
                    funding_rate=mark.funding_rate,
                    mark_price=mark.mark_price,
                    volume_usd=volume,
                    base_asset=base_asset,
                )
            )

        logger.debug(
            "opportunities_filtered",
            perpetuals=len(marks),
            dual_listed=len(dual_listed),
            passed=len(opportunities),
        )
        return opportunities
