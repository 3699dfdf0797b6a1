"""Portfolio analysis from live exchange state.

Combines spot balances, the futures account, futures positions and spot
prices into a PortfolioSnapshot. The four reads are issued concurrently so
they land close together in time; the exchange offers no atomic view across
them.

Deployed capital counts, per open futures position, the margin in use
(notional / leverage) plus the spot value of the same base asset.
"""

import asyncio
from decimal import Decimal

from autopilot.exceptions import PortfolioReadError
from autopilot.exchange.client import ExchangeClient
from autopilot.logging import get_logger
from autopilot.models import ActivePosition, PortfolioSnapshot, SpotHolding

logger = get_logger(__name__)

# Non-quote holdings worth less than this are ignored in valuation
_MIN_HOLDING_VALUE = Decimal("1")


class PortfolioAnalyzer:
    """Derives a fresh PortfolioSnapshot on every call.

    Args:
        exchange: Exchange client providing account reads.
        quote_asset: Asset valued at face (USDT).
    """

    def __init__(self, exchange: ExchangeClient, quote_asset: str = "USDT") -> None:
        self._exchange = exchange
        self._quote = quote_asset

    async def analyze(self) -> PortfolioSnapshot:
        """Read both ledgers and open positions and value them at live prices.

        Raises:
            PortfolioReadError: If any of the required reads fails.
        """
        try:
            balances, futures_account, positions, prices = await asyncio.gather(
                self._exchange.get_spot_balances(),
                self._exchange.get_futures_account(),
                self._exchange.get_futures_positions(),
                self._exchange.get_spot_prices(),
            )
        except Exception as exc:
            raise PortfolioReadError(f"Portfolio read failed: {exc}") from exc

        holdings: list[SpotHolding] = []
        spot_usdt_free = Decimal("0")
        for balance in balances:
            amount = balance.total
            if amount <= 0:
                continue
            if balance.asset == self._quote:
                spot_usdt_free = balance.free
                holdings.append(SpotHolding(asset=balance.asset, amount=amount, value=amount))
                continue
            price = prices.get(f"{balance.asset}{self._quote}")
            if not price:
                continue
            value = amount * price
            if value > _MIN_HOLDING_VALUE:
                holdings.append(
                    SpotHolding(asset=balance.asset, amount=amount, value=value, price=price)
                )

        total_spot_value = sum((h.value for h in holdings), Decimal("0"))
        values_by_asset = {h.asset: h.value for h in holdings}

        active: list[ActivePosition] = []
        deployed = Decimal("0")
        total_pnl = Decimal("0")
        for info in positions:
            if info.position_amt == 0:
                continue
            mark = info.mark_price or prices.get(info.symbol, Decimal("0"))
            position = ActivePosition(
                symbol=info.symbol,
                signed_size=info.position_amt,
                notional_usd=abs(info.position_amt) * mark,
                unrealized_pnl=info.unrealized_profit,
                leverage=info.leverage,
            )
            active.append(position)
            deployed += position.margin_used
            total_pnl += position.unrealized_pnl

            base_asset = self._exchange.get_base_asset(info.symbol, self._quote)
            deployed += values_by_asset.get(base_asset, Decimal("0"))

        snapshot = PortfolioSnapshot(
            total_spot_value=total_spot_value,
            futures_balance=futures_account.wallet(self._quote),
            deployed_capital=deployed,
            total_pnl=total_pnl,
            active_positions=active,
            spot_holdings=holdings,
            spot_usdt_free=spot_usdt_free,
            futures_usdt_available=futures_account.available(self._quote),
        )
        logger.debug(
            "portfolio_analyzed",
            total_value=str(snapshot.total_value),
            deployed=str(snapshot.deployed_capital),
            utilization=str(round(snapshot.utilization, 2)),
            positions=len(active),
        )
        return snapshot

    async def read_usdt_balances(self) -> tuple[Decimal, Decimal]:
        """Return (spot free USDT, futures available USDT) from a fresh read.

        Raises:
            PortfolioReadError: If either read fails.
        """
        try:
            balances, futures_account = await asyncio.gather(
                self._exchange.get_spot_balances(),
                self._exchange.get_futures_account(),
            )
        except Exception as exc:
            raise PortfolioReadError(f"Balance read failed: {exc}") from exc

        spot_free = next(
            (b.free for b in balances if b.asset == self._quote), Decimal("0")
        )
        return spot_free, futures_account.available(self._quote)
