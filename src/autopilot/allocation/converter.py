"""Asset conversion: liquidate non-quote spot holdings into USDT.

Sell quantities are floored to the spot LOT_SIZE step and clamped into
[min_qty, max_qty]. Success is measured, never assumed: the quote balance
is re-read after selling, and the conversion only counts when the free
balance grew by more than min_conversion_gain. Partial fills and fees can
leave individually "successful" orders with nothing useful to show.

Assets backing an open futures position are never sold here.
"""

import asyncio
from decimal import Decimal

from autopilot.audit.auditor import StepName, WorkflowAuditor
from autopilot.config import AllocationSettings
from autopilot.exceptions import OrderRejected
from autopilot.exchange.client import ExchangeClient
from autopilot.exchange.types import clamp_to_rules
from autopilot.logging import get_logger
from autopilot.models import OrderSide, SpotHolding

logger = get_logger(__name__)

_STEP = StepName.ASSET_CONVERSION


class AssetConverter:
    """Sells unhedged spot holdings until a USDT target is reached.

    Args:
        exchange: Exchange client for balance reads and spot sells.
        auditor: Workflow auditor recording the ASSET_CONVERSION step.
        settings: Dust threshold, sell fraction, minimum gain and pacing.
        quote_asset: Asset to convert into.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        auditor: WorkflowAuditor,
        settings: AllocationSettings,
        quote_asset: str = "USDT",
    ) -> None:
        self._exchange = exchange
        self._auditor = auditor
        self._settings = settings
        self._quote = quote_asset

    async def convert_to_usdt(self, target_amount: Decimal) -> Decimal:
        """Sell holdings for roughly target_amount USDT.

        Returns the measured increase of the free USDT balance. Callers
        treat anything at or below min_conversion_gain as a failed
        conversion.
        """
        self._auditor.start_step(_STEP, {"target_amount": target_amount})
        try:
            balances, prices, positions = await asyncio.gather(
                self._exchange.get_spot_balances(),
                self._exchange.get_spot_prices(),
                self._exchange.get_futures_positions(),
            )
        except Exception:
            logger.warning("conversion_read_failed", exc_info=True)
            self._auditor.abandon_step(_STEP, "balance read failed")
            return Decimal("0")

        hedged = {
            self._exchange.get_base_asset(p.symbol, self._quote)
            for p in positions
            if p.position_amt != 0
        }
        starting_usdt = next((b.free for b in balances if b.asset == self._quote), Decimal("0"))

        candidates: list[tuple[SpotHolding, Decimal]] = []
        for balance in balances:
            if balance.asset == self._quote or balance.asset in hedged:
                continue
            if balance.free <= 0:
                continue
            price = prices.get(f"{balance.asset}{self._quote}")
            if not price:
                continue
            value = balance.total * price
            if value < self._settings.dust_threshold:
                continue
            holding = SpotHolding(asset=balance.asset, amount=balance.total, value=value, price=price)
            candidates.append((holding, balance.free))
        candidates.sort(key=lambda c: c[0].value, reverse=True)

        self._auditor.validate(
            _STEP,
            "assets_identified",
            bool(candidates),
            {
                "assets_found": len(candidates),
                "total_value": sum((h.value for h, _ in candidates), Decimal("0")),
                "skipped_hedged": sorted(hedged),
            },
        )
        if not candidates:
            self._auditor.abandon_step(_STEP, "no convertible assets")
            return Decimal("0")

        converted = Decimal("0")
        any_filled = False
        for holding, free in candidates:
            if converted >= target_amount:
                break
            symbol = f"{holding.asset}{self._quote}"
            try:
                rules = await self._exchange.get_lot_size_rules(symbol, "spot")
            except Exception:
                logger.warning("conversion_rules_unavailable", symbol=symbol, exc_info=True)
                continue

            wanted = (target_amount - converted) / holding.price
            quantity = clamp_to_rules(
                min(free * self._settings.conversion_sell_fraction, wanted), rules
            )
            if quantity is None:
                logger.info(
                    "conversion_below_min_qty",
                    symbol=symbol,
                    min_qty=str(rules.min_qty),
                    free=str(free),
                )
                continue

            try:
                order = await self._exchange.place_spot_market_order(
                    symbol, OrderSide.SELL, quantity=quantity
                )
            except OrderRejected as exc:
                logger.warning("conversion_order_rejected", symbol=symbol, error=str(exc), code=exc.code)
                continue

            if order.cummulative_quote_qty > 0:
                converted += order.cummulative_quote_qty
                any_filled = True
                logger.info(
                    "asset_converted",
                    asset=holding.asset,
                    quantity=str(order.executed_qty),
                    proceeds=str(order.cummulative_quote_qty),
                )
                await asyncio.sleep(self._settings.conversion_delay)

        try:
            ending = await self._exchange.get_spot_balances()
        except Exception:
            logger.warning("conversion_verify_read_failed", exc_info=True)
            self._auditor.validate(_STEP, "conversion_executed", any_filled, {"reported": converted})
            self._auditor.validate(_STEP, "usdt_received", False, {"error": "verification read failed"})
            self._auditor.complete_step(_STEP, False)
            return Decimal("0")

        ending_usdt = next((b.free for b in ending if b.asset == self._quote), Decimal("0"))
        gained = ending_usdt - starting_usdt
        received = gained > self._settings.min_conversion_gain

        self._auditor.validate(
            _STEP,
            "conversion_executed",
            any_filled,
            {"reported": converted, "assets_processed": len(candidates)},
        )
        self._auditor.validate(
            _STEP,
            "usdt_received",
            received,
            {"starting_usdt": starting_usdt, "ending_usdt": ending_usdt, "gained": gained},
        )
        ok = self._auditor.complete_step(_STEP, any_filled and received)
        if ok:
            logger.info("asset_conversion_succeeded", gained=str(gained), target=str(target_amount))
        else:
            logger.warning("asset_conversion_failed", gained=str(gained), target=str(target_amount))
        return gained
