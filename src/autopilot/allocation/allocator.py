"""Capital allocation between the spot and futures ledgers.

Delta-neutral entries spend spot USDT on the long leg and futures USDT as
margin for the short leg, so the engine keeps a fixed split (55% spot / 45%
futures by default) and moves capital when either ledger drifts past the
tolerance.

The split applies to allocatable capital only: free spot USDT, available
futures USDT and unhedged spot holdings that can be converted. Spot legs
and margin already backing open positions are left out, since no transfer
or conversion can move them.

Every corrective action is verified with a fresh balance read: it only
counts when the combined unmet need of both ledgers strictly shrank. When
no capital could be moved at all the pass is abandoned, not failed.
"""

import asyncio
from decimal import ROUND_DOWN, Decimal

from autopilot.allocation.converter import AssetConverter
from autopilot.audit.auditor import StepName, WorkflowAuditor
from autopilot.config import AllocationSettings
from autopilot.exceptions import PortfolioReadError, ValidationFailed
from autopilot.exchange.client import ExchangeClient
from autopilot.logging import get_logger
from autopilot.models import AllocationPlan, PortfolioSnapshot, Wallet
from autopilot.portfolio.analyzer import PortfolioAnalyzer

logger = get_logger(__name__)

_CENT = Decimal("0.01")
_SPOT_RESERVE = Decimal("1")  # left in spot when topping up futures margin


def _usd(amount: Decimal) -> Decimal:
    return amount.quantize(_CENT, rounding=ROUND_DOWN)


class CapitalAllocator:
    """Plans and enforces the spot/futures capital split.

    Args:
        exchange: Exchange client for wallet transfers.
        analyzer: Portfolio analyzer for fresh snapshots and balance re-reads.
        converter: Asset converter used when transfers cannot cover a deficit.
        auditor: Workflow auditor (CAPITAL_ALLOCATION / CAPITAL_TRANSFER steps).
        settings: Split ratio, tolerances, floors and pacing.
        quote_asset: Settlement asset moved between ledgers.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        analyzer: PortfolioAnalyzer,
        converter: AssetConverter,
        auditor: WorkflowAuditor,
        settings: AllocationSettings,
        quote_asset: str = "USDT",
    ) -> None:
        self._exchange = exchange
        self._analyzer = analyzer
        self._converter = converter
        self._auditor = auditor
        self._settings = settings
        self._quote = quote_asset

    def allocatable_value(self, snapshot: PortfolioSnapshot) -> Decimal:
        """Free quote on both ledgers plus unhedged spot holdings."""
        hedged = {
            self._exchange.get_base_asset(p.symbol, self._quote) for p in snapshot.active_positions
        }
        convertible = sum(
            (
                h.value
                for h in snapshot.spot_holdings
                if h.asset != self._quote and h.asset not in hedged
            ),
            Decimal("0"),
        )
        return snapshot.spot_usdt_free + snapshot.futures_usdt_available + convertible

    def plan_allocation(self, snapshot: PortfolioSnapshot) -> AllocationPlan:
        """Apply the target split to allocatable value. Pure: same snapshot, same plan."""
        total = self.allocatable_value(snapshot)
        target_spot = total * self._settings.spot_ratio
        return AllocationPlan(
            total_value=total,
            target_spot_value=target_spot,
            target_futures_value=total - target_spot,
            current_spot_usdt=snapshot.spot_usdt_free,
            current_futures_usdt=snapshot.futures_usdt_available,
        )

    def needs_rebalance(self, plan: AllocationPlan) -> bool:
        tolerance = self._settings.rebalance_tolerance
        return plan.spot_deficit > tolerance or plan.futures_deficit > tolerance

    async def ensure_allocation(self, plan: AllocationPlan) -> bool:
        """Correct the split described by plan.

        Returns True when no action was needed, or when a post-action
        re-read shows the combined deficit strictly reduced.
        """
        return bool(await self._rebalance(plan))

    async def _rebalance(self, plan: AllocationPlan) -> bool | None:
        """Run one corrective action. None when nothing could be moved."""
        if not self.needs_rebalance(plan):
            return True

        step = StepName.CAPITAL_TRANSFER
        tolerance = self._settings.rebalance_tolerance
        spot_deficit = plan.spot_deficit
        futures_deficit = plan.futures_deficit
        self._auditor.start_step(
            step, {"spot_deficit": spot_deficit, "futures_deficit": futures_deficit}
        )
        logger.info(
            "capital_rebalance_started",
            spot_deficit=str(spot_deficit),
            futures_deficit=str(futures_deficit),
        )

        try:
            if spot_deficit > tolerance and futures_deficit > tolerance:
                executed = await self._convert_and_fund_futures(
                    spot_deficit + futures_deficit + self._settings.conversion_buffer,
                    futures_deficit,
                )
            elif spot_deficit > tolerance:
                transferable = max(
                    Decimal("0"), plan.current_futures_usdt - self._settings.futures_margin_floor
                )
                amount = min(transferable, spot_deficit * self._settings.transfer_haircut)
                if amount > self._settings.min_transfer:
                    executed = await self._transfer(amount, Wallet.FUTURES, Wallet.SPOT)
                    self._auditor.validate(
                        step, "transfer_executed", executed, {"amount": amount, "direction": "futures_to_spot"}
                    )
                else:
                    logger.info("futures_surplus_insufficient", transferable=str(transferable))
                    gained = await self._converter.convert_to_usdt(
                        max(self._settings.conversion_floor, spot_deficit)
                    )
                    await asyncio.sleep(self._settings.conversion_delay)
                    executed = gained > self._settings.min_conversion_gain
                    self._auditor.validate(
                        step, "transfer_executed", executed, {"path": "conversion", "gained": gained}
                    )
            elif spot_deficit < -tolerance:
                amount = min(abs(spot_deficit), futures_deficit) * self._settings.transfer_haircut
                executed = await self._transfer(amount, Wallet.SPOT, Wallet.FUTURES)
                self._auditor.validate(
                    step, "transfer_executed", executed, {"amount": amount, "direction": "spot_to_futures"}
                )
            else:
                executed = await self._convert_and_fund_futures(
                    futures_deficit + self._settings.conversion_buffer, futures_deficit
                )

            if not executed:
                logger.warning(
                    "capital_rebalance_no_action",
                    spot_deficit=str(spot_deficit),
                    futures_deficit=str(futures_deficit),
                )
                self._auditor.abandon_step(step, "no corrective action available")
                return None

            await asyncio.sleep(self._settings.transfer_settle_delay)
            improvement = await self._verify_allocation(plan)
        except ValidationFailed as exc:
            logger.warning("capital_rebalance_not_improved", reason=str(exc))
            return self._auditor.complete_step(step, False)
        except Exception:
            logger.exception("capital_rebalance_error")
            return self._auditor.complete_step(step, False)

        ok = self._auditor.complete_step(step, True)
        if ok:
            logger.info("capital_rebalance_complete", improvement=str(improvement))
        return ok

    async def ensure_adequate_capital(self) -> bool:
        """Analyze, plan and enforce the split as one audited allocation pass."""
        step = StepName.CAPITAL_ALLOCATION
        self._auditor.start_step(step, {"operation": "capital_allocation"})
        try:
            snapshot = await self._analyzer.analyze()
        except PortfolioReadError as exc:
            self._auditor.validate(step, "portfolio_analyzed", False, {"error": str(exc)})
            return self._auditor.abandon_step(step, "portfolio read failed")

        self._auditor.validate(
            step,
            "portfolio_analyzed",
            True,
            {"total_value": snapshot.total_value, "positions": len(snapshot.active_positions)},
        )
        plan = self.plan_allocation(snapshot)
        self._auditor.validate(
            step,
            "allocation_calculated",
            True,
            {
                "target_spot": plan.target_spot_value,
                "target_futures": plan.target_futures_value,
                "spot_ratio": self._settings.spot_ratio,
            },
        )
        self._auditor.validate(
            step,
            "deficits_identified",
            True,
            {"spot_deficit": plan.spot_deficit, "futures_deficit": plan.futures_deficit},
        )

        result = await self._rebalance(plan)
        if result is None:
            return self._auditor.abandon_step(step, "no corrective action available")
        return self._auditor.complete_step(step, result)

    async def ensure_margin_buffer(self) -> bool:
        """Keep futures available balance at margin_buffer_percent of total value.

        Converts spot assets if spot USDT cannot cover the top-up, then
        transfers the shortfall plus a buffer. True when no top-up was
        needed or the futures available balance measurably grew.
        """
        try:
            snapshot = await self._analyzer.analyze()
        except PortfolioReadError as exc:
            logger.warning("margin_check_skipped", error=str(exc))
            return False
        required = snapshot.total_value * self._settings.margin_buffer_percent
        available = snapshot.futures_usdt_available
        if available >= required:
            logger.debug("margin_buffer_ok", available=str(available), required=str(required))
            return True

        step = StepName.CAPITAL_TRANSFER
        shortfall = required - available
        self._auditor.start_step(
            step, {"operation": "margin_buffer", "required": required, "available": available}
        )
        logger.info("margin_buffer_low", available=str(available), required=str(required))

        try:
            target_spot = shortfall + self._settings.conversion_floor
            if snapshot.spot_usdt_free < target_spot:
                await self._converter.convert_to_usdt(target_spot - snapshot.spot_usdt_free)

            spot_free, _ = await self._analyzer.read_usdt_balances()
            amount = min(shortfall + self._settings.conversion_buffer, spot_free - _SPOT_RESERVE)
            executed = amount > 0 and await self._transfer(amount, Wallet.SPOT, Wallet.FUTURES)
            self._auditor.validate(
                step, "transfer_executed", executed, {"amount": amount, "spot_free": spot_free}
            )
            if not executed:
                logger.warning("margin_buffer_no_action", spot_free=str(spot_free), shortfall=str(shortfall))
                return self._auditor.abandon_step(step, "no spot USDT to move")
            await asyncio.sleep(self._settings.transfer_settle_delay)

            _, new_available = await self._analyzer.read_usdt_balances()
            increased = new_available > available
            self._auditor.validate(
                step, "balances_updated", increased, {"futures_available": new_available}
            )
            self._auditor.validate(
                step,
                "allocation_verified",
                increased,
                {"shortfall_before": shortfall, "shortfall_after": max(Decimal("0"), required - new_available)},
            )
        except Exception:
            logger.exception("margin_buffer_error")
            return self._auditor.complete_step(step, False)

        return self._auditor.complete_step(step, increased)

    # ── internals ──

    async def _verify_allocation(self, plan: AllocationPlan) -> Decimal:
        """Re-read both ledgers and require a strictly smaller imbalance.

        Returns the improvement.

        Raises:
            ValidationFailed: If the combined deficit did not shrink.
        """
        step = StepName.CAPITAL_TRANSFER
        new_spot, new_futures = await self._analyzer.read_usdt_balances()
        moved = new_spot != plan.current_spot_usdt or new_futures != plan.current_futures_usdt
        self._auditor.validate(
            step,
            "balances_updated",
            moved,
            {"new_spot_usdt": new_spot, "new_futures_usdt": new_futures},
        )
        before = plan.imbalance(plan.current_spot_usdt, plan.current_futures_usdt)
        after = plan.imbalance(new_spot, new_futures)
        improved = after < before
        self._auditor.validate(
            step,
            "allocation_verified",
            improved,
            {"imbalance_before": before, "imbalance_after": after},
        )
        if not improved:
            raise ValidationFailed(f"Imbalance not reduced: {before} -> {after}")
        return before - after

    async def _convert_and_fund_futures(self, conversion_target: Decimal, futures_deficit: Decimal) -> bool:
        gained = await self._converter.convert_to_usdt(conversion_target)
        logger.info("conversion_before_redistribution", gained=str(gained))
        if gained <= self._settings.min_conversion_gain:
            # moving spot USDT alone only shifts the deficit between ledgers
            self._auditor.validate(
                StepName.CAPITAL_TRANSFER, "transfer_executed", False, {"conversion_gain": gained}
            )
            return False
        await asyncio.sleep(self._settings.conversion_delay)
        executed = await self._transfer(
            futures_deficit * self._settings.transfer_haircut, Wallet.SPOT, Wallet.FUTURES
        )
        self._auditor.validate(
            StepName.CAPITAL_TRANSFER,
            "transfer_executed",
            executed,
            {"amount": futures_deficit * self._settings.transfer_haircut, "conversion_gain": gained},
        )
        return executed

    async def _transfer(self, amount: Decimal, source: Wallet, target: Wallet) -> bool:
        amount = _usd(amount)
        if amount <= 0:
            return False
        try:
            ok = await self._exchange.transfer_between_wallets(self._quote, amount, source, target)
        except Exception:
            logger.warning(
                "wallet_transfer_failed",
                amount=str(amount),
                source=source.value,
                target=target.value,
                exc_info=True,
            )
            return False
        logger.info(
            "wallet_transfer_submitted",
            amount=str(amount),
            source=source.value,
            target=target.value,
            accepted=ok,
        )
        return ok
