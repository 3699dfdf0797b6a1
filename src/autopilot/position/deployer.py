"""Position deployment and close -- the two-legged entry state machine.

Delta-neutral path (negative funding, shorts are paid):

  SIZING -> SPOT_LEG -> FUTURES_LEG -> HEDGE_VERIFY -> CONFIRMED | FAILED

1. SIZING: set futures leverage, make sure spot USDT covers the spend.
2. SPOT_LEG: market buy by quote quantity. Zero executed quantity aborts
   before any futures order exists.
3. FUTURES_LEG: market sell of hedge_ratio * spot fill, floored to the
   futures step. A precision rejection is retried exactly once with one
   step of coarser rounding.
4. HEDGE_VERIFY: balances and positions are read back from the exchange
   and the hedge ratio is computed from what is actually held (the change
   in base balance and in short size across the two legs), not from the
   order responses. A short that is not visible fails the deployment.

There is no cross-market atomicity. Once the spot leg has filled the
workflow commits to the futures leg; if that fails the spot leg stays open
and unhedged, and the failure is surfaced as a critical audit failure
instead of being retried in a loop.

Directional path (positive funding, longs pay): a futures-only long sized
at max leverage. It carries full price exposure and is audited as its own
step so it is never reported as delta-neutral.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from autopilot.audit.auditor import StepName, WorkflowAuditor
from autopilot.config import TradingSettings
from autopilot.events import EventBus, LifecycleEvent
from autopilot.exceptions import CriticalWorkflowFailure, InsufficientSizeError, OrderRejected
from autopilot.exchange.client import ExchangeClient
from autopilot.exchange.types import clamp_to_rules, coarsen_quantity
from autopilot.logging import get_logger
from autopilot.models import Opportunity, OrderSide
from autopilot.position.hedge_validator import HedgeValidator
from autopilot.position.sizing import HedgeSizer

logger = get_logger(__name__)

CapitalProvider = Callable[[], Awaitable[bool]]


class DeploymentState(str, Enum):
    SIZING = "SIZING"
    SPOT_LEG = "SPOT_LEG"
    FUTURES_LEG = "FUTURES_LEG"
    HEDGE_VERIFY = "HEDGE_VERIFY"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


@dataclass
class DeploymentOutcome:
    """What one deploy() attempt reached. Kept for events and inspection."""

    symbol: str
    capital: Decimal
    delta_neutral: bool
    state: DeploymentState = DeploymentState.SIZING
    failed_at: DeploymentState | None = None
    spot_qty: Decimal = Decimal("0")
    futures_qty: Decimal = Decimal("0")
    hedge_ratio: Decimal | None = None
    reason: str = ""

    @property
    def confirmed(self) -> bool:
        return self.state == DeploymentState.CONFIRMED

    def to_payload(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "capital": str(self.capital),
            "delta_neutral": self.delta_neutral,
            "state": self.state.value,
            "failed_at": self.failed_at.value if self.failed_at else None,
            "spot_qty": str(self.spot_qty),
            "futures_qty": str(self.futures_qty),
            "hedge_ratio": str(self.hedge_ratio) if self.hedge_ratio is not None else None,
            "reason": self.reason,
        }


class PositionDeployer:
    """Opens and closes funding positions against the exchange.

    Args:
        exchange: Exchange client for orders, leverage and balance reads.
        auditor: Workflow auditor for deployment and close steps.
        events: Lifecycle event bus.
        settings: Trading settings (leverage, hedge band, leg delay).
        capital_provider: Awaited when spot USDT is short of the spend;
            returns True if it rebalanced capital.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        auditor: WorkflowAuditor,
        events: EventBus,
        settings: TradingSettings,
        capital_provider: CapitalProvider | None = None,
    ) -> None:
        self._exchange = exchange
        self._auditor = auditor
        self._events = events
        self._settings = settings
        self._capital_provider = capital_provider
        self._sizer = HedgeSizer(settings)
        self._validator = HedgeValidator(settings)
        self.last_outcome: DeploymentOutcome | None = None

    def set_capital_provider(self, provider: CapitalProvider) -> None:
        self._capital_provider = provider

    async def deploy(self, opportunity: Opportunity, capital: Decimal) -> bool:
        """Deploy capital into an opportunity. True only when CONFIRMED."""
        capital = self._sizer.quote_amount(capital)
        outcome = DeploymentOutcome(
            symbol=opportunity.symbol,
            capital=capital,
            delta_neutral=opportunity.is_delta_neutral,
        )
        self.last_outcome = outcome
        try:
            self._auditor.require_safe()
        except CriticalWorkflowFailure as exc:
            outcome.state = DeploymentState.FAILED
            outcome.failed_at = DeploymentState.SIZING
            outcome.reason = str(exc)
            logger.warning("deployment_refused_breaker_open", symbol=opportunity.symbol, error=str(exc))
            return False
        logger.info(
            "deploying_position",
            symbol=opportunity.symbol,
            capital=str(capital),
            funding_rate=str(opportunity.funding_rate),
            delta_neutral=outcome.delta_neutral,
        )
        if capital <= 0:
            outcome.state = DeploymentState.FAILED
            outcome.failed_at = DeploymentState.SIZING
            outcome.reason = "non-positive capital"
            await self._events.emit(LifecycleEvent.DEPLOYMENT_FAILED, outcome.to_payload())
            return False

        if outcome.delta_neutral:
            ok = await self._deploy_delta_neutral(opportunity, outcome)
        else:
            ok = await self._deploy_directional(opportunity, outcome)

        event = LifecycleEvent.DEPLOYMENT_SUCCEEDED if ok else LifecycleEvent.DEPLOYMENT_FAILED
        await self._events.emit(event, outcome.to_payload())
        return ok

    # ── delta-neutral path ──

    async def _deploy_delta_neutral(self, opportunity: Opportunity, outcome: DeploymentOutcome) -> bool:
        step = StepName.POSITION_DEPLOYMENT
        symbol = opportunity.symbol
        self._auditor.start_step(
            step, {"symbol": symbol, "capital": outcome.capital, "type": "short"}
        )

        try:
            # SIZING
            self._enter(step, outcome, DeploymentState.SIZING)
            if not await self._set_leverage(symbol):
                return self._abandon(step, outcome, "leverage not set")
            if not await self._ensure_spot_usdt(outcome.capital):
                return self._abandon(step, outcome, "insufficient spot USDT")
            if not self._auditor.is_safe_to_proceed():
                return self._abandon(step, outcome, "circuit breaker opened during capital rebalance")
            try:
                spot_before, short_before = await self._read_hedge_legs(symbol)
            except Exception:
                logger.warning("pre_trade_read_failed", symbol=symbol, exc_info=True)
                return self._abandon(step, outcome, "pre-trade balance read failed")

            # SPOT_LEG
            self._enter(step, outcome, DeploymentState.SPOT_LEG)
            try:
                spot_order = await self._exchange.place_spot_market_order(
                    symbol, OrderSide.BUY, quote_quantity=outcome.capital
                )
                spot_qty = spot_order.executed_qty
            except OrderRejected as exc:
                logger.warning("spot_leg_rejected", symbol=symbol, error=str(exc), code=exc.code)
                spot_qty = Decimal("0")

            outcome.spot_qty = spot_qty
            self._auditor.validate(
                step, "spot_purchase", spot_qty > 0, {"symbol": symbol, "spot_qty": spot_qty}
            )
            if spot_qty <= 0:
                return self._abandon(step, outcome, "spot leg did not fill")
            logger.info("spot_leg_filled", symbol=symbol, quantity=str(spot_qty))

            await asyncio.sleep(self._settings.leg_settle_delay)

            # FUTURES_LEG
            self._enter(step, outcome, DeploymentState.FUTURES_LEG)
            rules = await self._exchange.get_lot_size_rules(symbol, "futures")
            futures_qty = Decimal("0")
            hedge_qty: Decimal | None = None
            try:
                hedge_qty = self._sizer.hedge_quantity(spot_qty, rules)
            except InsufficientSizeError as exc:
                outcome.reason = "hedge quantity below futures minimum"
                logger.error("hedge_below_min_qty", symbol=symbol, spot_qty=str(spot_qty), error=str(exc))
            else:
                futures_qty = await self._place_futures_with_retry(
                    symbol, OrderSide.SELL, hedge_qty, rules.step_size
                )

            outcome.futures_qty = futures_qty
            self._auditor.validate(
                step,
                "futures_hedge",
                futures_qty > 0,
                {"symbol": symbol, "requested": hedge_qty, "futures_qty": futures_qty},
            )
            if futures_qty <= 0:
                logger.critical(
                    "unhedged_spot_exposure",
                    symbol=symbol,
                    spot_qty=str(spot_qty),
                    capital=str(outcome.capital),
                )
                self._auditor.annotate(step, unhedged_spot_qty=spot_qty)
                return self._fail(step, outcome, outcome.reason or "futures leg failed")

            # HEDGE_VERIFY
            self._enter(step, outcome, DeploymentState.HEDGE_VERIFY)
            try:
                spot_after, short_after = await self._read_hedge_legs(symbol)
            except Exception:
                logger.error("post_trade_read_failed", symbol=symbol, exc_info=True)
                return self._fail(step, outcome, "post-trade balance read failed")
            held_spot = spot_after - spot_before
            held_short = short_after - short_before
            if held_short <= 0:
                self._auditor.validate(
                    step,
                    "delta_neutral_confirmed",
                    False,
                    {"reported_futures_qty": futures_qty, "held_short": held_short, "held_spot": held_spot},
                )
                logger.critical(
                    "hedge_not_visible",
                    symbol=symbol,
                    reported_futures_qty=str(futures_qty),
                    held_spot=str(held_spot),
                )
                self._auditor.annotate(step, unhedged_spot_qty=held_spot)
                return self._fail(step, outcome, "hedge not visible on exchange")

            status = self._validator.validate(symbol, held_spot, held_short)
            outcome.hedge_ratio = status.hedge_ratio
            self._auditor.validate(
                step,
                "delta_neutral_confirmed",
                status.is_confirmed,
                {
                    "hedge_ratio": status.hedge_ratio,
                    "held_spot": held_spot,
                    "held_short": held_short,
                    "reported_spot_qty": spot_qty,
                    "reported_futures_qty": futures_qty,
                    "unhedged_qty": status.unhedged_qty,
                },
            )
            if not status.is_confirmed:
                return self._fail(step, outcome, "hedge ratio out of band")

        except Exception as exc:
            logger.exception("delta_neutral_deployment_error", symbol=symbol)
            return self._fail(step, outcome, f"unexpected error: {exc}")

        return self._confirm(step, outcome)

    # ── directional path ──

    async def _deploy_directional(self, opportunity: Opportunity, outcome: DeploymentOutcome) -> bool:
        step = StepName.DIRECTIONAL_DEPLOYMENT
        symbol = opportunity.symbol
        self._auditor.start_step(
            step, {"symbol": symbol, "capital": outcome.capital, "type": "long"}
        )
        logger.warning(
            "directional_position_not_hedged",
            symbol=symbol,
            funding_rate=str(opportunity.funding_rate),
        )

        try:
            self._enter(step, outcome, DeploymentState.SIZING)
            if not await self._set_leverage(symbol):
                return self._abandon(step, outcome, "leverage not set")
            rules = await self._exchange.get_lot_size_rules(symbol, "futures")
            try:
                quantity = self._sizer.directional_quantity(outcome.capital, opportunity.mark_price, rules)
            except InsufficientSizeError as exc:
                return self._abandon(step, outcome, str(exc))

            self._enter(step, outcome, DeploymentState.FUTURES_LEG)
            futures_qty = await self._place_futures_with_retry(
                symbol, OrderSide.BUY, quantity, rules.step_size
            )
            outcome.futures_qty = futures_qty
            self._auditor.validate(
                step, "futures_entry", futures_qty > 0, {"requested": quantity, "futures_qty": futures_qty}
            )
            if futures_qty <= 0:
                return self._abandon(step, outcome, "futures entry failed")

            self._enter(step, outcome, DeploymentState.HEDGE_VERIFY)
            positions = await self._exchange.get_futures_positions()
            held = next(
                (p.position_amt for p in positions if p.symbol == symbol and p.position_amt != 0),
                Decimal("0"),
            )
            self._auditor.validate(step, "position_verified", held > 0, {"position_amt": held})
            if held <= 0:
                return self._fail(step, outcome, "position not visible after fill")

        except Exception as exc:
            logger.exception("directional_deployment_error", symbol=symbol)
            return self._fail(step, outcome, f"unexpected error: {exc}")

        return self._confirm(step, outcome)

    # ── close ──

    async def close(self, symbol: str) -> bool:
        """Close the futures leg, then sell the spot leg.

        Each leg is attempted independently. True when the futures leg
        closed (or there was no futures position to close).
        """
        step = StepName.POSITION_CLOSE
        self._auditor.start_step(step, {"symbol": symbol})
        base_asset = self._exchange.get_base_asset(symbol, self._settings.quote_asset)

        try:
            positions = await self._exchange.get_futures_positions()
        except Exception:
            logger.warning("close_position_read_failed", symbol=symbol, exc_info=True)
            self._auditor.abandon_step(step, "position read failed")
            return False

        position = next((p for p in positions if p.symbol == symbol and p.position_amt != 0), None)
        futures_closed = False
        closed_qty = Decimal("0")
        if position is None:
            futures_closed = True
            logger.info("close_no_futures_position", symbol=symbol)
        else:
            side = OrderSide.SELL if position.position_amt > 0 else OrderSide.BUY
            try:
                order = await self._exchange.place_futures_market_order(
                    symbol, side, abs(position.position_amt), reduce_only=True
                )
                closed_qty = order.executed_qty
                futures_closed = closed_qty > 0
            except Exception:
                logger.error("close_futures_leg_failed", symbol=symbol, exc_info=True)

        self._auditor.validate(
            step,
            "futures_closed",
            futures_closed,
            {"position_amt": position.position_amt if position else Decimal("0"), "closed_qty": closed_qty},
        )

        sold_qty = await self._sell_spot_leg(symbol, base_asset)
        self._auditor.validate(step, "spot_sold", True, {"asset": base_asset, "sold_qty": sold_qty})

        ok = self._auditor.complete_step(step, futures_closed)
        if ok:
            logger.info(
                "position_closed", symbol=symbol, futures_qty=str(closed_qty), spot_qty=str(sold_qty)
            )
            await self._events.emit(
                LifecycleEvent.POSITION_CLOSED,
                {"symbol": symbol, "futures_qty": str(closed_qty), "spot_qty": str(sold_qty)},
            )
        return ok

    async def _sell_spot_leg(self, symbol: str, base_asset: str) -> Decimal:
        """Best-effort market sell of the free spot balance of base_asset."""
        try:
            balances = await self._exchange.get_spot_balances()
            free = next((b.free for b in balances if b.asset == base_asset), Decimal("0"))
            if free <= 0:
                return Decimal("0")
            rules = await self._exchange.get_lot_size_rules(symbol, "spot")
            quantity = clamp_to_rules(free, rules)
            if quantity is None:
                logger.info("close_spot_dust_skipped", symbol=symbol, free=str(free))
                return Decimal("0")
            order = await self._exchange.place_spot_market_order(symbol, OrderSide.SELL, quantity=quantity)
            return order.executed_qty
        except Exception:
            logger.warning("close_spot_leg_failed", symbol=symbol, exc_info=True)
            return Decimal("0")

    # ── internals ──

    async def _set_leverage(self, symbol: str) -> bool:
        try:
            return await self._exchange.set_futures_leverage(symbol, self._settings.max_leverage)
        except Exception:
            logger.warning("set_leverage_failed", symbol=symbol, exc_info=True)
            return False

    async def _spot_usdt_free(self) -> Decimal:
        balances = await self._exchange.get_spot_balances()
        return next(
            (b.free for b in balances if b.asset == self._settings.quote_asset), Decimal("0")
        )

    async def _read_hedge_legs(self, symbol: str) -> tuple[Decimal, Decimal]:
        """Return (spot base balance, futures short size) as the exchange reports them."""
        base_asset = self._exchange.get_base_asset(symbol, self._settings.quote_asset)
        balances = await self._exchange.get_spot_balances()
        positions = await self._exchange.get_futures_positions()
        spot_total = sum((b.total for b in balances if b.asset == base_asset), Decimal("0"))
        short_size = sum(
            (-p.position_amt for p in positions if p.symbol == symbol and p.position_amt < 0),
            Decimal("0"),
        )
        return spot_total, short_size

    async def _ensure_spot_usdt(self, capital: Decimal) -> bool:
        available = await self._spot_usdt_free()
        if available >= capital:
            return True
        logger.info("spot_usdt_short", available=str(available), needed=str(capital))
        if self._capital_provider is None:
            return False
        await self._capital_provider()
        return await self._spot_usdt_free() >= capital

    async def _place_futures_with_retry(
        self, symbol: str, side: OrderSide, quantity: Decimal, step_size: Decimal
    ) -> Decimal:
        """Place a futures market order; one coarser retry on precision rejection.

        Returns the executed quantity (0 on failure).
        """
        try:
            order = await self._exchange.place_futures_market_order(symbol, side, quantity)
            return order.executed_qty
        except OrderRejected as exc:
            logger.warning(
                "futures_leg_rejected", symbol=symbol, quantity=str(quantity), error=str(exc), code=exc.code
            )
            if not exc.is_precision_error:
                return Decimal("0")

        retry_qty = coarsen_quantity(quantity, step_size)
        if retry_qty <= 0:
            return Decimal("0")
        logger.info("futures_leg_precision_retry", symbol=symbol, quantity=str(retry_qty))
        try:
            order = await self._exchange.place_futures_market_order(symbol, side, retry_qty)
            return order.executed_qty
        except OrderRejected as exc:
            logger.error("futures_leg_retry_failed", symbol=symbol, error=str(exc), code=exc.code)
            return Decimal("0")

    def _enter(self, step: StepName, outcome: DeploymentOutcome, state: DeploymentState) -> None:
        outcome.state = state
        self._auditor.annotate(step, state=state.value)
        logger.debug("deployment_state", symbol=outcome.symbol, state=state.value)

    def _abandon(self, step: StepName, outcome: DeploymentOutcome, reason: str) -> bool:
        outcome.failed_at = outcome.state
        outcome.state = DeploymentState.FAILED
        outcome.reason = reason
        self._auditor.annotate(step, state=DeploymentState.FAILED.value, failed_at=outcome.failed_at.value)
        logger.warning("deployment_abandoned", symbol=outcome.symbol, failed_at=outcome.failed_at.value, reason=reason)
        return self._auditor.abandon_step(step, reason)

    def _fail(self, step: StepName, outcome: DeploymentOutcome, reason: str) -> bool:
        outcome.failed_at = outcome.state
        outcome.state = DeploymentState.FAILED
        outcome.reason = reason
        self._auditor.annotate(step, state=DeploymentState.FAILED.value, failed_at=outcome.failed_at.value)
        logger.error("deployment_failed", symbol=outcome.symbol, failed_at=outcome.failed_at.value, reason=reason)
        self._auditor.complete_step(step, False)
        return False

    def _confirm(self, step: StepName, outcome: DeploymentOutcome) -> bool:
        outcome.state = DeploymentState.CONFIRMED
        self._auditor.annotate(step, state=DeploymentState.CONFIRMED.value)
        ok = self._auditor.complete_step(step, True)
        if not ok:
            outcome.state = DeploymentState.FAILED
            outcome.failed_at = DeploymentState.HEDGE_VERIFY
            return False
        logger.info(
            "deployment_confirmed",
            symbol=outcome.symbol,
            spot_qty=str(outcome.spot_qty),
            futures_qty=str(outcome.futures_qty),
            hedge_ratio=str(outcome.hedge_ratio) if outcome.hedge_ratio is not None else None,
        )
        return True
