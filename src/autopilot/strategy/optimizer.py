"""Portfolio optimizer -- the rebalance/optimization loop.

One cycle performs, in order, at most max_actions_per_cycle actions:

1. Loss-stop: close positions whose unrealized P&L is below
   -max(loss_stop_usd, loss_stop_pct * notional); the floor tightens to
   -max(ranked_loss_stop_usd, ranked_loss_stop_pct * notional) once the
   symbol ranks in the weak part of the list. The freed notional goes to
   the best unheld opportunity.
2. Stale close: close positions whose symbol left the ranked list.
3. Rebalance-to-better: if the best unheld daily_rate beats a held
   position's by more than improvement_ratio, close it and redeploy the
   notional into the better opportunity.
4. Winner scaling: add capital to profitable positions, more to
   higher-ranked ones, never past winner_max_position_fraction of total.
5. Force-deploy: top-N unheld opportunities above the daily-rate bar, or
   the best unheld one when utilization is below the floor, each get
   force_deploy_fraction of total value.

A failed action is logged and the cycle continues; completed actions are
never undone. The breaker is re-checked before every action. While it is
open only loss-stops run, as plain closes with no redeploy.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from autopilot.audit.auditor import WorkflowAuditor
from autopilot.config import OptimizationSettings, TradingSettings
from autopilot.events import EventBus, LifecycleEvent
from autopilot.exceptions import MarketDataError, PortfolioReadError
from autopilot.logging import get_logger
from autopilot.market_data.accessor import MarketDataAccessor
from autopilot.market_data.opportunity_ranker import OpportunityRanker
from autopilot.models import ActivePosition, Opportunity, PortfolioSnapshot
from autopilot.portfolio.analyzer import PortfolioAnalyzer
from autopilot.position.deployer import PositionDeployer
from autopilot.strategy.analysis import scan_opportunities

logger = get_logger(__name__)

# (rank limit, fraction of total value, USD cap) for winner scaling
_SCALING_TIERS = (
    (3, Decimal("0.05"), Decimal("30")),
    (8, Decimal("0.04"), Decimal("25")),
)
_SCALING_DEFAULT = (Decimal("0.03"), Decimal("20"))


@dataclass
class OptimizerAction:
    kind: str
    symbol: str
    success: bool
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "symbol": self.symbol,
            "success": self.success,
            "detail": {k: str(v) for k, v in self.detail.items()},
        }


@dataclass
class OptimizationResult:
    reason: str
    skipped: str | None = None
    actions: list[OptimizerAction] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for a in self.actions if a.success)


class _CycleBudget:
    """Counts attempted actions against the per-cycle cap."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.used = 0

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit


class PortfolioOptimizer:
    """Closes, replaces, scales and adds positions toward the best opportunities.

    Args:
        analyzer: Fresh portfolio snapshots.
        accessor: Fresh opportunity data.
        ranker: Opportunity ranking.
        deployer: Position deploy/close.
        auditor: Circuit breaker source.
        events: Lifecycle event bus (rebalanced).
        settings: Optimizer thresholds.
        trading: Utilization target, position floor and slot count.
    """

    def __init__(
        self,
        analyzer: PortfolioAnalyzer,
        accessor: MarketDataAccessor,
        ranker: OpportunityRanker,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        events: EventBus,
        settings: OptimizationSettings,
        trading: TradingSettings,
    ) -> None:
        self._analyzer = analyzer
        self._accessor = accessor
        self._ranker = ranker
        self._deployer = deployer
        self._auditor = auditor
        self._events = events
        self._settings = settings
        self._trading = trading

    # ── thresholds (pure) ──

    def loss_threshold(self, position: ActivePosition, rank: int | None, ranked_count: int) -> Decimal:
        """Negative P&L floor below which a position is stopped out."""
        weak = rank is not None and Decimal(rank) > self._settings.weak_rank_fraction * Decimal(ranked_count)
        if weak:
            floor = max(
                self._settings.ranked_loss_stop_usd,
                self._settings.ranked_loss_stop_pct * position.notional_usd,
            )
        else:
            floor = max(
                self._settings.loss_stop_usd,
                self._settings.loss_stop_pct * position.notional_usd,
            )
        return -floor

    def is_better(self, candidate: Opportunity, held: Opportunity) -> bool:
        return candidate.daily_rate > held.daily_rate * self._settings.improvement_ratio

    @staticmethod
    def scaling_amount(rank: int, total_value: Decimal) -> Decimal:
        """Capital to add to a winner at this rank, before the per-position cap."""
        for limit, fraction, cap in _SCALING_TIERS:
            if rank < limit:
                return min(total_value * fraction, cap)
        fraction, cap = _SCALING_DEFAULT
        return min(total_value * fraction, cap)

    # ── cycle ──

    async def run_cycle(self, reason: str = "optimization") -> OptimizationResult:
        result = OptimizationResult(reason=reason)
        if not self._auditor.is_safe_to_proceed():
            return await self._loss_stops_only(reason, result)

        try:
            snapshot = await self._analyzer.analyze()
            ranked = await scan_opportunities(self._accessor, self._ranker, self._auditor)
        except (PortfolioReadError, MarketDataError) as exc:
            logger.warning("optimization_aborted", reason=reason, error=str(exc))
            result.skipped = "read_failed"
            return result

        if not ranked:
            result.skipped = "no_opportunities"
            return result

        budget = _CycleBudget(self._settings.max_actions_per_cycle)
        held = {p.symbol for p in snapshot.active_positions}
        closed: set[str] = set()

        await self._loss_stops(snapshot, ranked, held, closed, budget, result)
        await self._stale_closes(snapshot, ranked, held, closed, budget, result)
        await self._rebalance_to_better(snapshot, ranked, held, closed, budget, result)
        await self._scale_winners(snapshot, ranked, closed, budget, result)

        if result.actions:
            try:
                snapshot = await self._analyzer.analyze()
            except PortfolioReadError as exc:
                logger.warning("optimization_reread_failed", error=str(exc))
                snapshot = None
        if snapshot is not None:
            held = {p.symbol for p in snapshot.active_positions}
            await self._force_deploy(snapshot, ranked, held, budget, result)

        logger.info(
            "optimization_cycle_complete",
            reason=reason,
            actions=len(result.actions),
            succeeded=result.succeeded,
        )
        if result.actions:
            await self._events.emit(
                LifecycleEvent.REBALANCED,
                {"reason": reason, "actions": [a.to_dict() for a in result.actions]},
            )
        return result

    async def _loss_stops_only(self, reason: str, result: OptimizationResult) -> OptimizationResult:
        """Breaker-open cycle: stop out losing positions, deploy nothing."""
        result.skipped = "breaker_open"
        logger.warning("optimization_restricted_breaker_open", reason=reason)
        try:
            snapshot = await self._analyzer.analyze()
        except PortfolioReadError as exc:
            logger.warning("optimization_aborted", reason=reason, error=str(exc))
            return result
        try:
            ranked = await scan_opportunities(self._accessor, self._ranker, self._auditor)
        except MarketDataError:
            # without ranks every position gets the standard floor
            ranked = []

        budget = _CycleBudget(self._settings.max_actions_per_cycle)
        held = {p.symbol for p in snapshot.active_positions}
        await self._loss_stops(snapshot, ranked, held, set(), budget, result, redeploy=False)
        if result.actions:
            await self._events.emit(
                LifecycleEvent.REBALANCED,
                {"reason": reason, "actions": [a.to_dict() for a in result.actions]},
            )
        return result

    # ── steps ──

    async def _loss_stops(
        self,
        snapshot: PortfolioSnapshot,
        ranked: list[Opportunity],
        held: set[str],
        closed: set[str],
        budget: _CycleBudget,
        result: OptimizationResult,
        redeploy: bool = True,
    ) -> None:
        for position in snapshot.active_positions:
            rank = self._ranker.rank_of(ranked, position.symbol)
            threshold = self.loss_threshold(position, rank, len(ranked))
            if position.unrealized_pnl >= threshold:
                continue

            replacement = self._best_unheld(ranked, held) if redeploy else None
            detail = {
                "pnl": position.unrealized_pnl,
                "threshold": threshold,
                "replacement": replacement.symbol if replacement else None,
            }
            logger.warning("loss_stop_triggered", symbol=position.symbol, **{k: str(v) for k, v in detail.items()})
            ok = await self._act(
                budget,
                result,
                "loss_stop",
                position.symbol,
                lambda p=position, r=replacement: self._close_and_redeploy(p, r, held, closed),
                detail,
                reduces_risk=True,
            )
            if ok is None:
                return

    async def _stale_closes(
        self,
        snapshot: PortfolioSnapshot,
        ranked: list[Opportunity],
        held: set[str],
        closed: set[str],
        budget: _CycleBudget,
        result: OptimizationResult,
    ) -> None:
        for position in snapshot.active_positions:
            if position.symbol in closed or self._ranker.rank_of(ranked, position.symbol) is not None:
                continue
            logger.info("closing_unranked_position", symbol=position.symbol)
            ok = await self._act(
                budget,
                result,
                "stale_close",
                position.symbol,
                lambda p=position: self._close(p, held, closed),
            )
            if ok is None:
                return

    async def _rebalance_to_better(
        self,
        snapshot: PortfolioSnapshot,
        ranked: list[Opportunity],
        held: set[str],
        closed: set[str],
        budget: _CycleBudget,
        result: OptimizationResult,
    ) -> None:
        for position in snapshot.active_positions:
            if position.symbol in closed:
                continue
            rank = self._ranker.rank_of(ranked, position.symbol)
            if rank is None:
                continue
            current = ranked[rank]
            best = self._best_unheld(ranked, held)
            if best is None:
                return
            if not self.is_better(best, current):
                continue

            detail = {
                "from_daily_rate": current.daily_rate,
                "to": best.symbol,
                "to_daily_rate": best.daily_rate,
                "notional": position.notional_usd,
            }
            logger.info("rebalancing_to_better", symbol=position.symbol, **{k: str(v) for k, v in detail.items()})
            ok = await self._act(
                budget,
                result,
                "rebalance",
                position.symbol,
                lambda p=position, b=best: self._close_and_redeploy(p, b, held, closed),
                detail,
            )
            if ok is None:
                return

    async def _scale_winners(
        self,
        snapshot: PortfolioSnapshot,
        ranked: list[Opportunity],
        closed: set[str],
        budget: _CycleBudget,
        result: OptimizationResult,
    ) -> None:
        total = snapshot.total_value
        position_cap = total * self._settings.winner_max_position_fraction
        winners = [
            p
            for p in snapshot.active_positions
            if p.symbol not in closed and p.unrealized_pnl > self._settings.winner_min_pnl
        ]
        for position in winners:
            rank = self._ranker.rank_of(ranked, position.symbol)
            if rank is None:
                continue
            room = position_cap - position.notional_usd
            amount = min(self.scaling_amount(rank, total), room)
            if amount < self._trading.min_position_size:
                continue
            opportunity = ranked[rank]
            detail = {"rank": rank, "amount": amount, "pnl": position.unrealized_pnl}
            logger.info("scaling_winner", symbol=position.symbol, **{k: str(v) for k, v in detail.items()})
            ok = await self._act(
                budget,
                result,
                "scale_winner",
                position.symbol,
                lambda o=opportunity, a=amount: self._deployer.deploy(o, a),
                detail,
            )
            if ok is None:
                return

    async def _force_deploy(
        self,
        snapshot: PortfolioSnapshot,
        ranked: list[Opportunity],
        held: set[str],
        budget: _CycleBudget,
        result: OptimizationResult,
    ) -> None:
        target_pct = self._trading.target_utilization * Decimal("100")
        under_utilized = snapshot.utilization < target_pct * self._settings.utilization_floor_ratio

        candidates = [
            o
            for o in self._ranker.top_unheld(ranked[: self._settings.force_deploy_top_n], held)
            if o.daily_rate > self._settings.force_deploy_min_daily_rate
        ]
        if not candidates and under_utilized:
            candidates = self._ranker.top_unheld(ranked, held, limit=1)
        if not candidates:
            return

        size = snapshot.total_value * self._settings.force_deploy_fraction
        if size < self._trading.min_position_size:
            logger.debug("force_deploy_size_below_minimum", size=str(size))
            return

        slots = self._trading.max_positions - len(held)
        for opportunity in candidates[: max(slots, 0)]:
            detail = {
                "amount": size,
                "daily_rate": opportunity.daily_rate,
                "utilization": round(snapshot.utilization, 2),
            }
            logger.info("force_deploying", symbol=opportunity.symbol, **{k: str(v) for k, v in detail.items()})
            ok = await self._act(
                budget,
                result,
                "force_deploy",
                opportunity.symbol,
                lambda o=opportunity: self._deployer.deploy(o, size),
                detail,
            )
            if ok is None:
                return
            if ok:
                held.add(opportunity.symbol)

    # ── helpers ──

    async def _act(
        self,
        budget: _CycleBudget,
        result: OptimizationResult,
        kind: str,
        symbol: str,
        action: Callable[[], Awaitable[bool]],
        detail: dict[str, Any] | None = None,
        reduces_risk: bool = False,
    ) -> bool | None:
        """Run one action if the budget and breaker allow it.

        Actions that only reduce exposure (loss-stop closes) run with the
        breaker open. Returns the action outcome, or None when the cycle
        must stop.
        """
        if budget.exhausted:
            logger.info("optimization_action_cap_reached", limit=budget.limit)
            return None
        if not reduces_risk and not self._auditor.is_safe_to_proceed():
            logger.warning("optimization_halted_breaker_open", pending=kind, symbol=symbol)
            return None

        if budget.used:
            await asyncio.sleep(self._settings.action_delay)
        budget.used += 1
        try:
            ok = await action()
        except Exception:
            logger.error("optimization_action_failed", kind=kind, symbol=symbol, exc_info=True)
            ok = False
        result.actions.append(OptimizerAction(kind=kind, symbol=symbol, success=ok, detail=dict(detail or {})))
        return ok

    async def _close(self, position: ActivePosition, held: set[str], closed: set[str]) -> bool:
        ok = await self._deployer.close(position.symbol)
        if ok:
            held.discard(position.symbol)
            closed.add(position.symbol)
        return ok

    async def _close_and_redeploy(
        self,
        position: ActivePosition,
        replacement: Opportunity | None,
        held: set[str],
        closed: set[str],
    ) -> bool:
        if not await self._close(position, held, closed):
            return False
        if replacement is None:
            return True
        await asyncio.sleep(self._settings.redeploy_delay)
        if await self._deployer.deploy(replacement, position.notional_usd):
            held.add(replacement.symbol)
            return True
        return False

    def _best_unheld(self, ranked: list[Opportunity], held: set[str]) -> Opportunity | None:
        unheld = self._ranker.top_unheld(ranked, held, limit=1)
        return unheld[0] if unheld else None
