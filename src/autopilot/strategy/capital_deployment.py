"""Capital deployment cycle -- fills idle capital up to the utilization target.

Each tick:

1. Enforce the spot/futures split (CapitalAllocator.ensure_adequate_capital).
2. Take a fresh snapshot and a fresh ranked opportunity list.
3. Stop if utilization is already within 95% of target.
4. Compute the gap: total_value * target_utilization - deployed_capital.
5. Size each new position as
   max(min_position_size, min(gap / free_slots, futures_available * 0.8, total_value * 0.12))
6. Deploy into the top-ranked unheld opportunities, one free slot each,
   pausing between deployments and re-checking the circuit breaker.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal

from autopilot.allocation.allocator import CapitalAllocator
from autopilot.audit.auditor import WorkflowAuditor
from autopilot.config import OptimizationSettings, TradingSettings
from autopilot.exceptions import MarketDataError, PortfolioReadError
from autopilot.logging import get_logger
from autopilot.market_data.accessor import MarketDataAccessor
from autopilot.market_data.opportunity_ranker import OpportunityRanker
from autopilot.models import Opportunity, PortfolioSnapshot
from autopilot.portfolio.analyzer import PortfolioAnalyzer
from autopilot.position.deployer import PositionDeployer
from autopilot.strategy.analysis import scan_opportunities

logger = get_logger(__name__)

_CENT = Decimal("0.01")
_UTILIZATION_HEADROOM = Decimal("0.95")  # stop once within 95% of target
_FUTURES_AVAILABLE_CAP = Decimal("0.8")
_TOTAL_VALUE_CAP = Decimal("0.12")


@dataclass
class DeploymentCycleResult:
    skipped: str | None = None
    position_size: Decimal = Decimal("0")
    attempted: list[str] = field(default_factory=list)
    deployed: list[str] = field(default_factory=list)


class CapitalDeploymentCycle:
    """Deploys idle capital into the best unheld opportunities.

    Args:
        analyzer: Fresh portfolio snapshots.
        accessor: Fresh opportunity data.
        ranker: Opportunity ranking.
        allocator: Spot/futures split enforcement before sizing.
        deployer: Two-legged position deployment.
        auditor: Circuit breaker source.
        trading: Utilization target, position floor and slot count.
        optimizer: Pause between consecutive deployments.
    """

    def __init__(
        self,
        analyzer: PortfolioAnalyzer,
        accessor: MarketDataAccessor,
        ranker: OpportunityRanker,
        allocator: CapitalAllocator,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        trading: TradingSettings,
        optimizer: OptimizationSettings,
    ) -> None:
        self._analyzer = analyzer
        self._accessor = accessor
        self._ranker = ranker
        self._allocator = allocator
        self._deployer = deployer
        self._auditor = auditor
        self._trading = trading
        self._optimizer = optimizer
        self.last_snapshot: PortfolioSnapshot | None = None
        self.last_opportunities: list[Opportunity] = []

    def position_size(self, snapshot: PortfolioSnapshot, gap: Decimal, free_slots: int) -> Decimal:
        """Per-position capital for this cycle, floored to the cent."""
        per_slot = gap / Decimal(free_slots)
        ceiling = min(
            snapshot.futures_usdt_available * _FUTURES_AVAILABLE_CAP,
            snapshot.total_value * _TOTAL_VALUE_CAP,
        )
        size = max(self._trading.min_position_size, min(per_slot, ceiling))
        return size.quantize(_CENT, rounding=ROUND_DOWN)

    async def run_cycle(self) -> DeploymentCycleResult:
        result = DeploymentCycleResult()
        if not self._auditor.is_safe_to_proceed():
            result.skipped = "breaker_open"
            return result

        await self._allocator.ensure_adequate_capital()

        try:
            snapshot = await self._analyzer.analyze()
            ranked = await scan_opportunities(self._accessor, self._ranker, self._auditor)
        except (PortfolioReadError, MarketDataError) as exc:
            logger.warning("deployment_cycle_aborted", error=str(exc))
            result.skipped = "read_failed"
            return result
        self.last_snapshot = snapshot
        self.last_opportunities = ranked

        target_pct = self._trading.target_utilization * Decimal("100")
        if snapshot.utilization >= target_pct * _UTILIZATION_HEADROOM:
            logger.debug(
                "utilization_at_target",
                utilization=str(round(snapshot.utilization, 2)),
                target=str(target_pct),
            )
            result.skipped = "at_target"
            return result

        gap = snapshot.total_value * self._trading.target_utilization - snapshot.deployed_capital
        if gap < self._trading.min_position_size:
            result.skipped = "gap_below_minimum"
            return result

        free_slots = self._trading.max_positions - len(snapshot.active_positions)
        if free_slots <= 0:
            logger.info("no_free_position_slots", positions=len(snapshot.active_positions))
            result.skipped = "no_free_slots"
            return result

        held = {p.symbol for p in snapshot.active_positions}
        candidates = self._ranker.top_unheld(ranked, held, limit=free_slots)
        if not candidates:
            result.skipped = "no_candidates"
            return result

        size = self.position_size(snapshot, gap, free_slots)
        result.position_size = size
        logger.info(
            "deploying_idle_capital",
            gap=str(gap.quantize(_CENT, rounding=ROUND_DOWN)),
            free_slots=free_slots,
            position_size=str(size),
            candidates=[c.symbol for c in candidates],
        )

        for index, opportunity in enumerate(candidates):
            if not self._auditor.is_safe_to_proceed():
                logger.warning("deployment_cycle_halted_breaker_open")
                break
            if index:
                await asyncio.sleep(self._optimizer.action_delay)
            result.attempted.append(opportunity.symbol)
            if await self._deployer.deploy(opportunity, size):
                result.deployed.append(opportunity.symbol)

        logger.info(
            "deployment_cycle_complete",
            attempted=len(result.attempted),
            deployed=len(result.deployed),
        )
        return result
