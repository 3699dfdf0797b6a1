"""Engine -- wires every component and runs the periodic jobs.

Lifecycle: initialize -> run -> stop.

initialize() establishes the portfolio baseline, tops up futures margin
and runs a first deployment pass. run() hands control to the scheduler,
which runs the jobs sequentially:

  capital_deployment  fast    fill idle capital up to the utilization target
  optimization        fast    loss-stops, stale closes, upgrades, scaling
  rebalance           slow    enforce the spot/futures split, then optimize
  margin_check                keep the futures margin buffer
  reporting                   performance and audit reports
  daily_analysis              compare growth with the baseline

Capital-moving jobs are held back while the audit breaker is open.
stop() halts the scheduler and leaves positions open.
"""

import time
from dataclasses import dataclass, field
from typing import Any

from autopilot.allocation.allocator import CapitalAllocator
from autopilot.allocation.converter import AssetConverter
from autopilot.audit.auditor import AuditIssue, WorkflowAuditor, WorkflowStep
from autopilot.audit.store import AuditStore
from autopilot.config import AppSettings
from autopilot.events import EventBus, LifecycleEvent
from autopilot.exceptions import MarketDataError, PortfolioReadError
from autopilot.exchange.client import ExchangeClient
from autopilot.logging import get_logger
from autopilot.market_data.accessor import MarketDataAccessor
from autopilot.market_data.opportunity_ranker import OpportunityRanker
from autopilot.models import Opportunity, PortfolioSnapshot
from autopilot.portfolio.analyzer import PortfolioAnalyzer
from autopilot.position.deployer import PositionDeployer
from autopilot.reporting import PerformanceReporter, PerformanceStatus
from autopilot.scheduler import Clock, Scheduler, SystemClock
from autopilot.strategy.analysis import scan_opportunities
from autopilot.strategy.capital_deployment import CapitalDeploymentCycle
from autopilot.strategy.optimizer import PortfolioOptimizer

logger = get_logger(__name__)


@dataclass
class EngineState:
    """Mutable engine state, owned by one Engine and read by the dashboard."""

    mode: str
    running: bool = False
    started_at: float | None = None
    deployments_succeeded: int = 0
    deployments_failed: int = 0
    positions_closed: int = 0
    rebalances: int = 0
    critical_failures: int = 0
    last_snapshot: PortfolioSnapshot | None = None
    last_opportunities: list[Opportunity] = field(default_factory=list)
    last_snapshot_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "running": self.running,
            "started_at": self.started_at,
            "deployments_succeeded": self.deployments_succeeded,
            "deployments_failed": self.deployments_failed,
            "positions_closed": self.positions_closed,
            "rebalances": self.rebalances,
            "critical_failures": self.critical_failures,
            "last_snapshot_at": self.last_snapshot_at,
        }


class Engine:
    """The funding-rate autopilot.

    Args:
        settings: Application-wide settings.
        exchange: Connected exchange client (Binance or paper).
        clock: Scheduler clock; SystemClock in production.
        audit_store: Optional durable audit store.
    """

    def __init__(
        self,
        settings: AppSettings,
        exchange: ExchangeClient,
        clock: Clock | None = None,
        audit_store: AuditStore | None = None,
    ) -> None:
        self._settings = settings
        self._exchange = exchange
        self._clock = clock or SystemClock()
        quote = settings.trading.quote_asset

        self.state = EngineState(mode=settings.trading.mode)
        self.events = EventBus()
        self.auditor = WorkflowAuditor(settings.audit, clock=self._clock.now)
        self.analyzer = PortfolioAnalyzer(exchange, quote)
        self.accessor = MarketDataAccessor(exchange, settings.trading)
        self.ranker = OpportunityRanker()
        self.converter = AssetConverter(exchange, self.auditor, settings.allocation, quote)
        self.allocator = CapitalAllocator(
            exchange, self.analyzer, self.converter, self.auditor, settings.allocation, quote
        )
        self.deployer = PositionDeployer(
            exchange,
            self.auditor,
            self.events,
            settings.trading,
            capital_provider=self.allocator.ensure_adequate_capital,
        )
        self.deployment_cycle = CapitalDeploymentCycle(
            self.analyzer,
            self.accessor,
            self.ranker,
            self.allocator,
            self.deployer,
            self.auditor,
            settings.trading,
            settings.optimizer,
        )
        self.optimizer = PortfolioOptimizer(
            self.analyzer,
            self.accessor,
            self.ranker,
            self.deployer,
            self.auditor,
            self.events,
            settings.optimizer,
            settings.trading,
        )
        self.reporter = PerformanceReporter(
            exchange,
            self.analyzer,
            self.auditor,
            self.events,
            settings.trading,
            store=audit_store,
            clock=self._clock.now,
        )
        self.scheduler = Scheduler(
            clock=self._clock,
            is_safe=self.auditor.is_safe_to_proceed,
            tick_resolution=settings.schedule.tick_resolution,
        )

        self.auditor.on_critical(self._on_critical)
        self.auditor.on_step(self._on_step)
        self.events.subscribe(None, self._track_event)
        self._register_jobs()

    # ── lifecycle ──

    async def initialize(self) -> None:
        """Baseline, margin buffer and a first deployment pass."""
        logger.info("engine_initializing", mode=self.state.mode)
        try:
            snapshot = await self.analyzer.analyze()
            ranked = await scan_opportunities(self.accessor, self.ranker, self.auditor)
        except (PortfolioReadError, MarketDataError) as exc:
            logger.warning("baseline_deferred", error=str(exc))
        else:
            self._remember(snapshot, ranked)
            self.reporter.establish_baseline(snapshot, ranked)

        await self.allocator.ensure_margin_buffer()
        await self._deployment_job()
        logger.info("engine_initialized")

    async def run(self) -> None:
        """Initialize, then run the scheduled jobs until stop()."""
        self.state.running = True
        self.state.started_at = time.time()
        try:
            await self.initialize()
            if self.state.running:
                await self.scheduler.run_forever()
        finally:
            self.state.running = False
            await self.events.drain()
            logger.info("engine_stopped", **self.state.to_dict())

    async def stop(self) -> None:
        """Stop scheduling new work. Open positions are left in place."""
        logger.info("engine_stopping")
        self.state.running = False
        self.scheduler.stop()

    def status(self) -> dict[str, Any]:
        return {
            **self.state.to_dict(),
            "safe_to_proceed": self.auditor.is_safe_to_proceed(),
            "breaker_reopens_at": self.auditor.breaker_reopens_at(),
            "baseline": self.reporter.baseline.to_dict() if self.reporter.baseline else None,
            "jobs": [
                {
                    "name": job.name,
                    "interval": job.interval,
                    "next_run": job.next_run,
                    "runs": job.runs,
                    "failures": job.failures,
                    "skipped": job.skipped,
                }
                for job in self.scheduler.jobs
            ],
        }

    # ── jobs ──

    def _register_jobs(self) -> None:
        schedule = self._settings.schedule
        self.scheduler.add_job(
            "capital_deployment", schedule.deployment_interval, self._deployment_job, capital_moving=True
        )
        self.scheduler.add_job(
            "optimization", schedule.optimization_interval, self._optimization_job
        )
        self.scheduler.add_job(
            "rebalance", schedule.rebalance_interval, self._rebalance_job, capital_moving=True
        )
        self.scheduler.add_job(
            "margin_check", schedule.margin_check_interval, self.allocator.ensure_margin_buffer, capital_moving=True
        )
        self.scheduler.add_job("reporting", schedule.report_interval, self._reporting_job)
        self.scheduler.add_job("daily_analysis", schedule.daily_analysis_interval, self._daily_analysis_job)

    async def _deployment_job(self) -> None:
        await self.deployment_cycle.run_cycle()
        if self.deployment_cycle.last_snapshot is not None:
            self._remember(self.deployment_cycle.last_snapshot, self.deployment_cycle.last_opportunities)

    async def _optimization_job(self) -> None:
        await self.optimizer.run_cycle("optimization")

    async def _rebalance_job(self) -> None:
        await self.allocator.ensure_adequate_capital()
        await self.optimizer.run_cycle("rebalance")

    async def _reporting_job(self) -> None:
        await self.reporter.performance_report()
        await self.reporter.audit_report()

    async def _daily_analysis_job(self) -> None:
        analysis = await self.reporter.daily_analysis()
        if analysis is None or analysis.status != PerformanceStatus.SIGNIFICANTLY_UNDERPERFORMING:
            return
        if not self.auditor.is_safe_to_proceed():
            logger.warning("corrective_deployment_skipped_breaker_open")
            return
        logger.warning("underperformance_corrective_deployment")
        await self._deployment_job()

    # ── listeners ──

    def _remember(self, snapshot: PortfolioSnapshot, ranked: list[Opportunity]) -> None:
        self.state.last_snapshot = snapshot
        self.state.last_opportunities = ranked
        self.state.last_snapshot_at = snapshot.taken_at

    def _on_critical(self, issue: AuditIssue) -> None:
        self.events.emit_nowait(LifecycleEvent.CRITICAL_FAILURE, issue.to_dict())

    def _on_step(self, step: WorkflowStep) -> None:
        self.events.emit_nowait(LifecycleEvent.AUDIT_STEP, step.to_dict())

    def _track_event(self, event: LifecycleEvent, payload: dict[str, Any]) -> None:
        if event == LifecycleEvent.DEPLOYMENT_SUCCEEDED:
            self.state.deployments_succeeded += 1
        elif event == LifecycleEvent.DEPLOYMENT_FAILED:
            self.state.deployments_failed += 1
        elif event == LifecycleEvent.POSITION_CLOSED:
            self.state.positions_closed += 1
        elif event == LifecycleEvent.REBALANCED:
            self.state.rebalances += 1
        elif event == LifecycleEvent.CRITICAL_FAILURE:
            self.state.critical_failures += 1
