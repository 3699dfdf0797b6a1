"""Performance, audit and daily-analysis reporting.

Expected income of the open book is Σ notional * |funding_rate| * 3 per
day. The baseline records portfolio value and the expected daily ROI of
the opportunity set at startup: the mean daily_rate of the top
min(max_positions, n) opportunities, each given an equal share of the
target deployment. Daily analysis compounds that ROI over whole days
since the baseline and compares actual against expected growth.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from autopilot.audit.auditor import WorkflowAuditor
from autopilot.audit.store import AuditStore
from autopilot.config import TradingSettings
from autopilot.events import EventBus, LifecycleEvent
from autopilot.exchange.client import ExchangeClient
from autopilot.logging import get_logger
from autopilot.models import Opportunity, PortfolioSnapshot
from autopilot.portfolio.analyzer import PortfolioAnalyzer

logger = get_logger(__name__)

_FUNDING_PERIODS_PER_DAY = Decimal("3")
_SECONDS_PER_DAY = 86400
_AUDIT_ERROR_ALERT_THRESHOLD = 5


class PerformanceStatus(str, Enum):
    EXCEEDING = "EXCEEDING_EXPECTATIONS"
    MEETING = "MEETING_EXPECTATIONS"
    BELOW = "BELOW_EXPECTATIONS"
    SIGNIFICANTLY_UNDERPERFORMING = "SIGNIFICANTLY_UNDERPERFORMING"

    @classmethod
    def from_ratio(cls, ratio: Decimal) -> "PerformanceStatus":
        if ratio >= Decimal("1.1"):
            return cls.EXCEEDING
        if ratio >= Decimal("0.9"):
            return cls.MEETING
        if ratio >= Decimal("0.7"):
            return cls.BELOW
        return cls.SIGNIFICANTLY_UNDERPERFORMING


@dataclass
class Baseline:
    portfolio_value: Decimal
    deployed_capital: Decimal
    expected_daily_roi: Decimal  # percent per day
    established_at: float

    @property
    def expected_daily_usd(self) -> Decimal:
        return self.portfolio_value * self.expected_daily_roi / Decimal("100")

    def to_dict(self) -> dict[str, Any]:
        return {
            "portfolio_value": str(self.portfolio_value),
            "deployed_capital": str(self.deployed_capital),
            "expected_daily_roi": str(self.expected_daily_roi),
            "expected_daily_usd": str(self.expected_daily_usd),
            "established_at": self.established_at,
        }


@dataclass
class DailyAnalysis:
    days_since_baseline: int
    baseline_value: Decimal
    current_value: Decimal
    actual_growth: Decimal
    expected_growth: Decimal
    performance_ratio: Decimal
    status: PerformanceStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "days_since_baseline": self.days_since_baseline,
            "baseline_value": str(self.baseline_value),
            "current_value": str(self.current_value),
            "actual_growth": str(self.actual_growth),
            "expected_growth": str(self.expected_growth),
            "performance_ratio": str(self.performance_ratio),
            "status": self.status.value,
        }


def expected_daily_roi(ranked: list[Opportunity], max_positions: int) -> Decimal:
    """Mean daily_rate (percent) over the top min(max_positions, n) opportunities."""
    top = ranked[: min(max_positions, len(ranked))]
    if not top:
        return Decimal("0")
    return sum((o.daily_rate for o in top), Decimal("0")) / Decimal(len(top))


def analyze_performance(baseline: Baseline, current_value: Decimal, now: float) -> DailyAnalysis:
    """Compare actual growth since the baseline with compounded expected growth."""
    days = max(0, int((now - baseline.established_at) // _SECONDS_PER_DAY))
    growth_factor = (Decimal("1") + baseline.expected_daily_roi / Decimal("100")) ** days
    expected_value = baseline.portfolio_value * growth_factor
    actual_growth = current_value - baseline.portfolio_value
    expected_growth = expected_value - baseline.portfolio_value
    ratio = actual_growth / expected_growth if expected_growth != 0 else Decimal("1")
    return DailyAnalysis(
        days_since_baseline=days,
        baseline_value=baseline.portfolio_value,
        current_value=current_value,
        actual_growth=actual_growth,
        expected_growth=expected_growth,
        performance_ratio=ratio,
        status=PerformanceStatus.from_ratio(ratio),
    )


class PerformanceReporter:
    """Builds the periodic reports and publishes them as lifecycle events.

    Args:
        exchange: Exchange client (funding rates for expected income).
        analyzer: Fresh portfolio snapshots.
        auditor: Audit ledger to report on and truncate.
        events: Lifecycle event bus.
        settings: Trading settings (max_positions for expected ROI).
        store: Optional durable audit store flushed on each audit report.
        clock: Unix time source.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        analyzer: PortfolioAnalyzer,
        auditor: WorkflowAuditor,
        events: EventBus,
        settings: TradingSettings,
        store: AuditStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._analyzer = analyzer
        self._auditor = auditor
        self._events = events
        self._settings = settings
        self._store = store
        self._clock = clock
        self.baseline: Baseline | None = None
        self.last_report: dict[str, Any] | None = None
        self.last_analysis: DailyAnalysis | None = None

    def establish_baseline(self, snapshot: PortfolioSnapshot, ranked: list[Opportunity]) -> Baseline:
        self.baseline = Baseline(
            portfolio_value=snapshot.total_value,
            deployed_capital=snapshot.deployed_capital,
            expected_daily_roi=expected_daily_roi(ranked, self._settings.max_positions),
            established_at=self._clock(),
        )
        logger.info("portfolio_baseline_established", **self.baseline.to_dict())
        return self.baseline

    async def performance_report(self) -> dict[str, Any]:
        """Value, utilization and expected funding income of the open book."""
        snapshot = await self._analyzer.analyze()
        marks = await self._exchange.get_mark_prices_and_funding()
        rates = {m.symbol: m.funding_rate for m in marks}

        expected_income = sum(
            (
                p.notional_usd * abs(rates.get(p.symbol, Decimal("0"))) * _FUNDING_PERIODS_PER_DAY
                for p in snapshot.active_positions
            ),
            Decimal("0"),
        )
        total = snapshot.total_value
        roi = expected_income / total * Decimal("100") if total > 0 else Decimal("0")

        report = {
            "timestamp": self._clock(),
            "total_value": str(total),
            "deployed_capital": str(snapshot.deployed_capital),
            "utilization": str(round(snapshot.utilization, 2)),
            "positions": len(snapshot.active_positions),
            "unrealized_pnl": str(snapshot.total_pnl),
            "expected_daily_income": str(expected_income),
            "expected_daily_roi": str(roi),
            "baseline": self.baseline.to_dict() if self.baseline else None,
        }
        self.last_report = report
        logger.info(
            "performance_report",
            total_value=report["total_value"],
            utilization=report["utilization"],
            positions=report["positions"],
            expected_daily_income=report["expected_daily_income"],
        )
        await self._events.emit(LifecycleEvent.PERFORMANCE_REPORT, report)
        return report

    async def audit_report(self) -> dict[str, Any]:
        """Publish the audit summary, alert on problems, persist and truncate."""
        report = self._auditor.generate_report()
        summary = report["summary"]
        if summary["critical_failures"] > 0 or summary["validation_errors"] > _AUDIT_ERROR_ALERT_THRESHOLD:
            logger.warning(
                "audit_alert",
                critical_failures=summary["critical_failures"],
                validation_errors=summary["validation_errors"],
                integrity=report["integrity"],
            )
            await self._events.emit(
                LifecycleEvent.AUDIT_ALERT,
                {
                    "summary": summary,
                    "integrity": report["integrity"],
                    "critical_failures": report["critical_failures"][-5:],
                    "safe_to_proceed": report["safe_to_proceed"],
                },
            )

        if self._store is not None:
            written = await self._store.append(self._auditor.drain_completed())
            logger.debug("audit_steps_persisted", count=written)
        self._auditor.maybe_truncate()
        return report

    async def daily_analysis(self) -> DailyAnalysis | None:
        """Compare current value with the baseline; establishes one if missing."""
        snapshot = await self._analyzer.analyze()
        if self.baseline is None:
            logger.warning("no_baseline_for_daily_analysis")
            self.establish_baseline(snapshot, [])
            return None

        analysis = analyze_performance(self.baseline, snapshot.total_value, self._clock())
        self.last_analysis = analysis
        log = logger.warning if analysis.status == PerformanceStatus.SIGNIFICANTLY_UNDERPERFORMING else logger.info
        log("daily_performance_analysis", **analysis.to_dict())
        await self._events.emit(LifecycleEvent.PERFORMANCE_REPORT, {"daily_analysis": analysis.to_dict()})
        return analysis
