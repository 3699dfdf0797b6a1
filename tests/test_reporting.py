"""Tests for performance reporting, audit alerts and daily analysis."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from autopilot.audit.auditor import StepName, WorkflowAuditor
from autopilot.config import TradingSettings
from autopilot.events import EventBus, LifecycleEvent
from autopilot.exchange.paper_client import PaperExchangeClient
from autopilot.models import Opportunity
from autopilot.portfolio.analyzer import PortfolioAnalyzer
from autopilot.reporting import (
    Baseline,
    PerformanceReporter,
    PerformanceStatus,
    analyze_performance,
    expected_daily_roi,
)

_DAY = 86400


def _opp(symbol: str, rate: str) -> Opportunity:
    return Opportunity.from_market(symbol, Decimal(rate), Decimal("100"), Decimal("1000000"))


@pytest.fixture
def reporter(
    paper: PaperExchangeClient,
    analyzer: PortfolioAnalyzer,
    auditor: WorkflowAuditor,
    events: EventBus,
    trading_settings: TradingSettings,
    clock,
) -> PerformanceReporter:
    paper.deposit("USDT", Decimal("1000"))
    paper.set_futures_wallet(Decimal("1000"))
    return PerformanceReporter(paper, analyzer, auditor, events, trading_settings, clock=clock.now)


class TestExpectedRoi:
    def test_mean_of_top_positions(self) -> None:
        ranked = [_opp("BTCUSDT", "-0.0006"), _opp("ETHUSDT", "0.0003"), _opp("SOLUSDT", "-0.0001")]
        assert expected_daily_roi(ranked, 2) == Decimal("0.135")

    def test_fewer_opportunities_than_slots(self) -> None:
        assert expected_daily_roi([_opp("BTCUSDT", "-0.0006")], 12) == Decimal("0.18")

    def test_empty(self) -> None:
        assert expected_daily_roi([], 12) == Decimal("0")


class TestAnalyzePerformance:
    def _baseline(self) -> Baseline:
        return Baseline(
            portfolio_value=Decimal("1000"),
            deployed_capital=Decimal("0"),
            expected_daily_roi=Decimal("1"),
            established_at=0.0,
        )

    def test_meeting_expectations(self) -> None:
        analysis = analyze_performance(self._baseline(), Decimal("1020.1"), 2 * _DAY + 3600)
        assert analysis.days_since_baseline == 2
        assert analysis.expected_growth == Decimal("20.1")
        assert analysis.performance_ratio == Decimal("1")
        assert analysis.status == PerformanceStatus.MEETING

    def test_no_growth_is_significant_underperformance(self) -> None:
        analysis = analyze_performance(self._baseline(), Decimal("1000"), 2 * _DAY)
        assert analysis.status == PerformanceStatus.SIGNIFICANTLY_UNDERPERFORMING

    def test_first_day_ratio_is_one(self) -> None:
        analysis = analyze_performance(self._baseline(), Decimal("990"), 3600)
        assert analysis.days_since_baseline == 0
        assert analysis.performance_ratio == Decimal("1")

    @pytest.mark.parametrize(
        ("ratio", "status"),
        [
            ("1.1", PerformanceStatus.EXCEEDING),
            ("0.9", PerformanceStatus.MEETING),
            ("0.7", PerformanceStatus.BELOW),
            ("0.69", PerformanceStatus.SIGNIFICANTLY_UNDERPERFORMING),
        ],
    )
    def test_status_boundaries(self, ratio: str, status: PerformanceStatus) -> None:
        assert PerformanceStatus.from_ratio(Decimal(ratio)) == status


class TestPerformanceReporter:
    @pytest.mark.asyncio()
    async def test_performance_report_income(
        self, reporter: PerformanceReporter, paper: PaperExchangeClient, events: EventBus
    ) -> None:
        paper.open_position("BTCUSDT", Decimal("-0.01"), Decimal("10000"))

        report = await reporter.performance_report()

        # 100 notional * 0.0006 * 3 periods
        assert Decimal(report["expected_daily_income"]) == Decimal("0.18")
        assert report["positions"] == 1
        assert events.history[-1]["event"] == LifecycleEvent.PERFORMANCE_REPORT.value
        assert reporter.last_report is report

    @pytest.mark.asyncio()
    async def test_audit_report_alerts_on_critical(
        self, reporter: PerformanceReporter, auditor: WorkflowAuditor, events: EventBus
    ) -> None:
        auditor.start_step(StepName.CAPITAL_ALLOCATION)
        auditor.complete_step(StepName.CAPITAL_ALLOCATION, True)

        report = await reporter.audit_report()

        assert report["integrity"] == "COMPROMISED"
        alerts = [e for e in events.history if e["event"] == LifecycleEvent.AUDIT_ALERT.value]
        assert alerts[0]["payload"]["safe_to_proceed"] is False

    @pytest.mark.asyncio()
    async def test_audit_report_quiet_when_clean(
        self, reporter: PerformanceReporter, events: EventBus
    ) -> None:
        await reporter.audit_report()
        assert events.history == []

    @pytest.mark.asyncio()
    async def test_audit_report_persists_completed_steps(
        self,
        paper: PaperExchangeClient,
        analyzer: PortfolioAnalyzer,
        auditor: WorkflowAuditor,
        events: EventBus,
        trading_settings: TradingSettings,
    ) -> None:
        store = AsyncMock()
        store.append.return_value = 1
        reporter = PerformanceReporter(paper, analyzer, auditor, events, trading_settings, store=store)
        auditor.start_step(StepName.POSITION_CLOSE)
        auditor.validate(StepName.POSITION_CLOSE, "futures_closed", True)
        auditor.complete_step(StepName.POSITION_CLOSE, True)

        await reporter.audit_report()

        persisted = store.append.await_args.args[0]
        assert [s.step_name for s in persisted] == [StepName.POSITION_CLOSE]

    @pytest.mark.asyncio()
    async def test_daily_analysis_without_baseline(self, reporter: PerformanceReporter) -> None:
        assert await reporter.daily_analysis() is None
        assert reporter.baseline is not None
        assert reporter.baseline.portfolio_value == Decimal("2000")

    @pytest.mark.asyncio()
    async def test_daily_analysis_flat_portfolio(
        self, reporter: PerformanceReporter, analyzer: PortfolioAnalyzer, clock
    ) -> None:
        reporter.establish_baseline(await analyzer.analyze(), [_opp("BTCUSDT", "-0.0006")])
        clock.advance(2 * _DAY)

        analysis = await reporter.daily_analysis()

        assert analysis is not None
        assert analysis.days_since_baseline == 2
        assert analysis.status == PerformanceStatus.SIGNIFICANTLY_UNDERPERFORMING
        assert reporter.last_analysis is analysis
