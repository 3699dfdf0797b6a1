"""Tests for the Engine -- wiring, initialization, jobs and lifecycle."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from autopilot.audit.auditor import StepName
from autopilot.config import AppSettings
from autopilot.engine import Engine
from autopilot.exchange.paper_client import PaperExchangeClient
from autopilot.reporting import Baseline, DailyAnalysis, PerformanceStatus


@pytest.fixture
def engine(mock_settings: AppSettings, paper: PaperExchangeClient, clock) -> Engine:
    paper.deposit("USDT", Decimal("550"))
    paper.set_futures_wallet(Decimal("450"))
    return Engine(mock_settings, paper, clock=clock)


def _job(engine: Engine, name: str):
    return next(job for job in engine.scheduler.jobs if job.name == name)


def _analysis(status: PerformanceStatus) -> DailyAnalysis:
    return DailyAnalysis(
        days_since_baseline=3,
        baseline_value=Decimal("1000"),
        current_value=Decimal("1000"),
        actual_growth=Decimal("0"),
        expected_growth=Decimal("5"),
        performance_ratio=Decimal("0"),
        status=status,
    )


class TestWiring:
    def test_jobs_registered(self, engine: Engine) -> None:
        names = {job.name: job.capital_moving for job in engine.scheduler.jobs}
        assert names == {
            "capital_deployment": True,
            "optimization": False,
            "rebalance": True,
            "margin_check": True,
            "reporting": False,
            "daily_analysis": False,
        }

    def test_status_shape(self, engine: Engine) -> None:
        status = engine.status()
        assert status["mode"] == "paper"
        assert status["running"] is False
        assert status["safe_to_proceed"] is True
        assert status["breaker_reopens_at"] is None
        assert status["baseline"] is None
        assert len(status["jobs"]) == 6


class TestInitialize:
    @pytest.mark.asyncio()
    async def test_baseline_and_first_deployment(self, engine: Engine, paper: PaperExchangeClient) -> None:
        await engine.initialize()
        await engine.events.drain()

        baseline = engine.reporter.baseline
        assert baseline is not None
        assert baseline.portfolio_value == Decimal("1000")
        assert baseline.expected_daily_roi == Decimal("0.135")
        assert engine.state.deployments_succeeded == 2
        assert {p.symbol for p in await paper.get_futures_positions()} == {"BTCUSDT", "ETHUSDT"}
        assert engine.state.last_snapshot is not None

    @pytest.mark.asyncio()
    async def test_market_data_outage_defers_baseline(self, engine: Engine, paper: PaperExchangeClient) -> None:
        paper.get_mark_prices_and_funding = AsyncMock(side_effect=ConnectionError("down"))  # type: ignore[method-assign]

        await engine.initialize()

        assert engine.reporter.baseline is None
        assert engine.state.deployments_succeeded == 0


class TestListeners:
    @pytest.mark.asyncio()
    async def test_critical_failure_counted(self, engine: Engine) -> None:
        engine.auditor.start_step(StepName.CAPITAL_ALLOCATION)
        engine.auditor.complete_step(StepName.CAPITAL_ALLOCATION, True)
        await engine.events.drain()

        assert engine.state.critical_failures == 1
        kinds = [e["event"] for e in engine.events.history]
        assert "criticalFailure" in kinds
        assert "auditStep" in kinds
        assert engine.status()["safe_to_proceed"] is False


class TestJobs:
    @pytest.mark.asyncio()
    async def test_capital_jobs_skipped_while_breaker_open(self, engine: Engine, clock) -> None:
        engine.auditor.start_step(StepName.CAPITAL_ALLOCATION)
        engine.auditor.complete_step(StepName.CAPITAL_ALLOCATION, True)
        clock.advance(30)

        assert await engine.scheduler.run_pending() == []
        assert _job(engine, "capital_deployment").skipped == 1

    @pytest.mark.asyncio()
    async def test_optimization_runs_loss_stops_while_breaker_open(self, engine: Engine, clock) -> None:
        engine.optimizer.run_cycle = AsyncMock()  # type: ignore[method-assign]
        engine.auditor.start_step(StepName.CAPITAL_ALLOCATION)
        engine.auditor.complete_step(StepName.CAPITAL_ALLOCATION, True)
        clock.advance(60)

        assert await engine.scheduler.run_pending() == ["optimization"]
        engine.optimizer.run_cycle.assert_awaited_once_with("optimization")
        assert _job(engine, "capital_deployment").skipped == 1

    @pytest.mark.asyncio()
    async def test_underperformance_triggers_deployment(self, engine: Engine) -> None:
        engine.reporter.daily_analysis = AsyncMock(  # type: ignore[method-assign]
            return_value=_analysis(PerformanceStatus.SIGNIFICANTLY_UNDERPERFORMING)
        )
        engine.deployment_cycle.run_cycle = AsyncMock()  # type: ignore[method-assign]

        await _job(engine, "daily_analysis").func()

        engine.deployment_cycle.run_cycle.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_meeting_expectations_no_action(self, engine: Engine) -> None:
        engine.reporter.daily_analysis = AsyncMock(  # type: ignore[method-assign]
            return_value=_analysis(PerformanceStatus.MEETING)
        )
        engine.deployment_cycle.run_cycle = AsyncMock()  # type: ignore[method-assign]

        await _job(engine, "daily_analysis").func()

        engine.deployment_cycle.run_cycle.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_reporting_job(self, engine: Engine) -> None:
        engine.reporter.baseline = Baseline(Decimal("1000"), Decimal("0"), Decimal("0.1"), 0.0)

        await _job(engine, "reporting").func()

        assert engine.reporter.last_report is not None
        assert engine.reporter.last_report["baseline"]["portfolio_value"] == "1000"


class TestLifecycle:
    @pytest.mark.asyncio()
    async def test_run_until_stopped(self, engine: Engine) -> None:
        engine.scheduler.add_job("stopper", 1, engine.stop)

        await engine.run()

        assert engine.state.running is False
        assert engine.state.started_at is not None
        assert engine.reporter.baseline is not None
        assert not engine.scheduler.is_running
