"""Shared test fixtures for the funding autopilot."""

from decimal import Decimal

import pytest

from autopilot.allocation.allocator import CapitalAllocator
from autopilot.allocation.converter import AssetConverter
from autopilot.audit.auditor import WorkflowAuditor
from autopilot.config import (
    AllocationSettings,
    AppSettings,
    AuditSettings,
    ExchangeSettings,
    OptimizationSettings,
    ScheduleSettings,
    TradingSettings,
)
from autopilot.events import EventBus
from autopilot.exchange.paper_client import PaperExchangeClient
from autopilot.portfolio.analyzer import PortfolioAnalyzer
from autopilot.position.deployer import PositionDeployer


class FakeClock:
    """Manually advanced clock; sleep() advances time instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def trading_settings() -> TradingSettings:
    return TradingSettings(mode="paper", leg_settle_delay=0)


@pytest.fixture
def allocation_settings() -> AllocationSettings:
    return AllocationSettings(transfer_settle_delay=0, conversion_delay=0)


@pytest.fixture
def optimizer_settings() -> OptimizationSettings:
    return OptimizationSettings(action_delay=0, redeploy_delay=0)


@pytest.fixture
def audit_settings() -> AuditSettings:
    return AuditSettings()


@pytest.fixture
def mock_settings(
    trading_settings: TradingSettings,
    allocation_settings: AllocationSettings,
    optimizer_settings: OptimizationSettings,
    audit_settings: AuditSettings,
) -> AppSettings:
    """AppSettings with zero delays, paper mode and dummy API keys."""
    return AppSettings(
        log_level="DEBUG",
        exchange=ExchangeSettings(
            api_key="test-api-key",  # type: ignore[arg-type]
            api_secret="test-api-secret",  # type: ignore[arg-type]
            testnet=True,
        ),
        trading=trading_settings,
        allocation=allocation_settings,
        optimizer=optimizer_settings,
        schedule=ScheduleSettings(),
        audit=audit_settings,
    )


@pytest.fixture
def paper() -> PaperExchangeClient:
    """Paper exchange with BTC and ETH listed and an empty account."""
    client = PaperExchangeClient(default_leverage=3)
    client.list_market(
        "BTCUSDT", "BTC", Decimal("10000"), funding_rate=Decimal("-0.0006"), volume_24h=Decimal("2000000")
    )
    client.list_market(
        "ETHUSDT", "ETH", Decimal("2000"), funding_rate=Decimal("0.0003"), volume_24h=Decimal("500000")
    )
    return client


@pytest.fixture
def auditor(audit_settings: AuditSettings, clock: FakeClock) -> WorkflowAuditor:
    return WorkflowAuditor(audit_settings, clock=clock.now)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def analyzer(paper: PaperExchangeClient) -> PortfolioAnalyzer:
    return PortfolioAnalyzer(paper)


@pytest.fixture
def converter(
    paper: PaperExchangeClient, auditor: WorkflowAuditor, allocation_settings: AllocationSettings
) -> AssetConverter:
    return AssetConverter(paper, auditor, allocation_settings)


@pytest.fixture
def allocator(
    paper: PaperExchangeClient,
    analyzer: PortfolioAnalyzer,
    converter: AssetConverter,
    auditor: WorkflowAuditor,
    allocation_settings: AllocationSettings,
) -> CapitalAllocator:
    return CapitalAllocator(paper, analyzer, converter, auditor, allocation_settings)


@pytest.fixture
def deployer(
    paper: PaperExchangeClient,
    auditor: WorkflowAuditor,
    events: EventBus,
    trading_settings: TradingSettings,
) -> PositionDeployer:
    return PositionDeployer(paper, auditor, events, trading_settings)
