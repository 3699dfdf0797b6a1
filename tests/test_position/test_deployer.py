"""Tests for PositionDeployer -- the two-legged entry state machine and close.

Runs against the paper exchange with BTC spot stepped at 0.00001 and BTC
futures at the default 0.0001, so a $100 deployment fills 0.01 BTC spot
and hedges 0.0095 on futures.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from autopilot.allocation.allocator import CapitalAllocator
from autopilot.audit.auditor import StepName, WorkflowAuditor
from autopilot.events import EventBus, LifecycleEvent
from autopilot.exceptions import OrderRejected
from autopilot.exchange.paper_client import PaperExchangeClient
from autopilot.exchange.types import LotSizeRules
from autopilot.models import FuturesOrderResult, Opportunity, OrderSide, SpotOrderResult
from autopilot.position.deployer import DeploymentState, PositionDeployer


@pytest.fixture
def btc() -> Opportunity:
    return Opportunity.from_market(
        symbol="BTCUSDT",
        funding_rate=Decimal("-0.0006"),
        mark_price=Decimal("10000"),
        volume_usd=Decimal("2000000"),
        base_asset="BTC",
    )


@pytest.fixture
def eth() -> Opportunity:
    return Opportunity.from_market(
        symbol="ETHUSDT",
        funding_rate=Decimal("0.0003"),
        mark_price=Decimal("2000"),
        volume_usd=Decimal("500000"),
        base_asset="ETH",
    )


@pytest.fixture
def funded(paper: PaperExchangeClient) -> PaperExchangeClient:
    paper.deposit("USDT", Decimal("500"))
    paper.set_futures_wallet(Decimal("500"))
    paper.set_lot_size(
        "spot", LotSizeRules("BTCUSDT", Decimal("0.00001"), Decimal("9000"), Decimal("0.00001"))
    )
    return paper


def _events_of(events: EventBus, event: LifecycleEvent) -> list[dict]:
    return [e["payload"] for e in events.history if e["event"] == event.value]


class TestDeltaNeutralDeployment:
    @pytest.mark.asyncio()
    async def test_confirmed(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        events: EventBus,
        btc: Opportunity,
    ) -> None:
        assert await deployer.deploy(btc, Decimal("100")) is True

        outcome = deployer.last_outcome
        assert outcome is not None
        assert outcome.state == DeploymentState.CONFIRMED
        assert outcome.spot_qty == Decimal("0.01")
        assert outcome.futures_qty == Decimal("0.0095")
        # measured against the base balance actually credited (fill less fee)
        assert outcome.hedge_ratio == Decimal("0.0095") / Decimal("0.00999")

        positions = await funded.get_futures_positions()
        assert positions[0].position_amt == Decimal("-0.0095")
        step = auditor.current_step(StepName.POSITION_DEPLOYMENT)
        assert step is not None and step.success
        assert step.context["state"] == "CONFIRMED"
        assert _events_of(events, LifecycleEvent.DEPLOYMENT_SUCCEEDED)[0]["symbol"] == "BTCUSDT"

    @pytest.mark.asyncio()
    async def test_precision_rejected_twice_fails_at_futures_leg(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        events: EventBus,
        btc: Opportunity,
    ) -> None:
        futures_order = AsyncMock(
            side_effect=OrderRejected("Precision is over the maximum defined for this asset.", code="-1111")
        )
        funded.place_futures_market_order = futures_order  # type: ignore[method-assign]

        assert await deployer.deploy(btc, Decimal("100")) is False

        quantities = [c.args[2] for c in futures_order.await_args_list]
        assert quantities == [Decimal("0.0095"), Decimal("0.009")]
        outcome = deployer.last_outcome
        assert outcome is not None
        assert outcome.state == DeploymentState.FAILED
        assert outcome.failed_at == DeploymentState.FUTURES_LEG
        assert outcome.spot_qty == Decimal("0.01")

        step = auditor.current_step(StepName.POSITION_DEPLOYMENT)
        assert step is not None
        assert step.context["unhedged_spot_qty"] == Decimal("0.01")
        assert len(auditor.critical_failures) == 1
        assert not auditor.is_safe_to_proceed()
        assert _events_of(events, LifecycleEvent.DEPLOYMENT_FAILED)[0]["failed_at"] == "FUTURES_LEG"

    @pytest.mark.asyncio()
    async def test_reported_fill_without_position_fails(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        btc: Opportunity,
    ) -> None:
        funded.place_futures_market_order = AsyncMock(  # type: ignore[method-assign]
            return_value=FuturesOrderResult(
                order_id="7",
                symbol="BTCUSDT",
                side=OrderSide.SELL,
                executed_qty=Decimal("0.0095"),
                avg_price=Decimal("10000"),
            )
        )

        assert await deployer.deploy(btc, Decimal("100")) is False

        outcome = deployer.last_outcome
        assert outcome is not None
        assert outcome.failed_at == DeploymentState.HEDGE_VERIFY
        assert outcome.reason == "hedge not visible on exchange"
        assert outcome.futures_qty == Decimal("0.0095")
        assert await funded.get_futures_positions() == []
        step = auditor.current_step(StepName.POSITION_DEPLOYMENT)
        assert step is not None
        assert step.context["unhedged_spot_qty"] == Decimal("0.00999")
        assert not auditor.is_safe_to_proceed()

    @pytest.mark.asyncio()
    async def test_ratio_uses_held_quantities_not_order_responses(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        btc: Opportunity,
    ) -> None:
        real_order = funded.place_futures_market_order

        async def overreported(symbol, side, quantity, reduce_only=False):
            await real_order(symbol, side, Decimal("0.005"), reduce_only=reduce_only)
            return FuturesOrderResult("8", symbol, side, executed_qty=quantity)

        funded.place_futures_market_order = overreported  # type: ignore[method-assign]

        assert await deployer.deploy(btc, Decimal("100")) is False

        outcome = deployer.last_outcome
        assert outcome is not None
        assert outcome.failed_at == DeploymentState.HEDGE_VERIFY
        assert outcome.hedge_ratio == Decimal("0.005") / Decimal("0.00999")
        assert not auditor.is_safe_to_proceed()

    @pytest.mark.asyncio()
    async def test_margin_rejection_not_retried(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        btc: Opportunity,
    ) -> None:
        funded.set_futures_wallet(Decimal("10"))

        assert await deployer.deploy(btc, Decimal("100")) is False

        assert deployer.last_outcome.failed_at == DeploymentState.FUTURES_LEG  # type: ignore[union-attr]
        assert await funded.get_futures_positions() == []
        balances = {b.asset: b.free for b in await funded.get_spot_balances()}
        assert balances["BTC"] == Decimal("0.00999")
        assert not auditor.is_safe_to_proceed()

    @pytest.mark.asyncio()
    async def test_zero_spot_fill_never_places_futures(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        btc: Opportunity,
    ) -> None:
        funded.place_spot_market_order = AsyncMock(  # type: ignore[method-assign]
            return_value=SpotOrderResult(
                order_id="1",
                symbol="BTCUSDT",
                side=OrderSide.BUY,
                executed_qty=Decimal("0"),
                cummulative_quote_qty=Decimal("0"),
            )
        )
        futures_order = AsyncMock()
        funded.place_futures_market_order = futures_order  # type: ignore[method-assign]

        assert await deployer.deploy(btc, Decimal("100")) is False

        futures_order.assert_not_awaited()
        assert deployer.last_outcome.failed_at == DeploymentState.SPOT_LEG  # type: ignore[union-attr]
        assert auditor.critical_failures == []
        assert auditor.is_safe_to_proceed()

    @pytest.mark.asyncio()
    async def test_short_spot_usdt_without_provider(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        btc: Opportunity,
    ) -> None:
        funded.deposit("USDT", Decimal("50"))

        assert await deployer.deploy(btc, Decimal("100")) is False

        assert deployer.last_outcome.failed_at == DeploymentState.SIZING  # type: ignore[union-attr]
        assert auditor.is_safe_to_proceed()

    @pytest.mark.asyncio()
    async def test_capital_provider_rebalances_first(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        allocator: CapitalAllocator,
        btc: Opportunity,
    ) -> None:
        funded.deposit("USDT", Decimal("50"))
        deployer.set_capital_provider(allocator.ensure_adequate_capital)

        assert await deployer.deploy(btc, Decimal("100")) is True

    @pytest.mark.asyncio()
    async def test_breaker_opened_by_capital_provider_abandons(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        btc: Opportunity,
    ) -> None:
        async def failing_rebalance() -> bool:
            funded.deposit("USDT", Decimal("500"))
            auditor.start_step(StepName.CAPITAL_ALLOCATION)
            auditor.complete_step(StepName.CAPITAL_ALLOCATION, False)
            return False

        funded.deposit("USDT", Decimal("50"))
        deployer.set_capital_provider(failing_rebalance)
        spot_order = AsyncMock()
        funded.place_spot_market_order = spot_order  # type: ignore[method-assign]

        assert await deployer.deploy(btc, Decimal("100")) is False

        spot_order.assert_not_awaited()
        outcome = deployer.last_outcome
        assert outcome is not None
        assert outcome.failed_at == DeploymentState.SIZING
        assert outcome.reason == "circuit breaker opened during capital rebalance"
        assert len(auditor.critical_failures) == 1

    @pytest.mark.asyncio()
    async def test_refused_while_breaker_open(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        btc: Opportunity,
    ) -> None:
        auditor.start_step(StepName.CAPITAL_ALLOCATION)
        auditor.complete_step(StepName.CAPITAL_ALLOCATION, True)

        assert await deployer.deploy(btc, Decimal("100")) is False

        assert auditor.current_step(StepName.POSITION_DEPLOYMENT) is None
        assert await funded.get_futures_positions() == []

    @pytest.mark.asyncio()
    async def test_non_positive_capital(
        self, funded: PaperExchangeClient, deployer: PositionDeployer, events: EventBus, btc: Opportunity
    ) -> None:
        assert await deployer.deploy(btc, Decimal("0.004")) is False
        assert _events_of(events, LifecycleEvent.DEPLOYMENT_FAILED)[0]["reason"] == "non-positive capital"


class TestDirectionalDeployment:
    @pytest.mark.asyncio()
    async def test_futures_only_long(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        eth: Opportunity,
    ) -> None:
        assert await deployer.deploy(eth, Decimal("100")) is True

        positions = await funded.get_futures_positions()
        assert positions[0].symbol == "ETHUSDT"
        assert positions[0].position_amt == Decimal("0.15")
        balances = {b.asset for b in await funded.get_spot_balances()}
        assert "ETH" not in balances
        step = auditor.current_step(StepName.DIRECTIONAL_DEPLOYMENT)
        assert step is not None and step.success
        assert auditor.current_step(StepName.POSITION_DEPLOYMENT) is None

    @pytest.mark.asyncio()
    async def test_too_small_abandons(
        self, funded: PaperExchangeClient, deployer: PositionDeployer, auditor: WorkflowAuditor
    ) -> None:
        tiny = Opportunity.from_market("ETHUSDT", Decimal("0.0003"), Decimal("2000"), Decimal("500000"), "ETH")
        funded.set_lot_size("futures", LotSizeRules("ETHUSDT", Decimal("1"), Decimal("1000"), Decimal("1")))

        assert await deployer.deploy(tiny, Decimal("100")) is False
        assert auditor.critical_failures == []


class TestClose:
    @pytest.mark.asyncio()
    async def test_closes_both_legs(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        events: EventBus,
        btc: Opportunity,
    ) -> None:
        await deployer.deploy(btc, Decimal("100"))

        assert await deployer.close("BTCUSDT") is True

        assert await funded.get_futures_positions() == []
        balances = {b.asset: b.free for b in await funded.get_spot_balances()}
        assert balances["BTC"] == Decimal("0")
        step = auditor.current_step(StepName.POSITION_CLOSE)
        assert step is not None and step.success
        closed = _events_of(events, LifecycleEvent.POSITION_CLOSED)
        assert closed[0]["futures_qty"] == "0.0095"

    @pytest.mark.asyncio()
    async def test_no_futures_position(self, funded: PaperExchangeClient, deployer: PositionDeployer) -> None:
        assert await deployer.close("BTCUSDT") is True

    @pytest.mark.asyncio()
    async def test_futures_close_rejected(
        self,
        funded: PaperExchangeClient,
        deployer: PositionDeployer,
        auditor: WorkflowAuditor,
        btc: Opportunity,
    ) -> None:
        await deployer.deploy(btc, Decimal("100"))
        funded.place_futures_market_order = AsyncMock(  # type: ignore[method-assign]
            side_effect=OrderRejected("ReduceOnly Order is rejected.", code="-2022")
        )

        assert await deployer.close("BTCUSDT") is False
        assert auditor.critical_failures == []
