"""Tests for the read-only dashboard API and WebSocket replay."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from autopilot.audit.auditor import StepName
from autopilot.config import AppSettings
from autopilot.dashboard.app import create_dashboard_app
from autopilot.engine import Engine
from autopilot.events import LifecycleEvent
from autopilot.exchange.paper_client import PaperExchangeClient
from autopilot.models import Opportunity


@pytest.fixture
def engine(mock_settings: AppSettings, paper: PaperExchangeClient, clock) -> Engine:
    paper.deposit("USDT", Decimal("550"))
    paper.set_futures_wallet(Decimal("450"))
    return Engine(mock_settings, paper, clock=clock)


@pytest.fixture
def client(engine: Engine) -> TestClient:
    return TestClient(create_dashboard_app(engine=engine))


class TestStatus:
    def test_reports_engine_state_and_jobs(self, client: TestClient) -> None:
        response = client.get("/api/status")

        assert response.status_code == 200
        data = response.json()
        assert data["mode"] == "paper"
        assert data["safe_to_proceed"] is True
        assert data["baseline"] is None
        assert len(data["jobs"]) == 6


class TestPortfolio:
    def test_fresh_snapshot(self, client: TestClient) -> None:
        response = client.get("/api/portfolio")

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["total_value"]) == Decimal("1000")
        assert data["positions"] == []

    def test_unavailable_without_previous_snapshot(self, client: TestClient, engine: Engine) -> None:
        with patch.object(
            engine.analyzer._exchange,
            "get_spot_balances",
            AsyncMock(side_effect=ConnectionError("reset by peer")),
        ):
            response = client.get("/api/portfolio")

        assert response.status_code == 503


class TestOpportunities:
    def test_ranked_and_limited(self, client: TestClient, engine: Engine) -> None:
        engine.state.last_opportunities = [
            Opportunity.from_market("BTCUSDT", Decimal("-0.0006"), Decimal("10000"), Decimal("2000000")),
            Opportunity.from_market("ETHUSDT", Decimal("0.0003"), Decimal("2000"), Decimal("500000")),
        ]

        response = client.get("/api/opportunities", params={"limit": 1})

        data = response.json()
        assert len(data) == 1
        assert data[0]["rank"] == 1
        assert data[0]["symbol"] == "BTCUSDT"
        assert data[0]["delta_neutral"] is True
        assert Decimal(data[0]["daily_rate"]) == Decimal("0.18")

    def test_empty_before_first_cycle(self, client: TestClient) -> None:
        assert client.get("/api/opportunities").json() == []


class TestAudit:
    def test_summary_and_recent_steps(self, client: TestClient, engine: Engine) -> None:
        for _ in range(3):
            engine.auditor.start_step(StepName.OPPORTUNITY_ANALYSIS)
            engine.auditor.complete_step(StepName.OPPORTUNITY_ANALYSIS, True)

        data = client.get("/api/audit", params={"steps": 2}).json()

        assert data["summary"]["completed_steps"] == 3
        assert len(data["steps"]) == 2
        assert data["integrity"] == "INTACT"


class TestWebSocket:
    def test_replays_recent_history_on_connect(self, client: TestClient, engine: Engine) -> None:
        asyncio.run(engine.events.emit(LifecycleEvent.REBALANCED, {"from": "ETHUSDT", "to": "BTCUSDT"}))

        with client.websocket_connect("/ws") as ws:
            message = ws.receive_json()

        assert message["event"] == "rebalanced"
        assert message["payload"] == {"from": "ETHUSDT", "to": "BTCUSDT"}
