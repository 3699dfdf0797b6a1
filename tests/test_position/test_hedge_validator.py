"""Tests for HedgeValidator band checks."""

from decimal import Decimal

import pytest

from autopilot.config import TradingSettings
from autopilot.position.hedge_validator import HedgeValidator


@pytest.fixture
def validator(trading_settings: TradingSettings) -> HedgeValidator:
    """Band [0.90, 1.00]."""
    return HedgeValidator(trading_settings)


class TestHedgeValidator:
    def test_slight_under_hedge_confirmed(self, validator: HedgeValidator) -> None:
        status = validator.validate("BTCUSDT", Decimal("0.01"), Decimal("0.0095"))
        assert status.hedge_ratio == Decimal("0.95")
        assert status.is_confirmed
        assert status.unhedged_qty == Decimal("0.0005")

    def test_band_edges_inclusive(self, validator: HedgeValidator) -> None:
        assert validator.validate("BTCUSDT", Decimal("1"), Decimal("0.9")).is_confirmed
        assert validator.validate("BTCUSDT", Decimal("1"), Decimal("1")).is_confirmed

    def test_under_hedge_rejected(self, validator: HedgeValidator) -> None:
        assert not validator.validate("BTCUSDT", Decimal("1"), Decimal("0.85")).is_confirmed

    def test_over_hedge_rejected(self, validator: HedgeValidator) -> None:
        status = validator.validate("BTCUSDT", Decimal("1"), Decimal("1.05"))
        assert not status.is_confirmed
        assert status.unhedged_qty == Decimal("0")

    def test_signed_futures_quantity(self, validator: HedgeValidator) -> None:
        status = validator.validate("BTCUSDT", Decimal("0.01"), Decimal("-0.0095"))
        assert status.hedge_ratio == Decimal("0.95")
        assert status.futures_qty == Decimal("0.0095")

    def test_zero_spot(self, validator: HedgeValidator) -> None:
        status = validator.validate("BTCUSDT", Decimal("0"), Decimal("0.01"))
        assert status.hedge_ratio == Decimal("0")
        assert not status.is_confirmed
