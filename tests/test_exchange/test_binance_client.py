"""Tests for BinanceClient response mapping and error translation.

All tests replace the ccxt exchange object with AsyncMocks; no network.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from ccxt.base.errors import ExchangeError

from autopilot.config import ExchangeSettings
from autopilot.exceptions import OrderRejected
from autopilot.exchange.binance_client import BinanceClient
from autopilot.models import OrderSide, Wallet


def _symbol(symbol: str, base: str, step: str, **extra: str) -> dict:
    return {
        "symbol": symbol,
        "status": "TRADING",
        "baseAsset": base,
        "quoteAsset": "USDT",
        "filters": [
            {"filterType": "PRICE_FILTER", "tickSize": "0.01"},
            {"filterType": "LOT_SIZE", "minQty": step, "maxQty": "9000", "stepSize": step},
        ],
        **extra,
    }


SPOT_INFO = {
    "symbols": [
        _symbol("BTCUSDT", "BTC", "0.00001"),
        _symbol("BNBUSDT", "BNB", "0.001"),
    ]
}
FUTURES_INFO = {
    "symbols": [
        _symbol("BTCUSDT", "BTC", "0.001", contractType="PERPETUAL"),
        _symbol("BTCUSDT_250328", "BTC", "0.001", contractType="CURRENT_QUARTER"),
    ]
}


@pytest.fixture
def exchange_settings() -> ExchangeSettings:
    return ExchangeSettings(
        api_key="test-key",  # type: ignore[arg-type]
        api_secret="test-secret",  # type: ignore[arg-type]
        testnet=False,
    )


@pytest.fixture
def binance_client(exchange_settings: ExchangeSettings) -> BinanceClient:
    client = BinanceClient(exchange_settings)
    mock_exchange = AsyncMock()
    mock_exchange.public_get_exchangeinfo.return_value = SPOT_INFO
    mock_exchange.fapipublic_get_exchangeinfo.return_value = FUTURES_INFO
    client._exchange = mock_exchange
    return client


class TestMetadata:
    @pytest.mark.asyncio()
    async def test_connect_derives_dual_listed(self, binance_client: BinanceClient) -> None:
        await binance_client.connect()
        assert binance_client.get_dual_listed_symbols() == {"BTCUSDT": "BTC"}

    @pytest.mark.asyncio()
    async def test_lot_size_rules_per_market(self, binance_client: BinanceClient) -> None:
        await binance_client.connect()

        spot = await binance_client.get_lot_size_rules("BTCUSDT", "spot")
        futures = await binance_client.get_lot_size_rules("BTCUSDT", "futures")

        assert spot.step_size == Decimal("0.00001")
        assert futures.step_size == Decimal("0.001")
        assert futures.max_qty == Decimal("9000")

    @pytest.mark.asyncio()
    async def test_lot_size_rules_cached(self, binance_client: BinanceClient) -> None:
        await binance_client.connect()
        await binance_client.get_lot_size_rules("BTCUSDT", "futures")
        await binance_client.get_lot_size_rules("BTCUSDT", "futures")
        assert binance_client.exchange.fapipublic_get_exchangeinfo.await_count == 1


class TestReads:
    @pytest.mark.asyncio()
    async def test_mark_prices_and_funding(self, binance_client: BinanceClient) -> None:
        binance_client.exchange.fapipublic_get_premiumindex.return_value = [
            {"symbol": "BTCUSDT", "markPrice": "65000.5", "lastFundingRate": "-0.00060000", "nextFundingTime": 1700000000000}
        ]
        marks = await binance_client.get_mark_prices_and_funding()
        assert marks[0].mark_price == Decimal("65000.5")
        assert marks[0].funding_rate == Decimal("-0.00060000")
        assert marks[0].next_funding_time == 1700000000000

    @pytest.mark.asyncio()
    async def test_futures_account(self, binance_client: BinanceClient) -> None:
        binance_client.exchange.fapiprivatev2_get_account.return_value = {
            "assets": [{"asset": "USDT", "walletBalance": "500.5", "availableBalance": "420.25"}]
        }
        account = await binance_client.get_futures_account()
        assert account.wallet("USDT") == Decimal("500.5")
        assert account.available("USDT") == Decimal("420.25")
        assert account.available("BUSD") == Decimal("0")


class TestOrders:
    @pytest.mark.asyncio()
    async def test_spot_buy_by_quote_quantity(self, binance_client: BinanceClient) -> None:
        binance_client.exchange.private_post_order.return_value = {
            "orderId": 42,
            "executedQty": "0.01000000",
            "cummulativeQuoteQty": "100.00000000",
        }

        result = await binance_client.place_spot_market_order(
            "BTCUSDT", OrderSide.BUY, quote_quantity=Decimal("100.00")
        )

        params = binance_client.exchange.private_post_order.await_args.args[0]
        assert params["quoteOrderQty"] == "100"
        assert "quantity" not in params
        assert result.order_id == "42"
        assert result.executed_qty == Decimal("0.01")

    @pytest.mark.asyncio()
    async def test_futures_reduce_only_flag(self, binance_client: BinanceClient) -> None:
        binance_client.exchange.fapiprivate_post_order.return_value = {
            "orderId": 7,
            "executedQty": "0.0095",
            "avgPrice": "10000",
        }

        await binance_client.place_futures_market_order(
            "BTCUSDT", OrderSide.BUY, Decimal("0.0095"), reduce_only=True
        )

        params = binance_client.exchange.fapiprivate_post_order.await_args.args[0]
        assert params["reduceOnly"] == "true"
        assert params["quantity"] == "0.0095"

    @pytest.mark.asyncio()
    async def test_exchange_error_becomes_order_rejected(self, binance_client: BinanceClient) -> None:
        binance_client.exchange.fapiprivate_post_order.side_effect = ExchangeError(
            'binance {"code":-1111,"msg":"Precision is over the maximum defined for this asset."}'
        )

        with pytest.raises(OrderRejected) as exc_info:
            await binance_client.place_futures_market_order("BTCUSDT", OrderSide.SELL, Decimal("0.00955"))

        assert exc_info.value.code == "-1111"
        assert exc_info.value.is_precision_error

    @pytest.mark.asyncio()
    async def test_transfer_types(self, binance_client: BinanceClient) -> None:
        binance_client.exchange.sapi_post_asset_transfer.return_value = {"tranId": 13526853623}

        ok = await binance_client.transfer_between_wallets("USDT", Decimal("135"), Wallet.FUTURES, Wallet.SPOT)

        params = binance_client.exchange.sapi_post_asset_transfer.await_args.args[0]
        assert ok is True
        assert params["type"] == "UMFUTURE_MAIN"
        assert params["amount"] == "135"
