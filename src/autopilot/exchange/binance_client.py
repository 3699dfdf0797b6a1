"""Binance exchange client implementation via ccxt async.

Wraps ccxt.async_support.binance and talks to the raw spot and USDⓈ-M
futures endpoints, so responses keep Binance's own field names
(executedQty, cummulativeQuoteQty, positionAmt, ...). All numeric fields
are converted through Decimal(str(value)).
"""

import re
import time
from decimal import Decimal

import ccxt.async_support as ccxt_async
from ccxt.base.errors import ExchangeError

from autopilot.config import ExchangeSettings
from autopilot.exceptions import OrderRejected
from autopilot.exchange.client import ExchangeClient
from autopilot.exchange.types import LotSizeRules, MarketType
from autopilot.logging import get_logger
from autopilot.models import (
    FuturesAccount,
    FuturesOrderResult,
    FuturesPositionInfo,
    MarkPriceData,
    OrderSide,
    SpotBalance,
    SpotOrderResult,
    Wallet,
)

logger = get_logger(__name__)

_ERROR_CODE_RE = re.compile(r'"code"\s*:\s*(-?\d+)')

_TRANSFER_TYPES = {
    (Wallet.SPOT, Wallet.FUTURES): "MAIN_UMFUTURE",
    (Wallet.FUTURES, Wallet.SPOT): "UMFUTURE_MAIN",
}


def _dec(value: object) -> Decimal:
    """Convert an exchange field to Decimal, treating missing/empty as zero."""
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def _qty(value: Decimal) -> str:
    """Render a Decimal quantity without exponent notation."""
    return format(value.normalize(), "f")


def _rejection(exc: ExchangeError) -> OrderRejected:
    match = _ERROR_CODE_RE.search(str(exc))
    return OrderRejected(str(exc), code=match.group(1) if match else None)


class BinanceClient(ExchangeClient):
    """Concrete Binance client using ccxt async raw endpoints."""

    def __init__(self, settings: ExchangeSettings, quote_asset: str = "USDT") -> None:
        self._settings = settings
        self._quote_asset = quote_asset

        config: dict = {
            "apiKey": settings.api_key.get_secret_value(),
            "secret": settings.api_secret.get_secret_value(),
            "enableRateLimit": True,
            "timeout": settings.request_timeout_ms,
            "options": {
                "defaultType": "spot",
                "adjustForTimeDifference": True,
            },
        }

        self._exchange = ccxt_async.binance(config)
        if settings.testnet:
            self._exchange.set_sandbox_mode(True)

        self._symbols: dict[MarketType, dict[str, dict]] = {"spot": {}, "futures": {}}
        self._symbols_loaded_at: dict[MarketType, float] = {"spot": 0.0, "futures": 0.0}
        self._dual_listed: dict[str, str] = {}

    @property
    def exchange(self) -> ccxt_async.binance:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def connect(self) -> None:
        """Load spot and futures exchangeInfo and derive the dual-listed set."""
        logger.info("connecting_to_binance", testnet=self._settings.testnet)
        await self._load_exchange_info("spot")
        await self._load_exchange_info("futures")
        logger.info(
            "binance_connected",
            spot_symbols=len(self._symbols["spot"]),
            futures_symbols=len(self._symbols["futures"]),
            dual_listed=len(self._dual_listed),
        )

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        logger.info("closing_binance_connection")
        await self._exchange.close()
        logger.info("binance_connection_closed")

    async def _load_exchange_info(self, market: MarketType) -> None:
        if market == "spot":
            raw = await self._exchange.public_get_exchangeinfo()
            symbols = {
                s["symbol"]: s
                for s in raw.get("symbols", [])
                if s.get("status") == "TRADING"
            }
        else:
            raw = await self._exchange.fapipublic_get_exchangeinfo()
            symbols = {
                s["symbol"]: s
                for s in raw.get("symbols", [])
                if s.get("status") == "TRADING"
                and s.get("contractType") == "PERPETUAL"
            }
        self._symbols[market] = symbols
        self._symbols_loaded_at[market] = time.time()

        spot, futures = self._symbols["spot"], self._symbols["futures"]
        self._dual_listed = {
            symbol: info.get("baseAsset", "")
            for symbol, info in futures.items()
            if symbol in spot and info.get("quoteAsset") == self._quote_asset
        }
        logger.debug("exchange_info_loaded", market=market, count=len(symbols))

    # ── reads ──

    async def get_spot_balances(self) -> list[SpotBalance]:
        account = await self._exchange.private_get_account()
        return [
            SpotBalance(asset=b["asset"], free=_dec(b.get("free")), locked=_dec(b.get("locked")))
            for b in account.get("balances", [])
        ]

    async def get_futures_account(self) -> FuturesAccount:
        account = await self._exchange.fapiprivatev2_get_account()
        wallet: dict[str, Decimal] = {}
        available: dict[str, Decimal] = {}
        for entry in account.get("assets", []):
            wallet[entry["asset"]] = _dec(entry.get("walletBalance"))
            available[entry["asset"]] = _dec(entry.get("availableBalance"))
        return FuturesAccount(wallet_balance=wallet, available_balance=available)

    async def get_futures_positions(self) -> list[FuturesPositionInfo]:
        raw = await self._exchange.fapiprivatev2_get_positionrisk()
        return [
            FuturesPositionInfo(
                symbol=p["symbol"],
                position_amt=_dec(p.get("positionAmt")),
                entry_price=_dec(p.get("entryPrice")),
                unrealized_profit=_dec(p.get("unRealizedProfit")),
                leverage=_dec(p.get("leverage")),
                mark_price=_dec(p.get("markPrice")),
            )
            for p in raw
        ]

    async def get_mark_prices_and_funding(self) -> list[MarkPriceData]:
        raw = await self._exchange.fapipublic_get_premiumindex()
        return [
            MarkPriceData(
                symbol=item["symbol"],
                mark_price=_dec(item.get("markPrice")),
                funding_rate=_dec(item.get("lastFundingRate")),
                next_funding_time=int(item.get("nextFundingTime") or 0),
            )
            for item in raw
        ]

    async def get_spot_prices(self) -> dict[str, Decimal]:
        raw = await self._exchange.public_get_ticker_price()
        return {item["symbol"]: _dec(item.get("price")) for item in raw}

    async def get_24h_volume(self) -> dict[str, Decimal]:
        raw = await self._exchange.fapipublic_get_ticker_24hr()
        return {item["symbol"]: _dec(item.get("quoteVolume")) for item in raw}

    async def get_lot_size_rules(self, symbol: str, market: MarketType) -> LotSizeRules:
        """Extract LOT_SIZE from exchangeInfo, refreshing it once the TTL lapses."""
        age = time.time() - self._symbols_loaded_at[market]
        if age > self._settings.lot_size_cache_ttl or symbol not in self._symbols[market]:
            logger.debug("refreshing_exchange_info", market=market, age=round(age, 1))
            await self._load_exchange_info(market)

        info = self._symbols[market].get(symbol)
        if info is None:
            raise ValueError(f"Symbol {symbol} not tradable on {market}")

        lot = next(
            (f for f in info.get("filters", []) if f.get("filterType") == "LOT_SIZE"),
            None,
        )
        if lot is None:
            raise ValueError(f"No LOT_SIZE filter for {symbol} on {market}")

        return LotSizeRules(
            symbol=symbol,
            min_qty=_dec(lot.get("minQty")),
            max_qty=_dec(lot.get("maxQty")),
            step_size=_dec(lot.get("stepSize")),
        )

    def get_dual_listed_symbols(self) -> dict[str, str]:
        return self._dual_listed

    # ── actions ──

    async def place_spot_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal | None = None,
        quote_quantity: Decimal | None = None,
    ) -> SpotOrderResult:
        params: dict = {
            "symbol": symbol,
            "side": side.value,
            "type": "MARKET",
            "newOrderRespType": "FULL",
        }
        if quote_quantity is not None:
            params["quoteOrderQty"] = _qty(quote_quantity)
        elif quantity is not None:
            params["quantity"] = _qty(quantity)
        else:
            raise ValueError("Either quantity or quote_quantity is required")

        logger.info("creating_spot_order", **{k: v for k, v in params.items() if k != "newOrderRespType"})
        try:
            result = await self._exchange.private_post_order(params)
        except ExchangeError as exc:
            raise _rejection(exc) from exc

        return SpotOrderResult(
            order_id=str(result.get("orderId", "")),
            symbol=symbol,
            side=side,
            executed_qty=_dec(result.get("executedQty")),
            cummulative_quote_qty=_dec(result.get("cummulativeQuoteQty")),
        )

    async def place_futures_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        reduce_only: bool = False,
    ) -> FuturesOrderResult:
        params: dict = {
            "symbol": symbol,
            "side": side.value,
            "type": "MARKET",
            "quantity": _qty(quantity),
            "newOrderRespType": "RESULT",
        }
        if reduce_only:
            params["reduceOnly"] = "true"

        logger.info("creating_futures_order", symbol=symbol, side=side.value, quantity=params["quantity"])
        try:
            result = await self._exchange.fapiprivate_post_order(params)
        except ExchangeError as exc:
            raise _rejection(exc) from exc

        return FuturesOrderResult(
            order_id=str(result.get("orderId", "")),
            symbol=symbol,
            side=side,
            executed_qty=_dec(result.get("executedQty")),
            avg_price=_dec(result.get("avgPrice")),
        )

    async def set_futures_leverage(self, symbol: str, leverage: int) -> bool:
        result = await self._exchange.fapiprivate_post_leverage(
            {"symbol": symbol, "leverage": leverage}
        )
        return int(result.get("leverage", 0)) == leverage

    async def transfer_between_wallets(
        self, asset: str, amount: Decimal, source: Wallet, target: Wallet
    ) -> bool:
        transfer_type = _TRANSFER_TYPES.get((source, target))
        if transfer_type is None:
            raise ValueError(f"Unsupported transfer {source.value} -> {target.value}")

        logger.info(
            "submitting_wallet_transfer",
            asset=asset,
            amount=str(amount),
            type=transfer_type,
        )
        result = await self._exchange.sapi_post_asset_transfer(
            {"type": transfer_type, "asset": asset, "amount": _qty(amount)}
        )
        return bool(result.get("tranId"))
