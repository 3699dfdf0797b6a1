"""Paper exchange client with simulated spot and futures ledgers.

Keeps both account ledgers in memory and fills market orders instantly at
the configured prices, applying taker fees. Orders are validated against
the same LOT_SIZE rules the live exchange enforces, so precision handling
is exercised identically in paper mode.

Paper mode runs the exact same engine code as live mode; only the client
injected at startup differs.
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

from autopilot.exceptions import OrderRejected
from autopilot.exchange.client import ExchangeClient
from autopilot.exchange.types import LotSizeRules, MarketType, round_to_step
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

# Binance base-tier taker fees
_SPOT_TAKER_FEE = Decimal("0.001")
_FUTURES_TAKER_FEE = Decimal("0.0005")

_DEFAULT_RULES = LotSizeRules(
    symbol="*",
    min_qty=Decimal("0.0001"),
    max_qty=Decimal("100000"),
    step_size=Decimal("0.0001"),
)


@dataclass
class _PaperPosition:
    amount: Decimal  # signed
    entry_price: Decimal


class PaperExchangeClient(ExchangeClient):
    """In-memory exchange simulation for paper trading and tests.

    Args:
        quote_asset: Settlement asset of both ledgers.
        default_leverage: Leverage applied until set_futures_leverage is called.
    """

    def __init__(self, quote_asset: str = "USDT", default_leverage: int = 1) -> None:
        self._quote = quote_asset
        self._default_leverage = default_leverage
        self._spot: dict[str, Decimal] = {}
        self._futures_wallet = Decimal("0")
        self._positions: dict[str, _PaperPosition] = {}
        self._leverage: dict[str, int] = {}
        self._marks: dict[str, MarkPriceData] = {}
        self._spot_prices: dict[str, Decimal] = {}
        self._volumes: dict[str, Decimal] = {}
        self._dual_listed: dict[str, str] = {}
        self._rules: dict[tuple[str, MarketType], LotSizeRules] = {}

    # ── simulation setup ──

    def deposit(self, asset: str, amount: Decimal) -> None:
        """Set the free spot balance of an asset."""
        self._spot[asset] = amount

    def set_futures_wallet(self, amount: Decimal) -> None:
        self._futures_wallet = amount

    def list_market(
        self,
        symbol: str,
        base_asset: str,
        price: Decimal,
        funding_rate: Decimal = Decimal("0"),
        volume_24h: Decimal = Decimal("0"),
        futures: bool = True,
    ) -> None:
        """List a symbol on spot (and futures unless futures=False)."""
        self._spot_prices[symbol] = price
        if futures:
            self._dual_listed[symbol] = base_asset
            self._marks[symbol] = MarkPriceData(
                symbol=symbol, mark_price=price, funding_rate=funding_rate
            )
            self._volumes[symbol] = volume_24h

    def set_price(self, symbol: str, price: Decimal) -> None:
        """Move both the spot price and the mark price of a symbol."""
        self._spot_prices[symbol] = price
        if symbol in self._marks:
            self._marks[symbol].mark_price = price

    def set_funding_rate(self, symbol: str, rate: Decimal) -> None:
        self._marks[symbol].funding_rate = rate

    def set_lot_size(self, market: MarketType, rules: LotSizeRules) -> None:
        self._rules[(rules.symbol, market)] = rules

    def open_position(
        self, symbol: str, amount: Decimal, entry_price: Decimal, leverage: int = 1
    ) -> None:
        """Seed an existing futures position without touching balances."""
        self._positions[symbol] = _PaperPosition(amount=amount, entry_price=entry_price)
        self._leverage[symbol] = leverage

    # ── lifecycle ──

    async def connect(self) -> None:
        logger.info("paper_exchange_connected", symbols=len(self._dual_listed))

    async def close(self) -> None:
        logger.info("paper_exchange_closed")

    # ── reads ──

    async def get_spot_balances(self) -> list[SpotBalance]:
        return [SpotBalance(asset=a, free=amt) for a, amt in self._spot.items()]

    async def get_futures_account(self) -> FuturesAccount:
        return FuturesAccount(
            wallet_balance={self._quote: self._futures_wallet},
            available_balance={self._quote: self._futures_available()},
        )

    async def get_futures_positions(self) -> list[FuturesPositionInfo]:
        return [
            FuturesPositionInfo(
                symbol=symbol,
                position_amt=pos.amount,
                entry_price=pos.entry_price,
                unrealized_profit=self._unrealized(symbol, pos),
                leverage=Decimal(self._leverage_of(symbol)),
                mark_price=self._mark(symbol),
            )
            for symbol, pos in self._positions.items()
            if pos.amount != 0
        ]

    async def get_mark_prices_and_funding(self) -> list[MarkPriceData]:
        return list(self._marks.values())

    async def get_spot_prices(self) -> dict[str, Decimal]:
        return dict(self._spot_prices)

    async def get_24h_volume(self) -> dict[str, Decimal]:
        return dict(self._volumes)

    async def get_lot_size_rules(self, symbol: str, market: MarketType) -> LotSizeRules:
        rules = self._rules.get((symbol, market))
        if rules is not None:
            return rules
        return LotSizeRules(
            symbol=symbol,
            min_qty=_DEFAULT_RULES.min_qty,
            max_qty=_DEFAULT_RULES.max_qty,
            step_size=_DEFAULT_RULES.step_size,
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
        price = self._spot_prices.get(symbol)
        if price is None or price <= 0:
            raise OrderRejected(f"Invalid symbol {symbol}", code="-1121")
        rules = await self.get_lot_size_rules(symbol, "spot")
        base = self.get_base_asset(symbol, self._quote)

        if quote_quantity is not None:
            qty = round_to_step(quote_quantity / price, rules.step_size)
        elif quantity is not None:
            qty = quantity
        else:
            raise ValueError("Either quantity or quote_quantity is required")
        self._check_lot_size(qty, rules)

        cost = qty * price
        if side == OrderSide.BUY:
            if self._spot.get(self._quote, Decimal("0")) < cost:
                raise OrderRejected(
                    "Account has insufficient balance for requested action.", code="-2010"
                )
            self._spot[self._quote] = self._spot.get(self._quote, Decimal("0")) - cost
            self._spot[base] = self._spot.get(base, Decimal("0")) + qty * (1 - _SPOT_TAKER_FEE)
        else:
            if self._spot.get(base, Decimal("0")) < qty:
                raise OrderRejected(
                    "Account has insufficient balance for requested action.", code="-2010"
                )
            self._spot[base] -= qty
            self._spot[self._quote] = (
                self._spot.get(self._quote, Decimal("0")) + cost * (1 - _SPOT_TAKER_FEE)
            )

        order_id = f"paper_{uuid4().hex[:12]}"
        logger.info(
            "paper_spot_order_filled",
            order_id=order_id,
            symbol=symbol,
            side=side.value,
            quantity=str(qty),
            quote=str(cost),
        )
        return SpotOrderResult(
            order_id=order_id,
            symbol=symbol,
            side=side,
            executed_qty=qty,
            cummulative_quote_qty=cost,
        )

    async def place_futures_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        reduce_only: bool = False,
    ) -> FuturesOrderResult:
        if symbol not in self._marks:
            raise OrderRejected(f"Invalid symbol {symbol}", code="-1121")
        rules = await self.get_lot_size_rules(symbol, "futures")
        self._check_lot_size(quantity, rules)

        mark = self._mark(symbol)
        pos = self._positions.get(symbol, _PaperPosition(Decimal("0"), Decimal("0")))
        signed = quantity if side == OrderSide.BUY else -quantity

        if reduce_only and (pos.amount == 0 or (pos.amount > 0) == (signed > 0) or quantity > abs(pos.amount)):
            raise OrderRejected("ReduceOnly Order is rejected.", code="-2022")

        increases = pos.amount == 0 or (pos.amount > 0) == (signed > 0)
        if increases:
            margin_needed = quantity * mark / Decimal(self._leverage_of(symbol))
            if margin_needed > self._futures_available():
                raise OrderRejected("Margin is insufficient.", code="-2019")
            new_amount = pos.amount + signed
            entry = (abs(pos.amount) * pos.entry_price + quantity * mark) / abs(new_amount)
            self._positions[symbol] = _PaperPosition(amount=new_amount, entry_price=entry)
        else:
            closed = min(quantity, abs(pos.amount))
            direction = Decimal("1") if pos.amount > 0 else Decimal("-1")
            self._futures_wallet += closed * (mark - pos.entry_price) * direction
            remaining = pos.amount + signed
            if remaining == 0:
                del self._positions[symbol]
            elif (remaining > 0) == (pos.amount > 0):
                self._positions[symbol] = _PaperPosition(amount=remaining, entry_price=pos.entry_price)
            else:
                self._positions[symbol] = _PaperPosition(amount=remaining, entry_price=mark)

        self._futures_wallet -= quantity * mark * _FUTURES_TAKER_FEE

        order_id = f"paper_{uuid4().hex[:12]}"
        logger.info(
            "paper_futures_order_filled",
            order_id=order_id,
            symbol=symbol,
            side=side.value,
            quantity=str(quantity),
            mark_price=str(mark),
        )
        return FuturesOrderResult(
            order_id=order_id,
            symbol=symbol,
            side=side,
            executed_qty=quantity,
            avg_price=mark,
        )

    async def set_futures_leverage(self, symbol: str, leverage: int) -> bool:
        self._leverage[symbol] = leverage
        return True

    async def transfer_between_wallets(
        self, asset: str, amount: Decimal, source: Wallet, target: Wallet
    ) -> bool:
        if asset != self._quote or amount <= 0 or source == target:
            return False
        if source == Wallet.SPOT:
            if self._spot.get(asset, Decimal("0")) < amount:
                logger.warning("paper_transfer_insufficient", source=source.value, amount=str(amount))
                return False
            self._spot[asset] -= amount
            self._futures_wallet += amount
        else:
            if self._futures_available() < amount:
                logger.warning("paper_transfer_insufficient", source=source.value, amount=str(amount))
                return False
            self._futures_wallet -= amount
            self._spot[asset] = self._spot.get(asset, Decimal("0")) + amount
        return True

    # ── internals ──

    def _mark(self, symbol: str) -> Decimal:
        data = self._marks.get(symbol)
        return data.mark_price if data is not None else Decimal("0")

    def _leverage_of(self, symbol: str) -> int:
        return self._leverage.get(symbol, self._default_leverage)

    def _unrealized(self, symbol: str, pos: _PaperPosition) -> Decimal:
        return pos.amount * (self._mark(symbol) - pos.entry_price)

    def _futures_available(self) -> Decimal:
        margin = Decimal("0")
        unrealized = Decimal("0")
        for symbol, pos in self._positions.items():
            margin += abs(pos.amount) * self._mark(symbol) / Decimal(self._leverage_of(symbol))
            unrealized += self._unrealized(symbol, pos)
        return self._futures_wallet + unrealized - margin

    @staticmethod
    def _check_lot_size(quantity: Decimal, rules: LotSizeRules) -> None:
        if quantity <= 0 or quantity < rules.min_qty:
            raise OrderRejected("Filter failure: LOT_SIZE", code="-1013")
        if rules.max_qty > 0 and quantity > rules.max_qty:
            raise OrderRejected("Filter failure: LOT_SIZE", code="-1013")
        if rules.step_size > 0 and quantity % rules.step_size != 0:
            raise OrderRejected(
                "Precision is over the maximum defined for this asset.", code="-1111"
            )
