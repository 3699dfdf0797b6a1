"""Abstract exchange client interface.

Defines the capabilities the engine consumes from its environment. Strategy
and allocation code depends only on this interface, keeping Binance-specific
details isolated in the concrete implementation (and letting the paper
client stand in for it).

Symbols are exchange ids ("BTCUSDT"), identical on the spot and futures
markets.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from autopilot.exchange.types import LotSizeRules, MarketType
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


class ExchangeClient(ABC):
    """Abstract base class for exchange API clients."""

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection and load spot and futures metadata."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources (CRITICAL for ccxt async)."""
        ...

    # ── reads ──

    @abstractmethod
    async def get_spot_balances(self) -> list[SpotBalance]:
        """Return every spot asset line (free and locked)."""
        ...

    @abstractmethod
    async def get_futures_account(self) -> FuturesAccount:
        """Return futures wallet and available balances by asset."""
        ...

    @abstractmethod
    async def get_futures_positions(self) -> list[FuturesPositionInfo]:
        """Return futures position lines (zero-size lines may be included)."""
        ...

    @abstractmethod
    async def get_mark_prices_and_funding(self) -> list[MarkPriceData]:
        """Return mark price and last funding rate for every perpetual."""
        ...

    @abstractmethod
    async def get_spot_prices(self) -> dict[str, Decimal]:
        """Return last spot price by symbol."""
        ...

    @abstractmethod
    async def get_24h_volume(self) -> dict[str, Decimal]:
        """Return 24h futures quote volume (USD) by symbol."""
        ...

    @abstractmethod
    async def get_lot_size_rules(
        self, symbol: str, market: MarketType
    ) -> LotSizeRules:
        """Return LOT_SIZE rules for a symbol on one market (cached)."""
        ...

    @abstractmethod
    def get_dual_listed_symbols(self) -> dict[str, str]:
        """Return symbols tradable on both spot and futures, mapped to base asset.

        Synchronous: served from metadata loaded at connect() time.
        """
        ...

    def get_base_asset(self, symbol: str, quote_asset: str = "USDT") -> str:
        """Return the base asset of a symbol, falling back to suffix stripping."""
        base = self.get_dual_listed_symbols().get(symbol)
        if base:
            return base
        return symbol.removesuffix(quote_asset)

    # ── actions ──

    @abstractmethod
    async def place_spot_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal | None = None,
        quote_quantity: Decimal | None = None,
    ) -> SpotOrderResult:
        """Place a spot market order by base quantity or quote quantity.

        Raises:
            OrderRejected: If the exchange rejects the order.
        """
        ...

    @abstractmethod
    async def place_futures_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        reduce_only: bool = False,
    ) -> FuturesOrderResult:
        """Place a futures market order.

        Raises:
            OrderRejected: If the exchange rejects the order.
        """
        ...

    @abstractmethod
    async def set_futures_leverage(self, symbol: str, leverage: int) -> bool:
        """Set the futures leverage for a symbol."""
        ...

    @abstractmethod
    async def transfer_between_wallets(
        self, asset: str, amount: Decimal, source: Wallet, target: Wallet
    ) -> bool:
        """Move an asset between the spot and futures wallets.

        A True return only means the exchange accepted the request;
        callers verify the moved balance with a fresh read.
        """
        ...
