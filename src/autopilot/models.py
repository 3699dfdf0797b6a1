"""Shared data models for the funding-rate autopilot.

CRITICAL: All monetary values use Decimal. Never use float for prices, quantities, or fees.

Everything here is derived from exchange ground truth on every cycle:
snapshots, positions and opportunities are recomputed, never mutated in place.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

_ZERO = Decimal("0")
_FUNDING_PERIODS_PER_DAY = Decimal("3")
_SCORE_VOLUME_UNIT = Decimal("1000000")
_SCORE_VOLUME_CAP = Decimal("10")


class OrderSide(str, Enum):
    """Order direction."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class Wallet(str, Enum):
    """Account ledgers capital can be moved between."""

    SPOT = "spot"
    FUTURES = "futures"


# ──────────────────────────────────────────────
# Exchange read models
# ──────────────────────────────────────────────


@dataclass
class SpotBalance:
    """One asset line of the spot account."""

    asset: str
    free: Decimal
    locked: Decimal = _ZERO

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


@dataclass
class FuturesAccount:
    """USDⓈ-M futures wallet, keyed by asset."""

    wallet_balance: dict[str, Decimal] = field(default_factory=dict)
    available_balance: dict[str, Decimal] = field(default_factory=dict)

    def wallet(self, asset: str) -> Decimal:
        return self.wallet_balance.get(asset, _ZERO)

    def available(self, asset: str) -> Decimal:
        return self.available_balance.get(asset, _ZERO)


@dataclass
class FuturesPositionInfo:
    """Raw futures position line as reported by the exchange."""

    symbol: str
    position_amt: Decimal
    entry_price: Decimal
    unrealized_profit: Decimal
    leverage: Decimal
    mark_price: Decimal = _ZERO


@dataclass
class MarkPriceData:
    """Mark price and current funding rate of one perpetual contract."""

    symbol: str
    mark_price: Decimal
    funding_rate: Decimal
    next_funding_time: int = 0  # Unix milliseconds


@dataclass
class SpotOrderResult:
    """Fill of a spot market order."""

    order_id: str
    symbol: str
    side: OrderSide
    executed_qty: Decimal
    cummulative_quote_qty: Decimal
    timestamp: float = field(default_factory=time.time)


@dataclass
class FuturesOrderResult:
    """Fill of a futures market order."""

    order_id: str
    symbol: str
    side: OrderSide
    executed_qty: Decimal
    avg_price: Decimal = _ZERO
    timestamp: float = field(default_factory=time.time)


# ──────────────────────────────────────────────
# Engine models
# ──────────────────────────────────────────────


@dataclass
class Opportunity:
    """A candidate symbol for funding collection, recomputed every cycle.

    funding_rate is signed, per 8h period. daily_rate is a percentage.
    """

    symbol: str
    funding_rate: Decimal
    daily_rate: Decimal
    mark_price: Decimal
    volume_usd: Decimal
    opportunity_score: Decimal
    base_asset: str = ""

    @classmethod
    def from_market(
        cls,
        symbol: str,
        funding_rate: Decimal,
        mark_price: Decimal,
        volume_usd: Decimal,
        base_asset: str = "",
    ) -> "Opportunity":
        """Build an opportunity, deriving daily rate and liquidity-weighted score."""
        abs_rate = abs(funding_rate)
        liquidity_weight = min(volume_usd / _SCORE_VOLUME_UNIT, _SCORE_VOLUME_CAP)
        return cls(
            symbol=symbol,
            funding_rate=funding_rate,
            daily_rate=abs_rate * _FUNDING_PERIODS_PER_DAY * Decimal("100"),
            mark_price=mark_price,
            volume_usd=volume_usd,
            opportunity_score=abs_rate * Decimal("1000") * liquidity_weight,
            base_asset=base_asset,
        )

    @property
    def is_delta_neutral(self) -> bool:
        """Negative funding is collected with spot long + futures short."""
        return self.funding_rate < 0


@dataclass
class ActivePosition:
    """One open hedge, derived from the exchange's futures position list."""

    symbol: str
    signed_size: Decimal  # > 0 long, < 0 short
    notional_usd: Decimal
    unrealized_pnl: Decimal
    leverage: Decimal

    @property
    def is_long(self) -> bool:
        return self.signed_size > 0

    @property
    def margin_used(self) -> Decimal:
        if self.leverage <= 0:
            return self.notional_usd
        return self.notional_usd / self.leverage


@dataclass
class SpotHolding:
    """Valued spot asset line (USDT included at face value)."""

    asset: str
    amount: Decimal
    value: Decimal
    price: Decimal = Decimal("1")


@dataclass
class PortfolioSnapshot:
    """Point-in-time portfolio view. Never cached across cycles.

    total_value and utilization are derived so the invariants
    total_value == total_spot_value + futures_balance and
    utilization == deployed / total * 100 (0 on empty portfolio) always hold.
    """

    total_spot_value: Decimal
    futures_balance: Decimal
    deployed_capital: Decimal
    total_pnl: Decimal
    active_positions: list[ActivePosition] = field(default_factory=list)
    spot_holdings: list[SpotHolding] = field(default_factory=list)
    spot_usdt_free: Decimal = _ZERO
    futures_usdt_available: Decimal = _ZERO
    taken_at: float = field(default_factory=time.time)

    @property
    def total_value(self) -> Decimal:
        return self.total_spot_value + self.futures_balance

    @property
    def available_capital(self) -> Decimal:
        return self.total_value - self.deployed_capital

    @property
    def utilization(self) -> Decimal:
        total = self.total_value
        if total <= 0:
            return _ZERO
        return self.deployed_capital / total * Decimal("100")

    def position(self, symbol: str) -> ActivePosition | None:
        for pos in self.active_positions:
            if pos.symbol == symbol:
                return pos
        return None

    def holds(self, symbol: str) -> bool:
        return self.position(symbol) is not None


@dataclass(frozen=True)
class AllocationPlan:
    """Target spot/futures split and deficits (positive = needs more capital)."""

    total_value: Decimal
    target_spot_value: Decimal
    target_futures_value: Decimal
    current_spot_usdt: Decimal
    current_futures_usdt: Decimal

    @property
    def spot_deficit(self) -> Decimal:
        return self.target_spot_value - self.current_spot_usdt

    @property
    def futures_deficit(self) -> Decimal:
        return self.target_futures_value - self.current_futures_usdt

    def imbalance(self, spot_usdt: Decimal, futures_usdt: Decimal) -> Decimal:
        """Total unmet need of both ledgers for the given balances."""
        spot_need = max(_ZERO, self.target_spot_value - spot_usdt)
        futures_need = max(_ZERO, self.target_futures_value - futures_usdt)
        return spot_need + futures_need
