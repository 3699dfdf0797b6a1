"""Configuration system using pydantic-settings with environment variable loading.

Every tunable of the allocation and position-lifecycle engine lives here with a
documented default and a validated range. Nothing else in the package reads
the environment.
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExchangeSettings(BaseSettings):
    """Binance connection settings."""

    model_config = SettingsConfigDict(env_prefix="BINANCE_")

    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    testnet: bool = False
    request_timeout_ms: int = Field(default=10000, ge=1000, le=60000)
    lot_size_cache_ttl: float = Field(default=600.0, ge=0)  # seconds


class TradingSettings(BaseSettings):
    """Deployment and hedging parameters."""

    model_config = SettingsConfigDict(env_prefix="TRADING_")

    mode: Literal["paper", "live"] = "paper"
    quote_asset: str = "USDT"
    max_leverage: int = Field(default=3, ge=1, le=20)

    # Futures short is sized to hedge_ratio of the filled spot quantity and
    # must land inside [min_hedge_ratio, max_hedge_ratio] to be confirmed.
    hedge_ratio: Decimal = Field(default=Decimal("0.95"), gt=0, le=1)
    min_hedge_ratio: Decimal = Field(default=Decimal("0.90"), gt=0, le=1)
    max_hedge_ratio: Decimal = Field(default=Decimal("1.00"), gt=0, le=1)
    leg_settle_delay: float = Field(default=2.0, ge=0, le=10)  # spot fill -> futures order

    min_funding_rate: Decimal = Field(default=Decimal("0.0001"), ge=0)  # |rate| per 8h
    min_liquidity: Decimal = Field(default=Decimal("50000"), ge=0)  # 24h quote volume, USD
    min_position_size: Decimal = Field(default=Decimal("6"), gt=0)
    max_positions: int = Field(default=12, ge=1, le=100)
    target_utilization: Decimal = Field(default=Decimal("0.95"), gt=0, le=1)

    paper_initial_usdt: Decimal = Field(default=Decimal("1000"), ge=0)


class AllocationSettings(BaseSettings):
    """Spot/futures capital split, transfers and asset conversion."""

    model_config = SettingsConfigDict(env_prefix="ALLOCATION_")

    spot_ratio: Decimal = Field(default=Decimal("0.55"), gt=0, lt=1)  # futures gets the rest
    rebalance_tolerance: Decimal = Field(default=Decimal("10"), ge=0)  # USD
    futures_margin_floor: Decimal = Field(default=Decimal("50"), ge=0)
    transfer_haircut: Decimal = Field(default=Decimal("0.9"), gt=0, le=1)
    min_transfer: Decimal = Field(default=Decimal("10"), ge=0)
    conversion_floor: Decimal = Field(default=Decimal("50"), ge=0)
    conversion_buffer: Decimal = Field(default=Decimal("20"), ge=0)
    dust_threshold: Decimal = Field(default=Decimal("15"), ge=0)  # skip holdings worth less
    min_conversion_gain: Decimal = Field(default=Decimal("10"), ge=0)
    conversion_sell_fraction: Decimal = Field(default=Decimal("0.9"), gt=0, le=1)
    margin_buffer_percent: Decimal = Field(default=Decimal("0.1"), ge=0, le=1)
    transfer_settle_delay: float = Field(default=3.0, ge=0, le=30)
    conversion_delay: float = Field(default=2.0, ge=0, le=30)


class OptimizationSettings(BaseSettings):
    """Rebalance/optimization loop thresholds."""

    model_config = SettingsConfigDict(env_prefix="OPTIMIZER_")

    max_actions_per_cycle: int = Field(default=5, ge=1, le=50)

    # Loss-stop: close when P&L < -max(usd, pct * notional)
    loss_stop_usd: Decimal = Field(default=Decimal("3"), ge=0)
    loss_stop_pct: Decimal = Field(default=Decimal("0.05"), ge=0, le=1)
    # Tighter floor once a position has dropped into the weak part of the ranking
    ranked_loss_stop_usd: Decimal = Field(default=Decimal("2"), ge=0)
    ranked_loss_stop_pct: Decimal = Field(default=Decimal("0.03"), ge=0, le=1)
    weak_rank_fraction: Decimal = Field(default=Decimal("0.6"), gt=0, le=1)

    # Single threshold for every "replace with a better opportunity" decision
    improvement_ratio: Decimal = Field(default=Decimal("1.10"), ge=1)

    winner_min_pnl: Decimal = Field(default=Decimal("0.5"), ge=0)
    winner_max_position_fraction: Decimal = Field(default=Decimal("0.15"), gt=0, le=1)

    force_deploy_top_n: int = Field(default=5, ge=1, le=50)
    force_deploy_min_daily_rate: Decimal = Field(default=Decimal("0.4"), ge=0)  # percent/day
    force_deploy_fraction: Decimal = Field(default=Decimal("0.08"), gt=0, le=1)
    utilization_floor_ratio: Decimal = Field(default=Decimal("0.85"), gt=0, le=1)

    action_delay: float = Field(default=2.0, ge=0, le=30)
    redeploy_delay: float = Field(default=1.0, ge=0, le=30)


class ScheduleSettings(BaseSettings):
    """Cadences (seconds) of the engine's periodic jobs."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULE_")

    deployment_interval: float = Field(default=30.0, gt=0)
    optimization_interval: float = Field(default=60.0, gt=0)
    rebalance_interval: float = Field(default=90.0, gt=0)
    margin_check_interval: float = Field(default=75.0, gt=0)
    report_interval: float = Field(default=600.0, gt=0)
    daily_analysis_interval: float = Field(default=86400.0, gt=0)
    tick_resolution: float = Field(default=1.0, gt=0, le=60)


class AuditSettings(BaseSettings):
    """Workflow auditor circuit breaker and retention."""

    model_config = SettingsConfigDict(env_prefix="AUDIT_")

    breaker_window_seconds: float = Field(default=300.0, ge=0)
    max_log_size: int = Field(default=100, ge=1)
    persist: bool = False
    db_path: str = "data/audit.db"


class DashboardSettings(BaseSettings):
    """Read-only operator dashboard."""

    model_config = SettingsConfigDict(env_prefix="DASHBOARD_")

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    exchange: ExchangeSettings = ExchangeSettings()
    trading: TradingSettings = TradingSettings()
    allocation: AllocationSettings = AllocationSettings()
    optimizer: OptimizationSettings = OptimizationSettings()
    schedule: ScheduleSettings = ScheduleSettings()
    audit: AuditSettings = AuditSettings()
    dashboard: DashboardSettings = DashboardSettings()
