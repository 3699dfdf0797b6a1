"""Entry point for the funding-rate autopilot.

Builds the exchange client for the configured mode, wires the engine and
optionally serves the read-only dashboard. With the dashboard enabled the
engine and uvicorn share one asyncio event loop; the FastAPI lifespan
owns engine startup and shutdown.

SIGINT/SIGTERM stop the engine gracefully. Open positions are left in
place; the next start re-reads them from the exchange.
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from decimal import Decimal

import uvicorn
from fastapi import FastAPI

from autopilot.audit.store import AuditStore
from autopilot.config import AppSettings
from autopilot.engine import Engine
from autopilot.exchange.binance_client import BinanceClient
from autopilot.exchange.client import ExchangeClient
from autopilot.exchange.paper_client import PaperExchangeClient
from autopilot.logging import get_logger, setup_logging

# Markets seeded into the paper exchange: symbol -> (base, price, funding rate, 24h volume)
_PAPER_MARKETS: dict[str, tuple[str, Decimal, Decimal, Decimal]] = {
    "BTCUSDT": ("BTC", Decimal("65000"), Decimal("-0.0004"), Decimal("900000000")),
    "ETHUSDT": ("ETH", Decimal("3200"), Decimal("-0.0003"), Decimal("400000000")),
    "SOLUSDT": ("SOL", Decimal("150"), Decimal("-0.0006"), Decimal("120000000")),
    "DOGEUSDT": ("DOGE", Decimal("0.15"), Decimal("0.0002"), Decimal("80000000")),
}


def _build_exchange(settings: AppSettings) -> ExchangeClient:
    logger = get_logger("autopilot.main")
    if settings.trading.mode == "live":
        if not settings.exchange.api_key.get_secret_value():
            logger.warning("no_api_keys_configured", mode="live")
        return BinanceClient(settings.exchange, settings.trading.quote_asset)

    paper = PaperExchangeClient(
        quote_asset=settings.trading.quote_asset,
        default_leverage=settings.trading.max_leverage,
    )
    split = settings.trading.paper_initial_usdt * settings.allocation.spot_ratio
    paper.deposit(settings.trading.quote_asset, split)
    paper.set_futures_wallet(settings.trading.paper_initial_usdt - split)
    for symbol, (base, price, rate, volume) in _PAPER_MARKETS.items():
        paper.list_market(symbol, base, price, funding_rate=rate, volume_24h=volume)
    logger.info("paper_exchange_seeded", usdt=str(settings.trading.paper_initial_usdt))
    return paper


def _build_engine(settings: AppSettings) -> tuple[Engine, ExchangeClient, AuditStore | None]:
    exchange = _build_exchange(settings)
    store = AuditStore(settings.audit.db_path) if settings.audit.persist else None
    return Engine(settings, exchange, audit_store=store), exchange, store


def _setup_signal_handlers(engine: Engine) -> None:
    """Register SIGINT/SIGTERM for graceful stop. Needs a running loop."""
    logger = get_logger("autopilot.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        asyncio.create_task(engine.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _start_resources(exchange: ExchangeClient, store: AuditStore | None) -> None:
    await exchange.connect()
    if store is not None:
        await store.connect()


async def _stop_resources(exchange: ExchangeClient, store: AuditStore | None) -> None:
    if store is not None:
        await store.close()
    await exchange.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect, run the engine as a background task, and tear down on exit."""
    logger = get_logger("autopilot.main")
    engine: Engine = app.state.engine
    exchange: ExchangeClient = app.state.exchange
    store: AuditStore | None = app.state.audit_store

    await _start_resources(exchange, store)
    engine_task = asyncio.create_task(engine.run())
    logger.info("lifespan_started", mode=engine.state.mode)

    yield

    await engine.stop()
    engine_task.cancel()
    try:
        await engine_task
    except asyncio.CancelledError:
        pass
    await _stop_resources(exchange, store)
    logger.info("funding_autopilot_stopped")


async def run() -> None:
    """Run the autopilot, with the dashboard unless DASHBOARD_ENABLED=false."""
    settings = AppSettings()
    setup_logging(settings.log_level)
    logger = get_logger("autopilot.main")

    engine, exchange, store = _build_engine(settings)

    if settings.dashboard.enabled:
        from autopilot.dashboard.app import create_dashboard_app

        app = create_dashboard_app(engine=engine, lifespan=lifespan)
        app.state.exchange = exchange
        app.state.audit_store = store

        logger.info(
            "starting_with_dashboard",
            host=settings.dashboard.host,
            port=settings.dashboard.port,
            mode=settings.trading.mode,
        )
        config = uvicorn.Config(
            app,
            host=settings.dashboard.host,
            port=settings.dashboard.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        _setup_signal_handlers(engine)
        logger.info(
            "starting_without_dashboard",
            mode=settings.trading.mode,
            max_positions=settings.trading.max_positions,
            target_utilization=str(settings.trading.target_utilization),
        )
        try:
            await _start_resources(exchange, store)
            await engine.run()
        finally:
            await _stop_resources(exchange, store)
            logger.info("funding_autopilot_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
