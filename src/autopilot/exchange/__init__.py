"""Exchange client layer -- Binance spot and USDⓈ-M futures via ccxt, plus a paper simulation."""

from autopilot.exchange.binance_client import BinanceClient
from autopilot.exchange.client import ExchangeClient
from autopilot.exchange.paper_client import PaperExchangeClient
from autopilot.exchange.types import LotSizeRules, round_to_step

__all__ = [
    "BinanceClient",
    "ExchangeClient",
    "LotSizeRules",
    "PaperExchangeClient",
    "round_to_step",
]
