"""Market data layer -- funding-rate feed access and opportunity ranking."""

from autopilot.market_data.accessor import MarketDataAccessor
from autopilot.market_data.opportunity_ranker import OpportunityRanker

__all__ = ["MarketDataAccessor", "OpportunityRanker"]
