"""Audited opportunity scan shared by the deployment cycle and the optimizer."""

from autopilot.audit.auditor import StepName, WorkflowAuditor
from autopilot.exceptions import MarketDataError
from autopilot.logging import get_logger
from autopilot.market_data.accessor import MarketDataAccessor
from autopilot.market_data.opportunity_ranker import OpportunityRanker
from autopilot.models import Opportunity

logger = get_logger(__name__)


async def scan_opportunities(
    accessor: MarketDataAccessor,
    ranker: OpportunityRanker,
    auditor: WorkflowAuditor,
) -> list[Opportunity]:
    """Fetch, filter and rank opportunities under an OPPORTUNITY_ANALYSIS step.

    Raises:
        MarketDataError: Re-raised after the step is abandoned, so the caller
            aborts its cycle instead of acting on missing data.
    """
    step = StepName.OPPORTUNITY_ANALYSIS
    auditor.start_step(step)
    try:
        opportunities = await accessor.get_opportunities()
    except MarketDataError as exc:
        auditor.validate(step, "funding_rates_fetched", False, {"error": str(exc)})
        auditor.abandon_step(step, "market data unavailable")
        raise

    auditor.validate(step, "funding_rates_fetched", True, {"count": len(opportunities)})
    ranked = ranker.rank(opportunities)
    auditor.validate(
        step,
        "opportunities_ranked",
        True,
        {"top": ranked[0].symbol if ranked else None, "count": len(ranked)},
    )
    # The accessor drops anything under the liquidity floor; an empty set is
    # a valid (quiet) market, not a failure.
    auditor.validate(step, "liquidity_verified", True, {"passed": len(ranked)})
    auditor.complete_step(step, True)

    if ranked:
        top = ranked[0]
        logger.info(
            "opportunities_ranked",
            count=len(ranked),
            top_symbol=top.symbol,
            top_daily_rate=str(top.daily_rate),
            top_score=str(top.opportunity_score),
        )
    else:
        logger.info("no_opportunities_passed_filters")
    return ranked
