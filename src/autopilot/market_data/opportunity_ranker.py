"""Opportunity ranking for funding-rate arbitrage candidates.

Scores are computed once when an Opportunity is built from market data:

  daily_rate = |funding_rate| * 3 * 100            (percent per day)
  opportunity_score = |funding_rate| * 1000 * min(volume_usd / 1_000_000, 10)

Ranking is a pure, stable sort on that score, so equally-scored
opportunities keep the order the accessor produced them in.
"""

from autopilot.models import Opportunity


class OpportunityRanker:
    """Orders opportunities by liquidity-weighted funding score."""

    def rank(self, opportunities: list[Opportunity]) -> list[Opportunity]:
        """Return a new list sorted by opportunity_score, best first.

        Empty input yields an empty list. The input list is not modified.
        """
        return sorted(opportunities, key=lambda o: o.opportunity_score, reverse=True)

    @staticmethod
    def top_unheld(
        ranked: list[Opportunity], held: set[str], limit: int | None = None
    ) -> list[Opportunity]:
        """Return ranked opportunities whose symbol is not in held, in rank order."""
        unheld = [o for o in ranked if o.symbol not in held]
        return unheld if limit is None else unheld[:limit]

    @staticmethod
    def rank_of(ranked: list[Opportunity], symbol: str) -> int | None:
        """Return the zero-based rank of a symbol, or None if it is not ranked."""
        for index, opportunity in enumerate(ranked):
            if opportunity.symbol == symbol:
                return index
        return None
