"""Portfolio layer -- live valuation of both ledgers and open hedges."""

from autopilot.portfolio.analyzer import PortfolioAnalyzer

__all__ = ["PortfolioAnalyzer"]
