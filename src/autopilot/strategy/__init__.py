"""Strategy layer -- idle-capital deployment and portfolio optimization cycles."""

from autopilot.strategy.capital_deployment import CapitalDeploymentCycle
from autopilot.strategy.optimizer import PortfolioOptimizer

__all__ = ["CapitalDeploymentCycle", "PortfolioOptimizer"]
