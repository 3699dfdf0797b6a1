"""Position layer -- two-legged deployment state machine, sizing and hedge validation."""

from autopilot.position.deployer import DeploymentState, PositionDeployer
from autopilot.position.hedge_validator import HedgeValidator
from autopilot.position.sizing import HedgeSizer

__all__ = ["DeploymentState", "HedgeSizer", "HedgeValidator", "PositionDeployer"]
