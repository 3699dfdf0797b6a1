"""Custom exceptions for the funding-rate autopilot.

Reads raise; capital-moving operations catch at their own boundary and
report a boolean or measured result instead of propagating.
"""


class EngineError(Exception):
    """Base exception for all engine errors."""


class MarketDataError(EngineError):
    """Raised when the funding-rate, price or volume feed is unreachable or malformed."""


class PortfolioReadError(EngineError):
    """Raised when a balance or position read fails; the cycle must not act on it."""


class OrderRejected(EngineError):
    """Raised when the exchange rejects an order (precision, minimum notional, ...)."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code

    @property
    def is_precision_error(self) -> bool:
        """Whether the rejection was about quantity precision / lot size."""
        text = str(self).lower()
        return "precision" in text or "lot_size" in text or self.code in ("-1111", "-1013")


class ValidationFailed(EngineError):
    """Raised when post-action state did not measurably improve."""


class CriticalWorkflowFailure(EngineError):
    """Raised when a required workflow step's validations did not all pass."""


class InsufficientSizeError(EngineError):
    """Raised when a computed order quantity falls below the exchange minimum."""
