"""Workflow auditor -- step/validation ledger and circuit breaker.

Every multi-step capital movement (allocation, conversion, transfer,
deployment, close) is wrapped in an audited step. A step declares the
validations it requires; completing a step whose required validations did
not all run and pass forces it to failure and, for required steps, records
a critical failure.

While any critical failure is younger than the breaker window,
is_safe_to_proceed() returns False and the scheduler and optimizer stop
moving capital.

This is a ledger, not a transaction system: nothing here undoes exchange
actions.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from autopilot.config import AuditSettings
from autopilot.exceptions import CriticalWorkflowFailure
from autopilot.logging import get_logger

logger = get_logger(__name__)


class StepName(str, Enum):
    """Audited workflow steps."""

    CAPITAL_ALLOCATION = "CAPITAL_ALLOCATION"
    ASSET_CONVERSION = "ASSET_CONVERSION"
    CAPITAL_TRANSFER = "CAPITAL_TRANSFER"
    POSITION_DEPLOYMENT = "POSITION_DEPLOYMENT"
    DIRECTIONAL_DEPLOYMENT = "DIRECTIONAL_DEPLOYMENT"
    POSITION_CLOSE = "POSITION_CLOSE"
    OPPORTUNITY_ANALYSIS = "OPPORTUNITY_ANALYSIS"


@dataclass(frozen=True)
class StepDefinition:
    title: str
    required: bool
    validations: tuple[str, ...]


STEP_DEFINITIONS: dict[StepName, StepDefinition] = {
    StepName.CAPITAL_ALLOCATION: StepDefinition(
        "Capital Allocation Analysis",
        True,
        ("portfolio_analyzed", "allocation_calculated", "deficits_identified"),
    ),
    StepName.ASSET_CONVERSION: StepDefinition(
        "Asset Conversion",
        True,
        ("assets_identified", "conversion_executed", "usdt_received"),
    ),
    StepName.CAPITAL_TRANSFER: StepDefinition(
        "Capital Transfer",
        True,
        ("transfer_executed", "balances_updated", "allocation_verified"),
    ),
    StepName.POSITION_DEPLOYMENT: StepDefinition(
        "Position Deployment",
        True,
        ("spot_purchase", "futures_hedge", "delta_neutral_confirmed"),
    ),
    StepName.DIRECTIONAL_DEPLOYMENT: StepDefinition(
        "Directional Deployment",
        True,
        ("futures_entry", "position_verified"),
    ),
    StepName.POSITION_CLOSE: StepDefinition(
        "Position Close",
        False,
        ("futures_closed",),
    ),
    StepName.OPPORTUNITY_ANALYSIS: StepDefinition(
        "Opportunity Analysis",
        False,
        ("funding_rates_fetched", "opportunities_ranked", "liquidity_verified"),
    ),
}


@dataclass
class ValidationRecord:
    success: bool
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkflowStep:
    """One audited workflow step. Append-only until completed."""

    step_name: StepName
    start_time: float
    context: dict[str, Any] = field(default_factory=dict)
    validations: dict[str, ValidationRecord] = field(default_factory=dict)
    completed: bool = False
    success: bool = False
    end_time: float | None = None

    @property
    def duration(self) -> float | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def missing_validations(self) -> list[str]:
        """Required validations that did not run or did not pass."""
        required = STEP_DEFINITIONS[self.step_name].validations
        return [
            name
            for name in required
            if name not in self.validations or not self.validations[name].success
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step_name.value,
            "name": STEP_DEFINITIONS[self.step_name].title,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "context": _jsonable(self.context),
            "validations": {
                name: {
                    "success": record.success,
                    "timestamp": record.timestamp,
                    "data": _jsonable(record.data),
                }
                for name, record in self.validations.items()
            },
            "completed": self.completed,
            "success": self.success,
        }


@dataclass
class AuditIssue:
    """A validation error or critical failure."""

    timestamp: float
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "message": self.message, "data": _jsonable(self.data)}


def _jsonable(value: Any) -> Any:
    """Render Decimals and enums in audit payloads as plain JSON values."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class WorkflowAuditor:
    """In-memory audit ledger with a time-windowed circuit breaker.

    Args:
        settings: Breaker window and retention bound.
        clock: Returns the current Unix time; injectable for tests.
    """

    def __init__(
        self,
        settings: AuditSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._steps: list[WorkflowStep] = []
        self._errors: list[AuditIssue] = []
        self._critical: list[AuditIssue] = []
        self._undrained: list[WorkflowStep] = []
        self._critical_listeners: list[Callable[[AuditIssue], None]] = []
        self._step_listeners: list[Callable[[WorkflowStep], None]] = []

    # ── listeners ──

    def on_critical(self, callback: Callable[[AuditIssue], None]) -> None:
        """Register a callback invoked for every critical failure."""
        self._critical_listeners.append(callback)

    def on_step(self, callback: Callable[[WorkflowStep], None]) -> None:
        """Register a callback invoked for every completed step."""
        self._step_listeners.append(callback)

    # ── ledger ──

    @property
    def steps(self) -> list[WorkflowStep]:
        return list(self._steps)

    @property
    def validation_errors(self) -> list[AuditIssue]:
        return list(self._errors)

    @property
    def critical_failures(self) -> list[AuditIssue]:
        return list(self._critical)

    def start_step(self, step_name: StepName, context: dict[str, Any] | None = None) -> WorkflowStep:
        step = WorkflowStep(
            step_name=step_name,
            start_time=self._clock(),
            context=dict(context or {}),
        )
        self._steps.append(step)
        logger.info(
            "audit_step_started",
            step=step_name.value,
            **{k: str(v) for k, v in step.context.items()},
        )
        return step

    def current_step(self, step_name: StepName) -> WorkflowStep | None:
        """Return the most recently started step with this name."""
        for step in reversed(self._steps):
            if step.step_name == step_name:
                return step
        return None

    def validate(
        self,
        step_name: StepName,
        validation: str,
        success: bool,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Record the outcome of one validation of the current step."""
        step = self.current_step(step_name)
        if step is None:
            self._record_error(f"Cannot validate {validation} - step {step_name.value} not started")
            return False

        step.validations[validation] = ValidationRecord(
            success=success, timestamp=self._clock(), data=dict(data or {})
        )
        if success:
            logger.info("audit_validation_passed", step=step_name.value, validation=validation)
        else:
            logger.warning("audit_validation_failed", step=step_name.value, validation=validation)
            self._record_error(f"Validation failed: {step_name.value}.{validation}", data)
        return success

    def annotate(self, step_name: StepName, **context: Any) -> None:
        """Attach extra context (state reached, amounts) to the current step."""
        step = self.current_step(step_name)
        if step is not None:
            step.context.update(context)

    def complete_step(self, step_name: StepName, success: bool = True) -> bool:
        """Close the current step, cross-checking its required validations.

        Returns the effective outcome: False whenever a required validation
        is missing or failed, whatever the caller claimed.
        """
        step = self.current_step(step_name)
        if step is None:
            self._record_error(f"Cannot complete step {step_name.value} - not started")
            return False

        definition = STEP_DEFINITIONS[step_name]
        missing = step.missing_validations()
        if missing:
            success = False

        self._finish(step, success)

        if not success and definition.required:
            if missing:
                message = (
                    f"Step {step_name.value} completed but missing validations: {', '.join(missing)}"
                )
            else:
                message = f"Required step {step_name.value} failed - workflow integrity compromised"
            self._record_critical(message, {"step": step_name.value, "missing": missing, **step.context})
        elif missing:
            self._record_error(
                f"Step {step_name.value} completed without validations: {', '.join(missing)}",
                step.context,
            )
        return success

    def abandon_step(self, step_name: StepName, reason: str) -> bool:
        """Close the current step as failed before any capital was moved.

        Recorded as a validation error, not a critical failure. Always returns False.
        """
        step = self.current_step(step_name)
        if step is None:
            self._record_error(f"Cannot abandon step {step_name.value} - not started")
            return False
        step.context["abandoned"] = reason
        self._finish(step, False)
        self._record_error(f"Step {step_name.value} abandoned: {reason}", step.context)
        return False

    def is_safe_to_proceed(self) -> bool:
        """False while any critical failure lies inside the breaker window."""
        cutoff = self._clock() - self._settings.breaker_window_seconds
        return not any(failure.timestamp > cutoff for failure in self._critical)

    def require_safe(self) -> None:
        """Raise while the circuit breaker is open.

        Raises:
            CriticalWorkflowFailure: With the time the breaker closes again.
        """
        reopens_at = self.breaker_reopens_at()
        if reopens_at is not None:
            raise CriticalWorkflowFailure(
                f"Circuit breaker open after critical failure; reopens at {reopens_at:.0f}"
            )

    def breaker_reopens_at(self) -> float | None:
        """Unix time at which the breaker closes again, or None if it is not open."""
        if self.is_safe_to_proceed():
            return None
        latest = max(failure.timestamp for failure in self._critical)
        return latest + self._settings.breaker_window_seconds

    # ── reporting and retention ──

    def generate_report(self) -> dict[str, Any]:
        completed = [s for s in self._steps if s.completed]
        return {
            "timestamp": self._clock(),
            "summary": {
                "total_steps": len(self._steps),
                "completed_steps": len(completed),
                "successful_steps": sum(1 for s in self._steps if s.success),
                "failed_steps": sum(1 for s in completed if not s.success),
                "validation_errors": len(self._errors),
                "critical_failures": len(self._critical),
            },
            "steps": [s.to_dict() for s in self._steps],
            "errors": [e.to_dict() for e in self._errors],
            "critical_failures": [c.to_dict() for c in self._critical],
            "integrity": "INTACT" if not self._critical else "COMPROMISED",
            "safe_to_proceed": self.is_safe_to_proceed(),
        }

    def maybe_truncate(self) -> bool:
        """Drop history once the ledger exceeds its bound.

        In-progress steps and critical failures still inside the breaker
        window are kept, so truncation never closes an open breaker.
        Completed steps nobody drained are capped at the same bound.
        Returns True if anything was dropped.
        """
        if len(self._steps) <= self._settings.max_log_size:
            return False
        cutoff = self._clock() - self._settings.breaker_window_seconds
        dropped = len(self._steps)
        self._steps = [s for s in self._steps if not s.completed]
        self._errors = []
        self._critical = [c for c in self._critical if c.timestamp > cutoff]
        self._undrained = self._undrained[-self._settings.max_log_size :]
        logger.info(
            "audit_log_truncated",
            dropped_steps=dropped - len(self._steps),
            kept_critical=len(self._critical),
        )
        return True

    def reset(self) -> None:
        self._steps = []
        self._errors = []
        self._critical = []
        self._undrained = []
        logger.info("audit_state_reset")

    def drain_completed(self) -> list[WorkflowStep]:
        """Return completed steps not yet handed out, for durable storage."""
        drained, self._undrained = self._undrained, []
        return drained

    # ── internals ──

    def _finish(self, step: WorkflowStep, success: bool) -> None:
        step.completed = True
        step.success = success
        step.end_time = self._clock()
        self._undrained.append(step)

        log = logger.info if success else logger.warning
        log(
            "audit_step_completed",
            step=step.step_name.value,
            success=success,
            duration=round(step.duration or 0.0, 3),
        )
        for callback in self._step_listeners:
            callback(step)

    def _record_error(self, message: str, data: dict[str, Any] | None = None) -> None:
        self._errors.append(AuditIssue(timestamp=self._clock(), message=message, data=dict(data or {})))
        logger.warning("audit_error", message=message)

    def _record_critical(self, message: str, data: dict[str, Any] | None = None) -> None:
        issue = AuditIssue(timestamp=self._clock(), message=message, data=dict(data or {}))
        self._critical.append(issue)
        logger.error("audit_critical_failure", message=message, **{k: str(v) for k, v in issue.data.items()})
        for callback in self._critical_listeners:
            callback(issue)
