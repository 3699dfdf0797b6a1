"""Workflow audit layer -- step/validation ledger, circuit breaker and optional persistence."""

from autopilot.audit.auditor import StepName, WorkflowAuditor, WorkflowStep
from autopilot.audit.store import AuditStore

__all__ = ["AuditStore", "StepName", "WorkflowAuditor", "WorkflowStep"]
