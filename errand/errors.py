"""Exception hierarchy for errand."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorSeverity(str, Enum):
    """How a failed tool invocation should be treated by the run loop."""

    RETRYABLE = "retryable"
    NON_CRITICAL = "non_critical"
    CRITICAL = "critical"


class ErrandError(Exception):
    """Base class for all errand errors."""


class PlanError(ErrandError):
    """The intent or step list cannot produce a valid plan."""


class UnresolvedReferenceError(ErrandError):
    """A step referenced an output key that is not in the runtime state.

    Only raised when a plan is executed out of order or was built
    incorrectly, so it is never retried.
    """

    def __init__(self, name: str, step_id: Optional[int] = None) -> None:
        self.name = name
        self.step_id = step_id
        where = f" in step {step_id}" if step_id is not None else ""
        super().__init__(f"Unresolved reference ${name}{where}")


class ToolExecutionError(ErrandError):
    """A tool executor reported an unsuccessful invocation."""

    def __init__(
        self, message: str, severity: Optional[ErrorSeverity] = None
    ) -> None:
        super().__init__(message)
        self.severity = severity


class ConfirmationRequired(ErrandError):
    """A step needs human confirmation but no approver is available."""

    def __init__(self, step_id: int) -> None:
        self.step_id = step_id
        super().__init__(f"Step {step_id} requires confirmation")


class WorkflowNotFoundError(ErrandError):
    """No workflow exists with the given id or name."""


class WorkflowExistsError(ErrandError):
    """A workflow with the same name already exists."""


class WorkflowBusyError(ErrandError):
    """The workflow already has a run in flight."""
