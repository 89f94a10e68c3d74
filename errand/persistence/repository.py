"""Repository abstraction for workflow persistence."""

from __future__ import annotations

from typing import Any, Protocol

from ..contracts import Step
from .models import CorrectionRecord, RunEvent, RunRecord, TriggerRecord, WorkflowRecord


class WorkflowRepository(Protocol):
    """Protocol for workflow persistence backends."""

    async def create_workflow(
        self,
        name: str,
        steps: list[Step],
        trigger: dict | None = None,
        description: str = "",
    ) -> WorkflowRecord:
        """Persist a new workflow. Raises ``WorkflowExistsError`` on a name clash."""

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        """Retrieve a workflow and its steps by id."""

    async def get_workflow_by_name(self, name: str) -> WorkflowRecord | None:
        """Retrieve a workflow and its steps by name."""

    async def list_workflows(self) -> list[WorkflowRecord]:
        """Return all workflows, most-run first."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow with its steps and history."""

    async def set_enabled(self, workflow_id: str, enabled: bool) -> None:
        """Enable or disable trigger-driven runs."""

    async def start_run(self, workflow_id: str) -> RunRecord:
        """Record the start of a run."""

    async def complete_run(
        self, run_id: str, status: str, output: Any, log: list[RunEvent]
    ) -> None:
        """Seal a run. Sealed runs are left untouched."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve a run with its log."""

    async def list_runs(
        self,
        workflow_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[RunRecord]:
        """Return runs, newest first."""

    async def update_step_confidence(
        self, workflow_id: str, step_order: int, confidence: float
    ) -> None:
        """Persist a step's confidence score."""

    async def increment_run_count(self, workflow_id: str, success: bool) -> None:
        """Bump ``run_count`` and, on success, ``success_count``."""

    async def recompute_confidence(self, workflow_id: str) -> float:
        """Set the aggregate confidence to the mean of the step scores."""

    async def record_correction(
        self,
        workflow_id: str,
        step_order: int,
        correction_type: str,
        original: Any,
        corrected: Any,
    ) -> CorrectionRecord:
        """Append a correction row."""

    async def list_corrections(
        self, workflow_id: str, step_order: int | None = None
    ) -> list[CorrectionRecord]:
        """Return corrections in insertion order."""

    async def record_trigger(
        self, workflow_id: str, trigger_type: str, context: dict | None = None
    ) -> TriggerRecord:
        """Append a trigger firing."""

    async def list_triggers(
        self, workflow_id: str, limit: int | None = None
    ) -> list[TriggerRecord]:
        """Return trigger firings in insertion order (the last ``limit`` ones)."""
