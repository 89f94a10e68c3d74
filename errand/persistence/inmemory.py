"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, List

from ..contracts import Step
from ..errors import WorkflowExistsError
from .models import (
    CorrectionRecord,
    RunEvent,
    RunRecord,
    TriggerRecord,
    WorkflowRecord,
    stringify,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowRecord] = {}
        self._runs: Dict[str, RunRecord] = {}
        self._corrections: List[CorrectionRecord] = []
        self._triggers: List[TriggerRecord] = []
        self._correction_id = 0
        self._trigger_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_workflow(
        self,
        name: str,
        steps: list[Step],
        trigger: dict | None = None,
        description: str = "",
    ) -> WorkflowRecord:
        async with self._lock:
            if any(wf.name == name for wf in self._workflows.values()):
                raise WorkflowExistsError(f"Workflow '{name}' already exists")
            record = WorkflowRecord(
                id=str(uuid.uuid4()),
                name=name,
                description=description,
                trigger=trigger or {"type": "manual"},
                steps=[s.model_copy(deep=True) for s in steps],
            )
            record.confidence = _mean(s.confidence for s in record.steps)
            self._workflows[record.id] = record
            return record.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def get_workflow_by_name(self, name: str) -> WorkflowRecord | None:
        for wf in self._workflows.values():
            if wf.name == name:
                return wf.model_copy(deep=True)
        return None

    async def list_workflows(self) -> list[WorkflowRecord]:
        workflows = sorted(
            self._workflows.values(), key=lambda wf: wf.run_count, reverse=True
        )
        return [wf.model_copy(deep=True) for wf in workflows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self._lock:
            if self._workflows.pop(workflow_id, None) is None:
                return False
            self._runs = {
                k: r for k, r in self._runs.items() if r.workflow_id != workflow_id
            }
            self._corrections = [
                c for c in self._corrections if c.workflow_id != workflow_id
            ]
            self._triggers = [t for t in self._triggers if t.workflow_id != workflow_id]
            return True

    async def set_enabled(self, workflow_id: str, enabled: bool) -> None:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf:
                wf.enabled = enabled
                wf.updated_at = utcnow()

    # ------------------------------------------------------------------
    async def start_run(self, workflow_id: str) -> RunRecord:
        async with self._lock:
            run = RunRecord(id=str(uuid.uuid4()), workflow_id=workflow_id)
            self._runs[run.id] = run
            return run.model_copy(deep=True)

    async def complete_run(
        self, run_id: str, status: str, output: Any, log: list[RunEvent]
    ) -> None:
        async with self._lock:
            run = self._runs.get(run_id)
            # sealed runs are append-only
            if run is None or run.status != "running":
                return
            run.status = status
            run.output = output
            run.log = [e.model_copy(deep=True) for e in log]
            run.completed_at = utcnow()

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        workflow_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[RunRecord]:
        runs = [
            r
            for r in reversed(list(self._runs.values()))
            if (workflow_id is None or r.workflow_id == workflow_id)
            and (status is None or r.status == status)
        ]
        if limit is not None:
            runs = runs[:limit]
        return [r.model_copy(deep=True) for r in runs]

    # ------------------------------------------------------------------
    async def update_step_confidence(
        self, workflow_id: str, step_order: int, confidence: float
    ) -> None:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if not wf:
                return
            for step in wf.steps:
                if step.id == step_order:
                    step.confidence = confidence
            wf.updated_at = utcnow()

    async def increment_run_count(self, workflow_id: str, success: bool) -> None:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf:
                wf.run_count += 1
                if success:
                    wf.success_count += 1
                wf.updated_at = utcnow()

    async def recompute_confidence(self, workflow_id: str) -> float:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if not wf:
                return 0.0
            wf.confidence = _mean(s.confidence for s in wf.steps)
            return wf.confidence

    # ------------------------------------------------------------------
    async def record_correction(
        self,
        workflow_id: str,
        step_order: int,
        correction_type: str,
        original: Any,
        corrected: Any,
    ) -> CorrectionRecord:
        async with self._lock:
            self._correction_id += 1
            record = CorrectionRecord(
                id=self._correction_id,
                workflow_id=workflow_id,
                step_order=step_order,
                correction_type=correction_type,
                original_value=stringify(original),
                corrected_value=stringify(corrected),
            )
            self._corrections.append(record)
            return record.model_copy()

    async def list_corrections(
        self, workflow_id: str, step_order: int | None = None
    ) -> list[CorrectionRecord]:
        return [
            c.model_copy()
            for c in self._corrections
            if c.workflow_id == workflow_id
            and (step_order is None or c.step_order == step_order)
        ]

    async def record_trigger(
        self, workflow_id: str, trigger_type: str, context: dict | None = None
    ) -> TriggerRecord:
        async with self._lock:
            self._trigger_id += 1
            record = TriggerRecord(
                id=self._trigger_id,
                workflow_id=workflow_id,
                trigger_type=trigger_type,
                context=context or {},
            )
            self._triggers.append(record)
            return record.model_copy(deep=True)

    async def list_triggers(
        self, workflow_id: str, limit: int | None = None
    ) -> list[TriggerRecord]:
        records = [t for t in self._triggers if t.workflow_id == workflow_id]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return [t.model_copy(deep=True) for t in records]


def _mean(values) -> float:
    values = list(values)
    return round(sum(values) / len(values), 6) if values else 0.0
