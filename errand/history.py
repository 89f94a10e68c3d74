"""Read-only views over recorded runs."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .persistence.models import RunRecord
from .persistence.repository import WorkflowRepository

ERROR_EVENTS = ("failed", "confirmation_required")


class RunSummary(BaseModel):
    id: str
    workflow_id: str
    workflow_name: Optional[str] = None
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    failed_steps: List[int] = Field(default_factory=list)


class WorkflowStats(BaseModel):
    total_runs: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: float = 0.0
    avg_duration_seconds: float = 0.0


class RecentError(BaseModel):
    run_id: str
    started_at: datetime
    errors: List[str] = Field(default_factory=list)


def summarize(run: RunRecord, workflow_name: Optional[str] = None) -> RunSummary:
    return RunSummary(
        id=run.id,
        workflow_id=run.workflow_id,
        workflow_name=workflow_name,
        status=run.status,
        started_at=run.started_at,
        completed_at=run.completed_at,
        duration_seconds=run.duration_seconds,
        failed_steps=sorted(
            {e.step_id for e in run.log if e.event == "failed" and e.step_id is not None}
        ),
    )


class History:
    """Run listings and statistics for one or all workflows."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    async def get_runs(
        self, workflow_id: str, limit: int = 20, status: Optional[str] = None
    ) -> List[RunSummary]:
        runs = await self.repository.list_runs(workflow_id, status=status, limit=limit)
        workflow = await self.repository.get_workflow(workflow_id)
        name = workflow.name if workflow else None
        return [summarize(run, name) for run in runs]

    async def get_all_runs(
        self, limit: int = 20, status: Optional[str] = None
    ) -> List[RunSummary]:
        runs = await self.repository.list_runs(status=status, limit=limit)
        names: Dict[str, str] = {
            wf.id: wf.name for wf in await self.repository.list_workflows()
        }
        return [summarize(run, names.get(run.workflow_id)) for run in runs]

    async def get_stats(self, workflow_id: str) -> WorkflowStats:
        """Aggregate figures over sealed runs."""
        runs = [
            r
            for r in await self.repository.list_runs(workflow_id)
            if r.completed_at is not None
        ]
        if not runs:
            return WorkflowStats()
        successful = sum(1 for r in runs if r.status == "completed")
        failed = sum(1 for r in runs if r.status == "failed")
        durations = [r.duration_seconds for r in runs]
        return WorkflowStats(
            total_runs=len(runs),
            successful=successful,
            failed=failed,
            success_rate=round(successful / len(runs) * 100, 1),
            avg_duration_seconds=round(sum(durations) / len(durations), 2),
        )

    async def get_recent_errors(
        self, workflow_id: str, limit: int = 5
    ) -> List[RecentError]:
        runs = await self.repository.list_runs(workflow_id, status="failed", limit=limit)
        return [
            RecentError(
                run_id=run.id,
                started_at=run.started_at,
                errors=[
                    e.error for e in run.log if e.event in ERROR_EVENTS and e.error
                ],
            )
            for run in runs
        ]
