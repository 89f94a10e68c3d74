"""Data models for persisted workflow state."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import Step

RunStatus = Literal["running", "completed", "failed"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRecord(BaseModel):
    """A saved workflow with its ordered steps and counters."""

    id: str
    name: str
    description: str = ""
    trigger: dict[str, Any] = Field(default_factory=lambda: {"type": "manual"})
    steps: list[Step] = Field(default_factory=list)
    confidence: float = 0.0
    run_count: int = 0
    success_count: int = 0
    enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def trigger_type(self) -> str:
        return str(self.trigger.get("type", "manual"))


class RunEvent(BaseModel):
    """One step-level entry in a run log."""

    step_id: Optional[int] = None
    event: str
    output: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class RunRecord(BaseModel):
    """One execution attempt of a workflow."""

    id: str
    workflow_id: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: RunStatus = "running"
    output: Any = None
    log: list[RunEvent] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return round((self.completed_at - self.started_at).total_seconds(), 2)


class CorrectionRecord(BaseModel):
    """A human edit to a step's parameters or output."""

    id: Optional[int] = None
    workflow_id: str
    step_order: int
    correction_type: str
    original_value: str = ""
    corrected_value: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class TriggerRecord(BaseModel):
    """Audit entry for a trigger firing."""

    id: Optional[int] = None
    workflow_id: str
    trigger_type: str
    context: dict[str, Any] = Field(default_factory=dict)
    triggered_at: datetime = Field(default_factory=utcnow)


def stringify(value: Any) -> str:
    """Render a correction value for storage."""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, sort_keys=True)
