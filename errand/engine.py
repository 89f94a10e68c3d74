"""Execution loop that drives a saved workflow through one run."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field

from .audit import AuditLog
from .confidence import ConfidenceTracker, correction_rows
from .config import ErrandConfig
from .contracts import Step
from .errors import (
    ConfirmationRequired,
    ErrorSeverity,
    ToolExecutionError,
    UnresolvedReferenceError,
    WorkflowBusyError,
    WorkflowNotFoundError,
)
from .persistence.models import RunEvent, RunStatus, WorkflowRecord
from .persistence.repository import WorkflowRepository
from .recovery import ErrorRecovery
from .runtime import Runtime
from .tools.base import ToolExecutor, ToolResult

logger = logging.getLogger(__name__)


class Decision(BaseModel):
    """An approver's answer for a step that needs confirmation."""

    action: Literal["approve", "correct", "skip"]
    params: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def approve(cls) -> "Decision":
        return cls(action="approve")

    @classmethod
    def correct(cls, params: Dict[str, Any]) -> "Decision":
        return cls(action="correct", params=params)

    @classmethod
    def skip(cls) -> "Decision":
        return cls(action="skip")


class OutputReview(BaseModel):
    """A replacement for a step's output chosen by the approver."""

    output: Any
    correction_type: str = "output_edit"


class StepApprover(metaclass=abc.ABCMeta):
    """Human in the loop for steps that are not yet autonomous."""

    @abc.abstractmethod
    async def confirm(
        self, step: Step, preview: str, params: Dict[str, Any]
    ) -> Decision:
        """Approve, correct or skip ``step`` before it runs."""
        raise NotImplementedError

    async def review_output(self, step: Step, output: Any) -> Optional[OutputReview]:
        """Optionally replace a supervised step's output (accept by default)."""
        return None


class RunResult(BaseModel):
    run_id: str
    workflow_id: str
    status: RunStatus
    output: Dict[str, Any] = Field(default_factory=dict)
    log: List[RunEvent] = Field(default_factory=list)
    failed_steps: List[int] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "completed" and not self.failed_steps


class _RunState:
    """Mutable bookkeeping for one run."""

    def __init__(
        self,
        workflow: WorkflowRecord,
        runtime: Runtime,
        run_id: str,
        audit: Optional[AuditLog],
    ):
        self.workflow = workflow
        self.run_id = run_id
        self.audit = audit
        self.runtime = runtime
        self.log: List[RunEvent] = []
        self.failed_keys: Set[str] = set()
        self.failed_steps: List[int] = []
        self.status: RunStatus = "completed"
        self.error: Optional[str] = None

    def event(
        self,
        step: Optional[Step],
        name: str,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        step_id = step.id if step else None
        self.log.append(RunEvent(step_id=step_id, event=name, output=output, error=error))

    def fail_output(self, step: Step) -> None:
        if step.output_key:
            self.failed_keys.add(step.output_key)

    async def audit_event(self, event: str, details: Any) -> None:
        if self.audit is not None:
            await self.audit.record(event, details)


class WorkflowRunner:
    """Run saved workflows step by step.

    Steps whose confidence is below the autonomy threshold are sent to the
    ``approver``; without one the run stops at the first such step. Tool
    failures are retried according to ``ErrorRecovery.for_step`` and then
    handled by severity.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: ToolExecutor,
        approver: Optional[StepApprover] = None,
        config: Optional[ErrandConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.approver = approver
        self.config = config or ErrandConfig()
        self._sleep = sleep
        self._active: Set[str] = set()

    async def run(
        self,
        workflow_id: str,
        trigger_type: str = "manual",
        context: Optional[Dict[str, Any]] = None,
    ) -> RunResult:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        if workflow_id in self._active:
            raise WorkflowBusyError(f"Workflow '{workflow.name}' is already running")
        self._active.add(workflow_id)
        try:
            return await self._run(workflow, trigger_type, context or {})
        finally:
            self._active.discard(workflow_id)

    def is_running(self, workflow_id: str) -> bool:
        return workflow_id in self._active

    # ------------------------------------------------------------------
    async def _run(
        self, workflow: WorkflowRecord, trigger_type: str, context: Dict[str, Any]
    ) -> RunResult:
        # PlanError surfaces before a run is recorded
        runtime = Runtime(workflow.steps)
        run = await self.repository.start_run(workflow.id)
        audit = None
        if self.config.audit.enabled:
            audit = AuditLog(self.config.audit.log_dir, workflow.id, workflow.name, run.id)
        state = _RunState(workflow, runtime, run.id, audit)
        logger.info(f"Starting run {run.id} of {workflow.name} ({trigger_type})")
        await state.audit_event(
            "workflow_start", {"trigger_type": trigger_type, "context": context}
        )

        try:
            await self._walk(state)
        except ConfirmationRequired as exc:
            state.event(state.runtime.current_step, "confirmation_required", error=str(exc))
            state.status = "failed"
            state.error = str(exc)
            logger.warning(f"Run {run.id} stopped: {exc}")
        except UnresolvedReferenceError as exc:
            state.event(state.runtime.current_step, "failed", error=str(exc))
            state.status = "failed"
            state.error = str(exc)
            await self._finish(state)
            raise
        except Exception as exc:
            state.status = "failed"
            state.error = str(exc)
            logger.error(f"Run {run.id} of {workflow.name} aborted: {exc}")
            await self._finish(state)
            raise

        await self._finish(state)
        return RunResult(
            run_id=run.id,
            workflow_id=workflow.id,
            status=state.status,
            output=state.runtime.snapshot(),
            log=state.log,
            failed_steps=state.failed_steps,
            error=state.error,
        )

    async def _walk(self, state: _RunState) -> None:
        runtime = state.runtime
        while not runtime.is_finished():
            step = runtime.current_step
            blocked = [name for name in step.references() if name in state.failed_keys]
            if blocked:
                state.event(step, "skipped_dependency", error=f"${blocked[0]} is unavailable")
                state.fail_output(step)
                runtime.mark_complete(step)
                continue

            if not await self._run_step(state, step):
                return
            runtime.mark_complete(step)

    async def _run_step(self, state: _RunState, step: Step) -> bool:
        """Execute one step. Returns ``False`` when the run must stop."""
        runtime = state.runtime
        params = runtime.resolve_params(step.params, step.id)
        tracker = ConfidenceTracker(self.repository, state.workflow.id, step.id)
        supervised = not tracker.is_autonomous(step.confidence)
        corrections: List[tuple] = []

        if supervised:
            if self.approver is None:
                raise ConfirmationRequired(step.id)
            decision = await self.approver.confirm(step, runtime.preview_step(step), params)
            await state.audit_event(
                "user_action", {"step_id": step.id, "action": decision.action}
            )
            if decision.action == "skip":
                state.event(step, "skipped")
                state.fail_output(step)
                await self._set_confidence(state, step, tracker.on_skip(step.confidence), "skip")
                return True
            if decision.action == "correct":
                corrected = {**params, **decision.params}
                corrections.append(("param_edit", params, corrected))
                params = corrected

        await state.audit_event(
            "step_start", {"step_id": step.id, "tool": step.tool, "params": params}
        )
        recovery = ErrorRecovery.for_step(step, self.config.retry, sleep=self._sleep)
        result = await recovery.with_retry(lambda: self._execute(step, params))

        if result is None:
            message = recovery.describe_error(recovery.last_error)
            state.event(step, "failed", error=message)
            state.failed_steps.append(step.id)
            state.fail_output(step)
            await state.audit_event(
                "step_result",
                {"step_id": step.id, "success": False, "error": message, "attempts": recovery.attempts},
            )
            for correction_type, original, corrected in corrections:
                for before, after in correction_rows(correction_type, original, corrected):
                    await self.repository.record_correction(
                        state.workflow.id, step.id, correction_type, before, after
                    )
            if recovery.last_severity is ErrorSeverity.CRITICAL:
                state.status = "failed"
                state.error = message
                logger.error(f"Step {step.id} of {state.workflow.name} failed: {message}")
                return False
            logger.warning(f"Step {step.id} of {state.workflow.name} failed, continuing: {message}")
            return True

        output = result.output
        if supervised:
            review = await self.approver.review_output(step, output)
            if review is not None:
                corrections.append((review.correction_type, output, review.output))
                output = review.output

        runtime.store_result(step.output_key, output)
        state.event(step, "completed", output=output)
        await state.audit_event(
            "step_result", {"step_id": step.id, "success": True, "output": output}
        )

        confidence = step.confidence
        if corrections:
            for correction_type, original, corrected in corrections:
                confidence = await tracker.on_correction(
                    confidence, correction_type, original, corrected
                )
                await state.audit_event(
                    "user_correction",
                    {"step_id": step.id, "correction_type": correction_type},
                )
            await self._set_confidence(state, step, confidence, "correction")
        else:
            await self._set_confidence(state, step, tracker.on_approval(confidence), "approval")
        return True

    async def _execute(self, step: Step, params: Dict[str, Any]) -> ToolResult:
        result = await self.executor.execute(step, params)
        if not result.success:
            raise ToolExecutionError(
                result.error or f"{step.tool} failed",
                result.severity or ErrorSeverity.NON_CRITICAL,
            )
        return result

    async def _set_confidence(
        self, state: _RunState, step: Step, confidence: float, reason: str
    ) -> None:
        if confidence == step.confidence:
            return
        await self.repository.update_step_confidence(state.workflow.id, step.id, confidence)
        await state.audit_event(
            "confidence_change",
            {"step_id": step.id, "old": step.confidence, "new": confidence, "reason": reason},
        )
        step.confidence = confidence

    async def _finish(self, state: _RunState) -> None:
        workflow = state.workflow
        await self.repository.complete_run(
            state.run_id, state.status, state.runtime.snapshot(), state.log
        )
        success = state.status == "completed" and not state.failed_steps
        await self.repository.increment_run_count(workflow.id, success)
        confidence = await self.repository.recompute_confidence(workflow.id)
        await state.audit_event(
            "workflow_complete",
            {
                "status": state.status,
                "success": success,
                "failed_steps": state.failed_steps,
                "confidence": confidence,
                "state_keys": sorted(state.runtime.state),
            },
        )
        logger.info(
            f"Run {state.run_id} of {workflow.name} finished: {state.status} "
            f"(confidence {confidence:.2f})"
        )
