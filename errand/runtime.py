"""Per-run state and parameter resolution over a fixed step list."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .contracts import LiteralParam, Reference, Step
from .errors import UnresolvedReferenceError
from .planner import validate_plan

logger = logging.getLogger(__name__)

_PREVIEW_WIDTH = 60


def _short(value: Any) -> str:
    text = repr(value)
    if len(text) > _PREVIEW_WIDTH:
        text = text[: _PREVIEW_WIDTH - 3] + "..."
    return text


class Runtime:
    """Walks one run of a workflow, holding the outputs of earlier steps.

    A new ``Runtime`` is created for every run; it is not safe to share one
    between runs.
    """

    def __init__(self, steps: List[Step]) -> None:
        validate_plan(steps)
        self.steps = list(steps)
        self.state: Dict[str, Any] = {}
        self.executed: List[Step] = []

    @property
    def current_step(self) -> Optional[Step]:
        """First step not yet marked complete, or ``None`` when done."""
        index = len(self.executed)
        return self.steps[index] if index < len(self.steps) else None

    def is_finished(self) -> bool:
        return self.current_step is None

    def mark_complete(self, step: Step) -> None:
        """Advance past ``step`` if it is the current one."""
        current = self.current_step
        if current is not None and current.id == step.id:
            self.executed.append(current)
            logger.debug(f"Step {current.id} ({current.tool}) complete")

    def resolve_params(
        self, params: Mapping[str, Any], step_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Substitute references with their stored values."""
        resolved: Dict[str, Any] = {}
        for key, value in params.items():
            if isinstance(value, Reference):
                if value.name not in self.state:
                    raise UnresolvedReferenceError(value.name, step_id)
                resolved[key] = self.state[value.name]
            elif isinstance(value, LiteralParam):
                resolved[key] = value.value
            else:
                resolved[key] = value
        return resolved

    def store_result(self, output_key: Optional[str], value: Any) -> None:
        if output_key is None:
            return
        self.state[output_key] = value

    def pending_references(self, step: Step) -> List[str]:
        return [name for name in step.references() if name not in self.state]

    def preview_step(self, step: Step) -> str:
        """Describe what ``step`` would do with the current state."""
        lines = [f"Step {step.id}: {step.description or step.tool} [{step.tool}]"]
        for key, value in step.params.items():
            if isinstance(value, Reference):
                shown = _short(self.state[value.name]) if value.name in self.state else str(value)
            elif isinstance(value, LiteralParam):
                shown = _short(value.value)
            else:
                shown = _short(value)
            lines.append(f"  {key}: {shown}")
        if step.output_key:
            lines.append(f"  -> {step.output_key}")
        return "\n".join(lines)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self.state)

    def __repr__(self) -> str:
        return f"<Runtime {len(self.executed)}/{len(self.steps)} steps>"
