"""errand: Recurring personal tasks as confidence-gated workflows."""

from .confidence import ConfidenceTracker
from .contracts import Intent, Reference, LiteralParam, Step
from .engine import Decision, StepApprover, WorkflowRunner
from .intent import parse as parse_intent
from .persistence import get_repository
from .planner import generate as generate_plan
from .recovery import ErrorRecovery
from .runtime import Runtime
from .scheduler import Scheduler
from .tools import CallableToolExecutor, ToolExecutor, ToolResult
from .transfer import WorkflowTransfer
from .triggers import TriggerManager

__version__ = "0.1.0"
__all__ = [
    "CallableToolExecutor",
    "ConfidenceTracker",
    "Decision",
    "ErrorRecovery",
    "Intent",
    "LiteralParam",
    "Reference",
    "Runtime",
    "Scheduler",
    "Step",
    "StepApprover",
    "ToolExecutor",
    "ToolResult",
    "TriggerManager",
    "WorkflowRunner",
    "WorkflowTransfer",
    "generate_plan",
    "get_repository",
    "parse_intent",
]
