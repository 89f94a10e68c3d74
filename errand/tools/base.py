"""Base tool executor interface for errand workflows."""

from __future__ import annotations

import abc
from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..contracts import Step
from ..errors import ErrorSeverity


class ToolResult(BaseModel):
    """Outcome of a single tool invocation."""

    success: bool
    output: Any = None
    error: Optional[str] = None
    severity: Optional[ErrorSeverity] = None


class ToolExecutor(metaclass=abc.ABCMeta):
    """Abstract base for whatever performs a step's side effects.

    Long-lived resources such as a browser session belong to the executor
    instance and are acquired in ``open`` and released in ``close``.
    """

    async def open(self) -> None:
        """Acquire shared resources (no-op by default)."""
        pass

    async def close(self) -> None:
        """Release shared resources (no-op by default)."""
        pass

    async def __aenter__(self) -> "ToolExecutor":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abc.abstractmethod
    async def execute(self, step: Step, params: Dict[str, Any]) -> ToolResult:
        """Run ``step.tool`` with already-resolved ``params``."""
        raise NotImplementedError
