"""Executor that dispatches tool names to plain Python callables."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional

from ..contracts import Step
from ..errors import ErrorSeverity
from .base import ToolExecutor, ToolResult

logger = logging.getLogger(__name__)


class CallableToolExecutor(ToolExecutor):
    """Map tool names to sync or async callables taking keyword params.

    A callable may return a ``ToolResult`` directly; any other return value
    is wrapped as a successful result. Exceptions propagate so that the
    caller's retry policy can classify them. Sync callables run in a worker
    thread.
    """

    def __init__(self, tools: Optional[Dict[str, Callable[..., Any]]] = None) -> None:
        self.tools: Dict[str, Callable[..., Any]] = dict(tools or {})

    def register(self, name: str, func: Callable[..., Any]) -> None:
        self.tools[name] = func

    async def execute(self, step: Step, params: Dict[str, Any]) -> ToolResult:
        func = self.tools.get(step.tool)
        if func is None:
            logger.error(f"No tool registered for '{step.tool}'")
            return ToolResult(
                success=False,
                error=f"Unknown tool: {step.tool}",
                severity=ErrorSeverity.CRITICAL,
            )
        if inspect.iscoroutinefunction(func):
            output = await func(**params)
        else:
            output = await asyncio.to_thread(func, **params)
        if isinstance(output, ToolResult):
            return output
        return ToolResult(success=True, output=output)
