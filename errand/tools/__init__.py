"""Tool executor interface and loading helpers."""

from __future__ import annotations

import builtins
import importlib
from typing import Any

from .base import ToolExecutor, ToolResult
from .callable import CallableToolExecutor


def load_executor(spec: str) -> ToolExecutor:
    """Load a tool executor from a ``module:attribute`` string.

    The attribute may be a ``ToolExecutor`` instance or subclass, a
    zero-argument factory returning one, or a mapping of tool names to
    callables.
    """

    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Executor must be given as module:attribute, got '{spec}'")
    module = importlib.import_module(module_name)
    try:
        target: Any = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'") from None

    if isinstance(target, ToolExecutor):
        return target
    if isinstance(target, dict):
        return CallableToolExecutor(target)
    if isinstance(target, type) and issubclass(target, ToolExecutor):
        return target()
    if builtins.callable(target):
        executor = target()
        if isinstance(executor, ToolExecutor):
            return executor
    raise ValueError(f"'{spec}' does not provide a ToolExecutor")


__all__ = ["CallableToolExecutor", "ToolExecutor", "ToolResult", "load_executor"]
