"""Classification-driven retry for tool invocations."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from .config import RetryConfig
from .constants import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY, DEFAULT_MAX_RETRIES
from .contracts import Step
from .errors import ErrandError, ErrorSeverity
from .utils.retry import BackoffStrategy, make_backoff

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (ConnectionError, TimeoutError, asyncio.TimeoutError)
NON_CRITICAL_ERRORS = (
    FileNotFoundError,
    PermissionError,
    IsADirectoryError,
    NotADirectoryError,
    LookupError,
    ValueError,
)

# tool name -> (max_retries, backoff, base_delay)
STEP_PRESETS = {
    "browser_open": (4, "exponential", 2.0),
    "browser_form": (4, "exponential", 2.0),
    "email_send": (3, "exponential", 5.0),
    "file_glob": (2, "linear", 1.0),
    "csv_read": (2, "linear", 1.0),
    "pdf_extract": (2, "linear", 1.0),
}


def classify_error(error: BaseException) -> ErrorSeverity:
    """Decide whether ``error`` is retryable, non-critical or critical."""
    severity = getattr(error, "severity", None)
    if severity is not None:
        # library errors may carry an unrelated severity such as "ERROR"
        try:
            return ErrorSeverity(severity)
        except ValueError:
            pass
    if isinstance(error, ErrandError):
        return ErrorSeverity.CRITICAL
    if isinstance(error, RETRYABLE_ERRORS):
        return ErrorSeverity.RETRYABLE
    if isinstance(error, NON_CRITICAL_ERRORS):
        return ErrorSeverity.NON_CRITICAL
    return ErrorSeverity.CRITICAL


def describe_error(error: BaseException) -> str:
    """Human-readable summary of an error and how it is handled."""
    severity = classify_error(error)
    if severity is ErrorSeverity.RETRYABLE:
        return f"Temporary error (will retry): {error}"
    if severity is ErrorSeverity.NON_CRITICAL:
        return f"Non-critical error (continuing): {error}"
    return f"Critical error: {error}"


class ErrorRecovery:
    """Run an operation, retrying transient failures with backoff.

    ``max_retries`` counts total attempts, so ``max_retries=1`` never retries.
    Only ``retryable`` failures are retried; ``non_critical`` and ``critical``
    failures stop immediately. After each call ``last_error``,
    ``last_severity`` and ``attempts`` describe what happened.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: str | BackoffStrategy = "exponential",
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.backoff = make_backoff(backoff, base_delay, max_delay)
        self._sleep = sleep
        self.last_error: Optional[BaseException] = None
        self.last_severity: Optional[ErrorSeverity] = None
        self.attempts = 0

    @classmethod
    def from_config(cls, config: RetryConfig, **kwargs: Any) -> "ErrorRecovery":
        return cls(
            max_retries=config.max_retries,
            backoff=config.backoff,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            **kwargs,
        )

    @classmethod
    def for_step(
        cls, step: Step, config: Optional[RetryConfig] = None, **kwargs: Any
    ) -> "ErrorRecovery":
        """Recovery tuned to the step's tool; other tools use ``config``."""
        config = config or RetryConfig()
        preset = STEP_PRESETS.get(step.tool)
        if preset is None:
            return cls.from_config(config, **kwargs)
        max_retries, backoff, base_delay = preset
        return cls(
            max_retries=max_retries,
            backoff=backoff,
            base_delay=base_delay,
            max_delay=config.max_delay,
            **kwargs,
        )

    def classify_error(self, error: BaseException) -> ErrorSeverity:
        return classify_error(error)

    def describe_error(self, error: BaseException) -> str:
        return describe_error(error)

    async def with_retry(self, operation: Callable[[], Any]) -> Any:
        """Await ``operation()`` until it succeeds or retrying stops.

        Returns the operation's result, or ``None`` when every permitted
        attempt failed.
        """
        self.attempts = 0
        self.last_error = None
        self.last_severity = None

        while True:
            self.attempts += 1
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
                return result
            except Exception as exc:
                self.last_error = exc
                self.last_severity = classify_error(exc)
                logger.debug(
                    f"Attempt {self.attempts}/{self.max_retries} failed "
                    f"({self.last_severity.value}): {exc}"
                )
                if self.last_severity is not ErrorSeverity.RETRYABLE:
                    break
                if self.attempts >= self.max_retries:
                    break
                await self._sleep(self.backoff.delay(self.attempts))

        logger.warning(self.describe_error(self.last_error))
        return None
