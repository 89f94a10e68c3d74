import pytest

from errand.config import RetryConfig
from errand.contracts import Step
from errand.errors import ErrorSeverity, PlanError, ToolExecutionError
from errand.recovery import ErrorRecovery, classify_error, describe_error


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _flaky(failures, error=ConnectionError("connection reset")):
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) <= failures:
            raise error
        return "ok"

    return operation, calls


@pytest.mark.asyncio
async def test_retries_until_success():
    sleep = FakeSleep()
    recovery = ErrorRecovery(max_retries=3, backoff="exponential", base_delay=1.0, sleep=sleep)
    operation, calls = _flaky(2)

    assert await recovery.with_retry(operation) == "ok"
    assert len(calls) == 3
    assert recovery.attempts == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    sleep = FakeSleep()
    recovery = ErrorRecovery(max_retries=2, sleep=sleep)
    operation, calls = _flaky(10)

    assert await recovery.with_retry(operation) is None
    assert len(calls) == 2
    assert isinstance(recovery.last_error, ConnectionError)
    assert recovery.last_severity is ErrorSeverity.RETRYABLE
    assert len(sleep.delays) == 1


@pytest.mark.asyncio
async def test_non_retryable_errors_stop_immediately():
    sleep = FakeSleep()
    recovery = ErrorRecovery(max_retries=5, sleep=sleep)
    operation, calls = _flaky(10, FileNotFoundError("missing.pdf"))

    assert await recovery.with_retry(operation) is None
    assert len(calls) == 1
    assert recovery.last_severity is ErrorSeverity.NON_CRITICAL
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_sync_operations_are_supported():
    recovery = ErrorRecovery(max_retries=1, sleep=FakeSleep())
    assert await recovery.with_retry(lambda: 42) == 42
    assert recovery.attempts == 1


def test_max_retries_must_be_positive():
    with pytest.raises(ValueError):
        ErrorRecovery(max_retries=0)


@pytest.mark.parametrize(
    "error, severity",
    [
        (ConnectionError("x"), ErrorSeverity.RETRYABLE),
        (TimeoutError("x"), ErrorSeverity.RETRYABLE),
        (FileNotFoundError("x"), ErrorSeverity.NON_CRITICAL),
        (KeyError("x"), ErrorSeverity.NON_CRITICAL),
        (RuntimeError("x"), ErrorSeverity.CRITICAL),
        (PlanError("x"), ErrorSeverity.CRITICAL),
        (ToolExecutionError("x", ErrorSeverity.RETRYABLE), ErrorSeverity.RETRYABLE),
    ],
)
def test_classify_error(error, severity):
    assert classify_error(error) is severity


def test_describe_error_mentions_handling():
    assert describe_error(ConnectionError("down")).startswith("Temporary error")
    assert "continuing" in describe_error(ValueError("bad"))
    assert describe_error(RuntimeError("boom")) == "Critical error: boom"


def test_step_presets_override_config():
    config = RetryConfig(max_retries=7, backoff="constant", base_delay=0.5)

    browser = ErrorRecovery.for_step(Step(id=1, tool="browser_open"), config)
    assert browser.max_retries == 4
    assert browser.backoff.base_delay == 2.0

    custom = ErrorRecovery.for_step(Step(id=1, tool="shell"), config)
    assert custom.max_retries == 7
    assert custom.backoff.delay(3) == 0.5


class DatabaseError(Exception):
    severity = "ERROR"


class PoolTimeout(TimeoutError):
    severity = "WARNING"


def test_foreign_severity_attribute_falls_back_to_class_rules():
    assert classify_error(DatabaseError("relation missing")) is ErrorSeverity.CRITICAL
    assert classify_error(PoolTimeout("pool exhausted")) is ErrorSeverity.RETRYABLE


@pytest.mark.asyncio
async def test_foreign_severity_attribute_does_not_escape_with_retry():
    recovery = ErrorRecovery(max_retries=2, sleep=FakeSleep())
    operation, calls = _flaky(10, DatabaseError("relation missing"))

    assert await recovery.with_retry(operation) is None
    assert len(calls) == 1
    assert recovery.last_severity is ErrorSeverity.CRITICAL
