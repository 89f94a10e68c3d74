import asyncio

import pytest

from errand.audit import read_log
from errand.confidence import ConfidenceTracker
from errand.config import AuditConfig, ErrandConfig, RetryConfig
from errand.contracts import Step, ref
from errand.engine import Decision, OutputReview, StepApprover, WorkflowRunner
from errand.errors import PlanError, WorkflowBusyError, WorkflowNotFoundError
from errand.persistence import InMemoryWorkflowRepository
from errand.tools import CallableToolExecutor


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class ScriptedApprover(StepApprover):
    def __init__(self, decisions=None, reviews=None):
        self.decisions = dict(decisions or {})
        self.reviews = dict(reviews or {})
        self.seen = []

    async def confirm(self, step, preview, params):
        self.seen.append((step.id, preview, params))
        return self.decisions.get(step.id, Decision.approve())

    async def review_output(self, step, output):
        return self.reviews.get(step.id)


def _config(tmp_path, **retry):
    return ErrandConfig(
        audit=AuditConfig(log_dir=str(tmp_path / "logs")),
        retry=RetryConfig(**retry) if retry else RetryConfig(),
    )


def _steps(confidence=0.9):
    return [
        Step(id=1, tool="collect", params={"folder": "/in"}, output_key="files",
             confidence=confidence),
        Step(id=2, tool="store", params={"rows": ref("files")}, confidence=confidence),
        Step(id=3, tool="notify", params={"message": "done"}, confidence=confidence),
    ]


def _executor(calls, **overrides):
    tools = {
        "collect": lambda folder: [f"{folder}/a.pdf", f"{folder}/b.pdf"],
        "store": lambda rows: len(rows),
        "notify": lambda message: message,
    }
    tools.update(overrides)

    def track(name, func):
        def wrapper(**params):
            calls.append(name)
            return func(**params)

        return wrapper

    return CallableToolExecutor({name: track(name, func) for name, func in tools.items()})


@pytest.mark.asyncio
async def test_autonomous_run_completes_and_raises_confidence(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow("nightly", _steps())
    calls = []
    runner = WorkflowRunner(repo, _executor(calls), config=_config(tmp_path))

    result = await runner.run(wf.id)

    assert result.success
    assert calls == ["collect", "store", "notify"]
    assert result.output["files"] == ["/in/a.pdf", "/in/b.pdf"]
    assert [e.event for e in result.log] == ["completed"] * 3

    stored = await repo.get_workflow(wf.id)
    assert [s.confidence for s in stored.steps] == [1.0, 1.0, 1.0]
    assert stored.confidence == 1.0
    assert stored.run_count == 1
    assert stored.success_count == 1
    run = await repo.get_run(result.run_id)
    assert run.status == "completed"

    audit = tmp_path / "logs" / "nightly" / f"run_{result.run_id}.jsonl"
    events = [e["type"] for e in read_log(audit)]
    assert events[0] == "workflow_start"
    assert events[-1] == "workflow_complete"
    assert "confidence_change" in events


@pytest.mark.asyncio
async def test_critical_failure_stops_run(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow("nightly", _steps())
    calls = []

    def explode(rows):
        raise RuntimeError("disk on fire")

    runner = WorkflowRunner(
        repo, _executor(calls, store=explode), config=_config(tmp_path), sleep=FakeSleep()
    )
    result = await runner.run(wf.id)

    assert result.status == "failed"
    assert result.failed_steps == [2]
    assert "disk on fire" in result.error
    assert calls == ["collect", "store"]
    stored = await repo.get_workflow(wf.id)
    assert stored.run_count == 1
    assert stored.success_count == 0
    assert stored.steps[1].confidence == 0.9


@pytest.mark.asyncio
async def test_non_critical_failure_skips_dependents(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow("nightly", _steps())
    calls = []

    def missing(folder):
        raise FileNotFoundError(folder)

    runner = WorkflowRunner(
        repo, _executor(calls, collect=missing), config=_config(tmp_path), sleep=FakeSleep()
    )
    result = await runner.run(wf.id)

    assert result.status == "completed"
    assert not result.success
    assert result.failed_steps == [1]
    assert [e.event for e in result.log] == ["failed", "skipped_dependency", "completed"]
    assert calls == ["collect", "notify"]


@pytest.mark.asyncio
async def test_retryable_failure_is_retried(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow("nightly", _steps())
    calls = []
    attempts = []

    def flaky(message):
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("smtp unavailable")
        return message

    sleep = FakeSleep()
    runner = WorkflowRunner(
        repo,
        _executor(calls, notify=flaky),
        config=_config(tmp_path, max_retries=3, backoff="constant", base_delay=0.5),
        sleep=sleep,
    )
    result = await runner.run(wf.id)

    assert result.success
    assert len(attempts) == 3
    assert sleep.delays == [0.5, 0.5]


@pytest.mark.asyncio
async def test_unknown_tool_is_critical(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow(
        "broken", [Step(id=1, tool="teleport", confidence=0.9)]
    )
    runner = WorkflowRunner(repo, CallableToolExecutor(), config=_config(tmp_path))
    result = await runner.run(wf.id)
    assert result.status == "failed"
    assert "Unknown tool: teleport" in result.error


@pytest.mark.asyncio
async def test_supervised_step_without_approver(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow("nightly", _steps(confidence=0.0))
    calls = []
    runner = WorkflowRunner(repo, _executor(calls), config=_config(tmp_path))

    result = await runner.run(wf.id)

    assert result.status == "failed"
    assert result.log[-1].event == "confirmation_required"
    assert result.log[-1].step_id == 1
    assert calls == []
    assert (await repo.get_run(result.run_id)).status == "failed"


@pytest.mark.asyncio
async def test_approver_corrections_and_skips(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow("nightly", _steps(confidence=0.5))
    calls = []
    approver = ScriptedApprover(
        decisions={1: Decision.correct({"folder": "/invoices"}), 3: Decision.skip()},
        reviews={2: OutputReview(output=1)},
    )
    runner = WorkflowRunner(repo, _executor(calls), approver=approver, config=_config(tmp_path))

    result = await runner.run(wf.id)

    assert result.success
    assert result.output["files"] == ["/invoices/a.pdf", "/invoices/b.pdf"]
    assert calls == ["collect", "store"]
    assert [e.event for e in result.log] == ["completed", "completed", "skipped"]
    assert "Step 1" in approver.seen[0][1]
    assert approver.seen[1][2] == {"rows": ["/invoices/a.pdf", "/invoices/b.pdf"]}

    stored = await repo.get_workflow(wf.id)
    assert [s.confidence for s in stored.steps] == pytest.approx([0.2, 0.2, 0.0])
    corrections = await repo.list_corrections(wf.id)
    assert [(c.step_order, c.correction_type) for c in corrections] == [
        (1, "param_edit"),
        (2, "output_edit"),
    ]


@pytest.mark.asyncio
async def test_concurrent_run_is_rejected(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow(
        "slow", [Step(id=1, tool="wait", confidence=1.0)]
    )
    gate = asyncio.Event()
    started = asyncio.Event()

    async def wait():
        started.set()
        await gate.wait()
        return "ok"

    runner = WorkflowRunner(
        repo, CallableToolExecutor({"wait": wait}), config=_config(tmp_path)
    )
    first = asyncio.create_task(runner.run(wf.id))
    await started.wait()

    assert runner.is_running(wf.id)
    with pytest.raises(WorkflowBusyError):
        await runner.run(wf.id)

    gate.set()
    assert (await first).success
    assert not runner.is_running(wf.id)


@pytest.mark.asyncio
async def test_missing_and_invalid_workflows(tmp_path):
    repo = InMemoryWorkflowRepository()
    runner = WorkflowRunner(repo, CallableToolExecutor(), config=_config(tmp_path))
    with pytest.raises(WorkflowNotFoundError):
        await runner.run("nope")

    wf = await repo.create_workflow(
        "dangling", [Step(id=1, tool="store", params={"rows": ref("files")})]
    )
    with pytest.raises(PlanError):
        await runner.run(wf.id)
    assert await repo.list_runs(wf.id) == []


@pytest.mark.asyncio
async def test_repeated_output_filters_suggest_a_pattern(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow("nightly", _steps(confidence=0.0)[:1])
    approver = ScriptedApprover(
        reviews={1: OutputReview(output=["/in/a.pdf"], correction_type="output_filter")}
    )
    tools = {"collect": lambda folder: [f"{folder}/a.pdf", f"{folder}/notes.txt"]}
    runner = WorkflowRunner(
        repo, CallableToolExecutor(tools), approver=approver, config=_config(tmp_path)
    )

    for _ in range(3):
        result = await runner.run(wf.id)
        assert result.output["files"] == ["/in/a.pdf"]

    corrections = await repo.list_corrections(wf.id)
    assert [c.original_value for c in corrections] == ["/in/notes.txt"] * 3

    patterns = await ConfidenceTracker(repo, wf.id, 1).infer_patterns()
    txt = [p for p in patterns if p.pattern == "*.txt"]
    assert txt and txt[0].action == "filter"
    assert txt[0].support == 3


@pytest.mark.asyncio
async def test_param_correction_stores_only_the_changed_value(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await repo.create_workflow("nightly", _steps(confidence=0.0)[:1])
    approver = ScriptedApprover(decisions={1: Decision.correct({"folder": "/invoices"})})
    runner = WorkflowRunner(repo, _executor([]), approver=approver, config=_config(tmp_path))

    await runner.run(wf.id)

    corrections = await repo.list_corrections(wf.id)
    assert [(c.original_value, c.corrected_value) for c in corrections] == [
        ("/in", "/invoices")
    ]
