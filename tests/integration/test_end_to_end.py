import csv
from pathlib import Path

import pytest

from errand import intent as parser
from errand import planner
from errand.confidence import ConfidenceTracker
from errand.config import AuditConfig, ErrandConfig
from errand.engine import Decision, StepApprover, WorkflowRunner
from errand.history import History
from errand.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from errand.tools import ToolExecutor, ToolResult
from errand.transfer import WorkflowTransfer


class InvoiceTools(ToolExecutor):
    """Local stand-ins for the glob, PDF and CSV tools."""

    def __init__(self):
        self.opened = False

    async def open(self):
        self.opened = True

    async def execute(self, step, params):
        if step.tool == "file_glob":
            files = sorted(str(p) for p in Path(params["path"]).glob(params["pattern"]))
            return ToolResult(success=True, output=files)
        if step.tool == "pdf_extract":
            rows = []
            for name in params["files"]:
                vendor, amount = Path(name).stem.split("_")
                rows.append({"vendor": vendor, "amount": amount})
            return ToolResult(success=True, output=rows)
        if step.tool == "csv_append":
            path = Path(params["path"])
            new = not path.exists()
            with path.open("a", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=["vendor", "amount"])
                if new:
                    writer.writeheader()
                writer.writerows(params["data"])
            return ToolResult(success=True, output=len(params["data"]))
        return ToolResult(success=False, error=f"unsupported tool {step.tool}")


class ApproveAll(StepApprover):
    def __init__(self):
        self.confirmations = 0

    async def confirm(self, step, preview, params):
        self.confirmations += 1
        return Decision.approve()


@pytest.mark.asyncio
async def test_invoice_workflow_graduates_to_autonomy(tmp_path):
    inbox = tmp_path / "inbox"
    inbox.mkdir()
    (inbox / "acme_120.pdf").write_text("%PDF")
    (inbox / "globex_75.pdf").write_text("%PDF")
    (inbox / "notes.txt").write_text("skip me")
    ledger = tmp_path / "expenses.csv"

    intent = parser.parse(
        f"Every Friday at 5pm, extract vendor and amount from {inbox} invoices "
        f"and add them to {ledger}"
    )
    steps = planner.generate(intent)
    assert [s.tool for s in steps] == ["file_glob", "pdf_extract", "csv_append"]

    repo = SQLiteWorkflowRepository(tmp_path / "errand.db")
    wf = await repo.create_workflow(
        intent.name, steps, trigger=intent.trigger.model_dump(), description=intent.description
    )
    assert wf.name == "friday-invoices-expenses"

    config = ErrandConfig(audit=AuditConfig(log_dir=str(tmp_path / "logs")))
    approver = ApproveAll()
    async with InvoiceTools() as tools:
        assert tools.opened
        runner = WorkflowRunner(repo, tools, approver=approver, config=config)
        for _ in range(5):
            result = await runner.run(wf.id)
            assert result.success, result.error

        # four supervised runs lift every step to the autonomy threshold
        assert approver.confirmations == 12

        stored = await repo.get_workflow(wf.id)
        assert [s.confidence for s in stored.steps] == [1.0, 1.0, 1.0]
        status = await ConfidenceTracker(repo, wf.id).evaluate_graduation(
            stored.confidence, stored.run_count
        )
        assert status.ready

        unattended = WorkflowRunner(repo, tools, config=config)
        result = await unattended.run(wf.id, trigger_type="schedule")
        assert result.success

    with ledger.open() as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 12
    assert rows[0] == {"vendor": "acme", "amount": "120"}

    stats = await History(repo).get_stats(wf.id)
    assert stats.total_runs == 6
    assert stats.success_rate == 100.0

    document = await WorkflowTransfer(repo).export_workflow(wf.id)
    copy = await WorkflowTransfer(InMemoryWorkflowRepository()).import_workflow(document)
    assert [s.tool for s in copy.steps] == ["file_glob", "pdf_extract", "csv_append"]
    assert copy.trigger["day_of_week"] == 5
    repo.close()
