import asyncio
import sys
import threading
import types

import pytest
import typer
from typer.testing import CliRunner

import errand.persistence as persistence
from errand.cli import CliApprover, app
from errand.contracts import Step, ref
from errand.persistence import InMemoryWorkflowRepository

REQUEST = (
    "Every Friday at 5pm, extract vendor and amount from invoices in my Downloads "
    "folder and add them to ~/expenses.csv"
)

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch):
    config = tmp_path / "errand.yaml"
    config.write_text(f"audit:\n  enabled: false\n  log_dir: {tmp_path / 'logs'}\n")
    monkeypatch.setenv("ERRAND_CONFIG", str(config))
    monkeypatch.delenv("ERRAND_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    appended = []
    module = types.ModuleType("cli_test_tools")
    module.TOOLS = {
        "file_glob": lambda path, pattern="*": [f"{path}/a.pdf"],
        "csv_append": lambda path, data: appended.append((path, data)) or len(data),
    }
    module.appended = appended
    monkeypatch.setitem(sys.modules, "cli_test_tools", module)
    yield
    persistence._repository_instance = None


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def _seed(repo, name="nightly"):
    steps = [
        Step(id=1, tool="file_glob", params={"path": "/in", "pattern": "*.pdf"},
             output_key="files", description="Find files"),
        Step(id=2, tool="csv_append", params={"path": "/out.csv", "data": ref("files")},
             description="Append rows"),
    ]
    return asyncio.run(repo.create_workflow(name, steps))


def test_create_dry_run_does_not_save():
    repo = _setup_repo()
    result = runner.invoke(app, ["workflow", "create", REQUEST, "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "friday-invoices-expenses" in result.output
    assert "pdf_extract" in result.output
    assert "$files" in result.output
    assert asyncio.run(repo.list_workflows()) == []


def test_create_list_and_show():
    repo = _setup_repo()
    result = runner.invoke(app, ["workflow", "create", REQUEST, "--name", "invoices"])
    assert result.exit_code == 0, result.output
    assert "Saved workflow invoices" in result.output

    saved = asyncio.run(repo.get_workflow_by_name("invoices"))
    assert [s.tool for s in saved.steps] == ["file_glob", "pdf_extract", "csv_append"]
    assert saved.trigger["day_of_week"] == 5

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "invoices\tschedule" in result.output

    result = runner.invoke(app, ["workflow", "show", saved.id])
    assert result.exit_code == 0
    assert "Workflow invoices" in result.output
    assert "csv_append" in result.output

    duplicate = runner.invoke(app, ["workflow", "create", REQUEST, "--name", "invoices"])
    assert duplicate.exit_code == 1
    assert "already exists" in duplicate.output


def test_create_rejects_unplannable_request():
    _setup_repo()
    result = runner.invoke(app, ["workflow", "create", "hello"])
    assert result.exit_code == 1
    assert "Could not build a plan" in result.output


def test_show_missing_workflow():
    _setup_repo()
    result = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Workflow not found" in result.output


def test_enable_disable_and_delete():
    repo = _setup_repo()
    wf = _seed(repo)

    assert runner.invoke(app, ["workflow", "disable", "nightly"]).exit_code == 0
    assert not asyncio.run(repo.get_workflow(wf.id)).enabled
    assert runner.invoke(app, ["workflow", "enable", "nightly"]).exit_code == 0
    assert asyncio.run(repo.get_workflow(wf.id)).enabled

    result = runner.invoke(app, ["workflow", "delete", "nightly", "--yes"])
    assert result.exit_code == 0
    assert asyncio.run(repo.get_workflow(wf.id)) is None


def test_run_with_interactive_approval():
    repo = _setup_repo()
    wf = _seed(repo)

    result = runner.invoke(
        app,
        ["workflow", "run", "nightly", "--executor", "cli_test_tools:TOOLS"],
        input="a\na\n",
    )
    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    assert sys.modules["cli_test_tools"].appended == [("/out.csv", ["/in/a.pdf"])]

    loaded = asyncio.run(repo.get_workflow(wf.id))
    assert loaded.run_count == 1
    assert [s.confidence for s in loaded.steps] == [0.2, 0.2]


def test_run_skip_is_reported():
    repo = _setup_repo()
    _seed(repo)
    result = runner.invoke(
        app,
        ["workflow", "run", "nightly", "--executor", "cli_test_tools:TOOLS"],
        input="s\n",
    )
    assert result.exit_code == 0, result.output
    assert "step 1: skipped" in result.output
    assert "step 2: skipped_dependency" in result.output


def test_run_unattended_stops_at_supervised_step():
    repo = _setup_repo()
    _seed(repo)
    result = runner.invoke(
        app,
        ["workflow", "run", "nightly", "--executor", "cli_test_tools:TOOLS", "--no-interactive"],
    )
    assert result.exit_code == 1
    assert "confirmation_required" in result.output


def test_run_requires_executor():
    repo = _setup_repo()
    _seed(repo)
    result = runner.invoke(app, ["workflow", "run", "nightly"])
    assert result.exit_code == 1
    assert "No tool executor configured" in result.output


def test_history_graduation_and_patterns():
    repo = _setup_repo()
    wf = _seed(repo)
    runner.invoke(
        app, ["workflow", "run", "nightly", "--executor", "cli_test_tools:TOOLS"], input="a\na\n"
    )
    for name in ("a.pdf", "b.pdf", "c.pdf"):
        asyncio.run(repo.record_correction(wf.id, 1, "output_filter", name, ""))

    result = runner.invoke(app, ["workflow", "history", "nightly"])
    assert result.exit_code == 0
    assert "completed" in result.output
    assert "Success rate: 100.0%" in result.output

    result = runner.invoke(app, ["workflow", "graduation", "nightly"])
    assert result.exit_code == 0
    assert "1. file_glob: supervised" in result.output

    result = runner.invoke(app, ["workflow", "patterns", "nightly"])
    assert result.exit_code == 0
    assert "filter\t*.pdf\t3 corrections" in result.output


def test_export_and_import(tmp_path):
    repo = _setup_repo()
    _seed(repo)
    target = tmp_path / "nightly.json"

    result = runner.invoke(app, ["workflow", "export", "nightly", str(target)])
    assert result.exit_code == 0
    assert target.exists()

    clash = runner.invoke(app, ["workflow", "import", str(target)])
    assert clash.exit_code == 1
    assert "Import failed" in clash.output

    result = runner.invoke(app, ["workflow", "import", str(target), "--rename"])
    assert result.exit_code == 0
    assert "Imported nightly-copy" in result.output

    bundle = tmp_path / "bundle"
    result = runner.invoke(app, ["workflow", "export-all", str(bundle)])
    assert result.exit_code == 0
    assert "Exported 2 workflows" in result.output


@pytest.mark.asyncio
async def test_cli_approver_edits_only_changed_params(monkeypatch):
    answers = iter(["e", '"/invoices"', '"*.pdf"'])
    on_main_thread = []

    def fake_prompt(text, default=None):
        on_main_thread.append(threading.current_thread() is threading.main_thread())
        return next(answers)

    monkeypatch.setattr(typer, "prompt", fake_prompt)
    decision = await CliApprover().confirm(
        Step(id=1, tool="file_glob"), "Step 1: file_glob", {"path": "/in", "pattern": "*.pdf"}
    )

    assert decision.action == "correct"
    assert decision.params == {"path": "/invoices"}
    assert on_main_thread == [False, False, False]
