import json

import pytest
import yaml

from errand.contracts import Step, ref
from errand.errors import PlanError, WorkflowExistsError, WorkflowNotFoundError
from errand.persistence import InMemoryWorkflowRepository
from errand.transfer import WorkflowDocument, WorkflowTransfer

TRIGGER = {
    "type": "schedule",
    "frequency": "weekly",
    "hour": 17,
    "minute": 0,
    "day_of_week": 5,
    "day_of_month": None,
}


async def _seed(repo):
    steps = [
        Step(id=1, tool="file_glob", params={"path": "/tmp/in", "pattern": "*.pdf"},
             output_key="files", confidence=0.6),
        Step(id=2, tool="csv_append", params={"data": ref("files"), "path": "/tmp/out.csv"}),
    ]
    wf = await repo.create_workflow("friday-invoices", steps, trigger=TRIGGER, description="d")
    for name in ("a.pdf", "b.pdf", "c.pdf"):
        await repo.record_correction(wf.id, 1, "output_filter", name, "")
    await repo.record_trigger(wf.id, "schedule")
    await repo.increment_run_count(wf.id, True)
    return wf


@pytest.mark.asyncio
async def test_export_describes_workflow():
    repo = InMemoryWorkflowRepository()
    wf = await _seed(repo)
    doc = await WorkflowTransfer(repo).export_workflow(wf.id)

    assert doc.export_version == "1.0"
    assert doc.name == "friday-invoices"
    assert doc.trigger_type == "schedule"
    assert doc.trigger_config == TRIGGER
    assert [s.step_order for s in doc.steps] == [1, 2]
    assert doc.steps[1].params["data"] == {"kind": "ref", "name": "files"}
    assert [p.pattern for p in doc.learned_patterns] == ["*.pdf"]
    assert doc.metadata["run_count"] == 1
    assert doc.metadata["total_corrections"] == 3
    assert doc.metadata["recent_triggers"] == 1


@pytest.mark.asyncio
async def test_export_missing_workflow():
    with pytest.raises(WorkflowNotFoundError):
        await WorkflowTransfer(InMemoryWorkflowRepository()).export_workflow("nope")


@pytest.mark.asyncio
async def test_round_trip_through_json_file(tmp_path):
    source = InMemoryWorkflowRepository()
    wf = await _seed(source)
    path = await WorkflowTransfer(source).export_to_file(wf.id, tmp_path / "wf.json")
    assert json.loads(path.read_text())["name"] == "friday-invoices"

    target = InMemoryWorkflowRepository()
    imported = await WorkflowTransfer(target).import_from_file(path)

    assert imported.name == "friday-invoices"
    assert imported.trigger == TRIGGER
    assert imported.steps[1].params["data"] == ref("files")
    assert imported.steps[0].confidence == 0.6
    assert imported.run_count == 0


@pytest.mark.asyncio
async def test_yaml_export(tmp_path):
    repo = InMemoryWorkflowRepository()
    wf = await _seed(repo)
    path = await WorkflowTransfer(repo).export_to_file(wf.id, tmp_path / "wf.yaml")
    assert yaml.safe_load(path.read_text())["trigger_type"] == "schedule"


@pytest.mark.asyncio
async def test_import_conflicts():
    repo = InMemoryWorkflowRepository()
    wf = await _seed(repo)
    transfer = WorkflowTransfer(repo)
    doc = await transfer.export_workflow(wf.id)

    with pytest.raises(WorkflowExistsError):
        await transfer.import_workflow(doc)
    first = await transfer.import_workflow(doc, rename_on_conflict=True)
    second = await transfer.import_workflow(doc, rename_on_conflict=True)
    assert first.name == "friday-invoices-copy"
    assert second.name == "friday-invoices-copy-2"


@pytest.mark.asyncio
async def test_import_renumbers_and_validates():
    transfer = WorkflowTransfer(InMemoryWorkflowRepository())
    imported = await transfer.import_workflow(
        {
            "name": "sparse",
            "steps": [
                {"step_order": 20, "tool": "csv_append",
                 "params": {"data": {"kind": "ref", "name": "files"}}},
                {"step_order": 10, "tool": "file_glob", "output_key": "files"},
            ],
        }
    )
    assert [(s.id, s.tool) for s in imported.steps] == [(1, "file_glob"), (2, "csv_append")]

    with pytest.raises(PlanError):
        await transfer.import_workflow({"name": "empty"})
    with pytest.raises(PlanError):
        await transfer.import_workflow(
            WorkflowDocument(
                name="dangling",
                steps=[{"step_order": 1, "tool": "csv_append",
                        "params": {"data": {"kind": "ref", "name": "files"}}}],
            )
        )


@pytest.mark.asyncio
async def test_export_all_and_import_all(tmp_path):
    source = InMemoryWorkflowRepository()
    await _seed(source)
    await source.create_workflow("second", [Step(id=1, tool="file_glob")])
    paths = await WorkflowTransfer(source).export_all(tmp_path)
    assert sorted(p.name for p in paths) == ["friday-invoices.json", "second.json"]

    (tmp_path / "notes.txt").write_text("ignored")
    target = InMemoryWorkflowRepository()
    imported = await WorkflowTransfer(target).import_all(tmp_path)
    assert sorted(w.name for w in imported) == ["friday-invoices", "second"]
    assert await WorkflowTransfer(target).import_all(tmp_path / "missing") == []
