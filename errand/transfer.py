"""Export workflows to portable documents and import them back."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field

from .confidence import Pattern, infer_patterns_from
from .constants import EXPORT_VERSION
from .contracts import load_step, parse_trigger
from .errors import PlanError, WorkflowExistsError, WorkflowNotFoundError
from .persistence.models import WorkflowRecord, utcnow
from .persistence.repository import WorkflowRepository
from .planner import validate_plan

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")
DOCUMENT_SUFFIXES = (".json",) + YAML_SUFFIXES
RECENT_TRIGGER_WINDOW = 5


class StepDescriptor(BaseModel):
    step_order: int
    tool: str
    params: Dict[str, Any] = Field(default_factory=dict)
    output_key: Optional[str] = None
    description: str = ""
    confidence: float = 0.0


class WorkflowDocument(BaseModel):
    """Portable representation of a saved workflow."""

    export_version: str = EXPORT_VERSION
    exported_at: datetime = Field(default_factory=utcnow)
    name: str
    description: str = ""
    trigger_type: str = "manual"
    trigger_config: Dict[str, Any] = Field(default_factory=lambda: {"type": "manual"})
    steps: List[StepDescriptor] = Field(default_factory=list)
    learned_patterns: List[Pattern] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _file_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name) + ".json"


def _read_document(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in YAML_SUFFIXES:
        return yaml.safe_load(text) or {}
    return json.loads(text)


class WorkflowTransfer:
    """Moves workflows between repositories through ``WorkflowDocument``s."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    async def export_workflow(self, workflow_id: str) -> WorkflowDocument:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        corrections = await self.repository.list_corrections(workflow_id)
        triggers = await self.repository.list_triggers(workflow_id, RECENT_TRIGGER_WINDOW)
        return WorkflowDocument(
            name=workflow.name,
            description=workflow.description,
            trigger_type=workflow.trigger_type,
            trigger_config=workflow.trigger,
            steps=[
                StepDescriptor(
                    step_order=step.id,
                    tool=step.tool,
                    params=step.model_dump(mode="json")["params"],
                    output_key=step.output_key,
                    description=step.description,
                    confidence=step.confidence,
                )
                for step in workflow.steps
            ],
            learned_patterns=infer_patterns_from(corrections),
            metadata={
                "confidence": workflow.confidence,
                "run_count": workflow.run_count,
                "success_count": workflow.success_count,
                "recent_triggers": len(triggers),
                "total_corrections": len(corrections),
            },
        )

    async def export_to_file(self, workflow_id: str, path: Union[str, Path]) -> Path:
        """Write the export as JSON, or YAML for ``.yaml``/``.yml`` paths."""
        path = Path(path).expanduser()
        document = (await self.export_workflow(workflow_id)).model_dump(mode="json")
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() in YAML_SUFFIXES:
            path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        else:
            path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        logger.info(f"Exported workflow {document['name']} to {path}")
        return path

    async def _free_name(self, name: str) -> str:
        candidate = f"{name}-copy"
        counter = 1
        while await self.repository.get_workflow_by_name(candidate) is not None:
            counter += 1
            candidate = f"{name}-copy-{counter}"
        return candidate

    async def import_workflow(
        self,
        document: Union[WorkflowDocument, Dict[str, Any]],
        rename_on_conflict: bool = False,
    ) -> WorkflowRecord:
        """Create a workflow from ``document``; never overwrites an existing one."""
        if not isinstance(document, WorkflowDocument):
            document = WorkflowDocument.model_validate(document)
        if not document.steps:
            raise PlanError(f"Document for '{document.name}' has no steps")

        steps = [
            load_step(
                {
                    "id": position,
                    "tool": d.tool,
                    "params": d.params,
                    "output_key": d.output_key,
                    "description": d.description,
                    "confidence": d.confidence,
                }
            )
            for position, d in enumerate(
                sorted(document.steps, key=lambda d: d.step_order), start=1
            )
        ]
        validate_plan(steps)
        trigger = parse_trigger(document.trigger_config).model_dump()

        name = document.name
        if await self.repository.get_workflow_by_name(name) is not None:
            if not rename_on_conflict:
                raise WorkflowExistsError(f"Workflow '{name}' already exists")
            name = await self._free_name(name)

        workflow = await self.repository.create_workflow(
            name, steps, trigger=trigger, description=document.description
        )
        logger.info(f"Imported workflow {workflow.name} with {len(steps)} steps")
        return workflow

    async def import_from_file(
        self, path: Union[str, Path], rename_on_conflict: bool = False
    ) -> WorkflowRecord:
        data = _read_document(Path(path).expanduser())
        return await self.import_workflow(data, rename_on_conflict=rename_on_conflict)

    async def export_all(self, directory: Union[str, Path]) -> List[Path]:
        directory = Path(directory).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        return [
            await self.export_to_file(wf.id, directory / _file_name(wf.name))
            for wf in await self.repository.list_workflows()
        ]

    async def import_all(
        self, directory: Union[str, Path], rename_on_conflict: bool = True
    ) -> List[WorkflowRecord]:
        directory = Path(directory).expanduser()
        if not directory.is_dir():
            return []
        imported = []
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() not in DOCUMENT_SUFFIXES:
                continue
            imported.append(
                await self.import_from_file(path, rename_on_conflict=rename_on_conflict)
            )
        return imported
