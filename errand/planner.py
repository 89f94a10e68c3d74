"""Turn an ``Intent`` into an ordered list of tool steps."""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

from .constants import DEFAULT_WATCH_FOLDER
from .contracts import Destination, Intent, Reference, Source, Step, lit, ref
from .errors import PlanError
from .triggers import expand_path

logger = logging.getLogger(__name__)

SPREADSHEET_EXTENSIONS = (".csv",)


class _KeyAllocator:
    """Hands out output keys, suffixing repeats with ``_2``, ``_3``..."""

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}

    def __call__(self, base: str) -> str:
        count = self._counts.get(base, 0) + 1
        self._counts[base] = count
        return base if count == 1 else f"{base}_{count}"


def _default_folder() -> Source:
    path = expand_path(DEFAULT_WATCH_FOLDER)
    return Source(type="local_files", hint=os.path.basename(path).lower(), path=path)


def generate(intent: Intent) -> List[Step]:
    """Build the plan for ``intent``.

    Collection steps come first in source order, followed by one delivery
    step per destination, each consuming the most recent producer's output.
    """
    if not intent.sources and not intent.destinations:
        raise PlanError(f"Intent '{intent.name}' has no sources or destinations")

    sources: List[Source] = []
    for source in intent.sources:
        if source.type == "pdf" and not any(s.type == "local_files" for s in sources):
            sources.append(_default_folder())
        sources.append(source)
    if not sources:
        sources.append(_default_folder())

    key = _KeyAllocator()
    steps: List[Step] = []
    last_output: Optional[str] = None
    last_files: Optional[str] = None

    for index, source in enumerate(sources):
        step_id = len(steps) + 1
        if source.type == "local_files":
            path = source.path or expand_path(DEFAULT_WATCH_FOLDER)
            following = sources[index + 1] if index + 1 < len(sources) else None
            pattern = "*.pdf" if following is not None and following.type == "pdf" else "*"
            output = key("files")
            steps.append(
                Step(
                    id=step_id,
                    tool="file_glob",
                    params={"path": lit(path), "pattern": lit(pattern)},
                    output_key=output,
                    description=f"Find {pattern} files in {path}",
                )
            )
            last_files = output
        elif source.type == "pdf":
            output = key("extracted")
            fields = list(source.fields)
            what = ", ".join(fields) if fields else "text"
            steps.append(
                Step(
                    id=step_id,
                    tool="pdf_extract",
                    params={"files": ref(last_files), "fields": lit(fields)},
                    output_key=output,
                    description=f"Extract {what} from PDF files",
                )
            )
        else:
            output = key("page")
            steps.append(
                Step(
                    id=step_id,
                    tool="browser_open",
                    params={"url": lit(f"https://{source.hint}")},
                    output_key=output,
                    description=f"Open {source.hint}",
                )
            )
        last_output = output

    for destination in intent.destinations:
        steps.append(_destination_step(len(steps) + 1, destination, last_output))

    validate_plan(steps)
    logger.debug(f"Generated {len(steps)} steps for {intent.name}")
    return steps


def _destination_step(step_id: int, destination: Destination, data_key: str) -> Step:
    if destination.type == "web_form":
        target = destination.selector or "web"
        return Step(
            id=step_id,
            tool="browser_form",
            params={"target": lit(target), "data": ref(data_key)},
            description=f"Fill {target} form",
        )
    path = destination.path or ""
    tool = (
        "csv_append"
        if os.path.splitext(path)[1].lower() in SPREADSHEET_EXTENSIONS
        else "file_append"
    )
    return Step(
        id=step_id,
        tool=tool,
        params={"path": lit(path), "data": ref(data_key)},
        description=f"Append data to {path}",
    )


def validate_plan(steps: List[Step]) -> None:
    """Check step numbering and that references only look backwards."""
    if not steps:
        raise PlanError("Plan has no steps")
    produced = set()
    for position, step in enumerate(steps, start=1):
        if step.id != position:
            raise PlanError(f"Step {step.id} is out of order (expected {position})")
        for name, value in step.params.items():
            if isinstance(value, Reference) and value.name not in produced:
                raise PlanError(
                    f"Step {step.id} parameter '{name}' references "
                    f"${value.name} before it is produced"
                )
        if step.output_key:
            produced.add(step.output_key)
