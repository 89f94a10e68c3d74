"""Per-run audit trail written as JSON lines."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from .persistence.models import utcnow

logger = logging.getLogger(__name__)

_MAX_TEXT = 500
_MAX_ITEMS = 20


def sanitize_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name).lower()


def truncate(value: Any) -> Any:
    """Shorten long strings and lists so events stay readable."""
    if isinstance(value, str) and len(value) > _MAX_TEXT:
        return value[:_MAX_TEXT] + "..."
    if isinstance(value, list) and len(value) > _MAX_ITEMS:
        return value[:_MAX_ITEMS] + [f"... ({len(value) - _MAX_ITEMS} more)"]
    if isinstance(value, dict):
        return {k: truncate(v) for k, v in value.items()}
    return value


class AuditLog:
    """Records the events of one workflow run to ``<log_dir>/<name>/<run>.jsonl``."""

    def __init__(
        self, log_dir: str, workflow_id: str, workflow_name: str, run_id: str
    ) -> None:
        self.workflow_id = workflow_id
        self.workflow_name = workflow_name
        self.run_id = run_id
        directory = Path(os.path.expanduser(log_dir)) / sanitize_name(workflow_name)
        self.path = directory / f"run_{run_id}.jsonl"
        self.events: List[Dict[str, Any]] = []

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def record(self, event: str, details: Any) -> None:
        """Persist an audit log entry."""
        entry = {
            "type": event,
            "timestamp": utcnow().isoformat(),
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "data": truncate(details),
        }
        self.events.append(entry)
        try:
            await asyncio.to_thread(self._append, json.dumps(entry, default=str))
        except OSError as exc:
            logger.warning(f"Could not write audit log {self.path}: {exc}")


def list_logs(log_dir: str, workflow_name: str, limit: Optional[int] = 10) -> List[Path]:
    """Audit files for a workflow, newest first."""
    directory = Path(os.path.expanduser(log_dir)) / sanitize_name(workflow_name)
    if not directory.is_dir():
        return []
    files = sorted(directory.glob("run_*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True)
    return files[:limit] if limit is not None else files


def read_log(path: Path) -> List[Dict[str, Any]]:
    """Parse an audit file back into its events."""
    with Path(path).open(encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
