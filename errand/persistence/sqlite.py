"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from ..contracts import Step, load_step
from ..errors import WorkflowExistsError
from .models import (
    CorrectionRecord,
    RunEvent,
    RunRecord,
    TriggerRecord,
    WorkflowRecord,
    stringify,
    utcnow,
)
from .repository import WorkflowRepository

_WORKFLOW_COLUMNS = (
    "id, name, description, trigger, confidence, run_count, success_count, "
    "enabled, created_at, updated_at"
)
_RUN_COLUMNS = "id, workflow_id, started_at, completed_at, status, output, log"


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows, runs, corrections and trigger history using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                description TEXT,
                trigger TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 0,
                run_count INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                enabled INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                step_order INTEGER NOT NULL,
                tool TEXT NOT NULL,
                params TEXT NOT NULL,
                output_key TEXT,
                description TEXT,
                confidence REAL NOT NULL DEFAULT 0,
                PRIMARY KEY (workflow_id, step_order)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                status TEXT NOT NULL,
                output TEXT,
                log TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_corrections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                step_order INTEGER NOT NULL,
                correction_type TEXT NOT NULL,
                original_value TEXT,
                corrected_value TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS trigger_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                trigger_type TEXT NOT NULL,
                context TEXT,
                triggered_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.lastrowid

    def _execute_many(self, statements: Iterable[tuple[str, tuple]]) -> None:
        with self._lock:
            cur = self._conn.cursor()
            try:
                for query, params in statements:
                    cur.execute(query, params)
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _load_steps(self, workflow_id: str) -> list[Step]:
        rows = self._fetchall(
            "SELECT step_order, tool, params, output_key, description, confidence "
            "FROM workflow_steps WHERE workflow_id = ? ORDER BY step_order",
            workflow_id,
        )
        return [
            load_step(
                {
                    "id": r["step_order"],
                    "tool": r["tool"],
                    "params": json.loads(r["params"]) if r["params"] else {},
                    "output_key": r["output_key"],
                    "description": r["description"] or "",
                    "confidence": r["confidence"],
                }
            )
            for r in rows
        ]

    def _to_workflow(self, row: sqlite3.Row) -> WorkflowRecord:
        return WorkflowRecord(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            trigger=json.loads(row["trigger"]),
            steps=self._load_steps(row["id"]),
            confidence=row["confidence"],
            run_count=row["run_count"],
            success_count=row["success_count"],
            enabled=bool(row["enabled"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _to_run(row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"])
            if row["completed_at"]
            else None,
            status=row["status"],
            output=json.loads(row["output"]) if row["output"] else None,
            log=[RunEvent(**e) for e in json.loads(row["log"])] if row["log"] else [],
        )

    def _get_workflow_sync(self, column: str, value: str) -> WorkflowRecord | None:
        row = self._fetchone(
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE {column} = ?", value
        )
        return self._to_workflow(row) if row else None

    def _create_workflow_sync(
        self, name: str, steps: list[Step], trigger: dict, description: str
    ) -> str:
        workflow_id = str(uuid.uuid4())
        now = utcnow().isoformat()
        confidence = (
            round(sum(s.confidence for s in steps) / len(steps), 6) if steps else 0.0
        )
        statements = [
            (
                f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, 0, 0, 1, ?, ?)",
                (
                    workflow_id,
                    name,
                    description,
                    json.dumps(trigger),
                    confidence,
                    now,
                    now,
                ),
            )
        ]
        for step in steps:
            dumped = step.model_dump(mode="json")
            statements.append(
                (
                    "INSERT INTO workflow_steps (workflow_id, step_order, tool, params, "
                    "output_key, description, confidence) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        workflow_id,
                        step.id,
                        step.tool,
                        json.dumps(dumped["params"]),
                        step.output_key,
                        step.description,
                        step.confidence,
                    ),
                )
            )
        try:
            self._execute_many(statements)
        except sqlite3.IntegrityError as exc:
            raise WorkflowExistsError(f"Workflow '{name}' already exists") from exc
        return workflow_id

    def _recompute_confidence_sync(self, workflow_id: str) -> float:
        row = self._fetchone(
            "SELECT AVG(confidence) AS avg FROM workflow_steps WHERE workflow_id = ?",
            workflow_id,
        )
        avg = round(row["avg"], 6) if row and row["avg"] is not None else 0.0
        self._execute(
            "UPDATE workflows SET confidence = ?, updated_at = ? WHERE id = ?",
            avg,
            utcnow().isoformat(),
            workflow_id,
        )
        return avg

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(
        self,
        name: str,
        steps: list[Step],
        trigger: dict | None = None,
        description: str = "",
    ) -> WorkflowRecord:
        workflow_id = await asyncio.to_thread(
            self._create_workflow_sync,
            name,
            steps,
            trigger or {"type": "manual"},
            description,
        )
        return await self.get_workflow(workflow_id)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        return await asyncio.to_thread(self._get_workflow_sync, "id", workflow_id)

    async def get_workflow_by_name(self, name: str) -> WorkflowRecord | None:
        return await asyncio.to_thread(self._get_workflow_sync, "name", name)

    async def list_workflows(self) -> list[WorkflowRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows ORDER BY run_count DESC, created_at",
        )
        return [await asyncio.to_thread(self._to_workflow, r) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        existing = await self.get_workflow(workflow_id)
        if existing is None:
            return False
        await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )
        return True

    async def set_enabled(self, workflow_id: str, enabled: bool) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET enabled = ?, updated_at = ? WHERE id = ?",
            int(enabled),
            utcnow().isoformat(),
            workflow_id,
        )

    async def start_run(self, workflow_id: str) -> RunRecord:
        run = RunRecord(id=str(uuid.uuid4()), workflow_id=workflow_id)
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_runs (id, workflow_id, started_at, status) VALUES (?, ?, ?, ?)",
            run.id,
            workflow_id,
            run.started_at.isoformat(),
            run.status,
        )
        return run

    async def complete_run(
        self, run_id: str, status: str, output: Any, log: list[RunEvent]
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_runs
            SET status = ?, completed_at = ?, output = ?, log = ?
            WHERE id = ? AND status = 'running'
            """,
            status,
            utcnow().isoformat(),
            json.dumps(output, default=str),
            json.dumps([e.model_dump(mode="json") for e in log]),
            run_id,
        )

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = ?",
            run_id,
        )
        return self._to_run(row) if row else None

    async def list_runs(
        self,
        workflow_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[RunRecord]:
        conditions = ["1=1"]
        params: list[Any] = []
        if workflow_id is not None:
            conditions.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status)
        query = (
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs "
            f"WHERE {' AND '.join(conditions)} ORDER BY seq DESC"
        )
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._to_run(r) for r in rows]

    async def update_step_confidence(
        self, workflow_id: str, step_order: int, confidence: float
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_steps SET confidence = ? WHERE workflow_id = ? AND step_order = ?",
            float(confidence),
            workflow_id,
            step_order,
        )

    async def increment_run_count(self, workflow_id: str, success: bool) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows
            SET run_count = run_count + 1,
                success_count = success_count + ?,
                updated_at = ?
            WHERE id = ?
            """,
            1 if success else 0,
            utcnow().isoformat(),
            workflow_id,
        )

    async def recompute_confidence(self, workflow_id: str) -> float:
        return await asyncio.to_thread(self._recompute_confidence_sync, workflow_id)

    async def record_correction(
        self,
        workflow_id: str,
        step_order: int,
        correction_type: str,
        original: Any,
        corrected: Any,
    ) -> CorrectionRecord:
        record = CorrectionRecord(
            workflow_id=workflow_id,
            step_order=step_order,
            correction_type=correction_type,
            original_value=stringify(original),
            corrected_value=stringify(corrected),
        )
        record.id = await asyncio.to_thread(
            self._execute,
            "INSERT INTO step_corrections (workflow_id, step_order, correction_type, "
            "original_value, corrected_value, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            workflow_id,
            step_order,
            correction_type,
            record.original_value,
            record.corrected_value,
            record.created_at.isoformat(),
        )
        return record

    async def list_corrections(
        self, workflow_id: str, step_order: int | None = None
    ) -> list[CorrectionRecord]:
        query = (
            "SELECT id, workflow_id, step_order, correction_type, original_value, "
            "corrected_value, created_at FROM step_corrections WHERE workflow_id = ?"
        )
        params: list[Any] = [workflow_id]
        if step_order is not None:
            query += " AND step_order = ?"
            params.append(step_order)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY id", *params)
        return [
            CorrectionRecord(
                id=r["id"],
                workflow_id=r["workflow_id"],
                step_order=r["step_order"],
                correction_type=r["correction_type"],
                original_value=r["original_value"] or "",
                corrected_value=r["corrected_value"] or "",
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    async def record_trigger(
        self, workflow_id: str, trigger_type: str, context: dict | None = None
    ) -> TriggerRecord:
        record = TriggerRecord(
            workflow_id=workflow_id, trigger_type=trigger_type, context=context or {}
        )
        record.id = await asyncio.to_thread(
            self._execute,
            "INSERT INTO trigger_history (workflow_id, trigger_type, context, triggered_at) "
            "VALUES (?, ?, ?, ?)",
            workflow_id,
            trigger_type,
            json.dumps(record.context, default=str),
            record.triggered_at.isoformat(),
        )
        return record

    async def list_triggers(
        self, workflow_id: str, limit: int | None = None
    ) -> list[TriggerRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, workflow_id, trigger_type, context, triggered_at "
            "FROM trigger_history WHERE workflow_id = ? ORDER BY id",
            workflow_id,
        )
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return [
            TriggerRecord(
                id=r["id"],
                workflow_id=r["workflow_id"],
                trigger_type=r["trigger_type"],
                context=json.loads(r["context"]) if r["context"] else {},
                triggered_at=datetime.fromisoformat(r["triggered_at"]),
            )
            for r in rows
        ]

    def close(self) -> None:
        self._conn.close()
