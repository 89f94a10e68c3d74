"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
import uuid
from typing import Any

import asyncpg

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


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                description TEXT,
                trigger JSONB NOT NULL,
                confidence DOUBLE PRECISION NOT NULL DEFAULT 0,
                run_count INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                enabled BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                step_order INTEGER NOT NULL,
                tool TEXT NOT NULL,
                params JSONB NOT NULL,
                output_key TEXT,
                description TEXT,
                confidence DOUBLE PRECISION NOT NULL DEFAULT 0,
                PRIMARY KEY (workflow_id, step_order)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                seq SERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                status TEXT NOT NULL,
                output JSONB,
                log JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_corrections (
                id SERIAL PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                step_order INTEGER NOT NULL,
                correction_type TEXT NOT NULL,
                original_value TEXT,
                corrected_value TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS trigger_history (
                id SERIAL PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                trigger_type TEXT NOT NULL,
                context JSONB,
                triggered_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def _load_workflow(
        self, conn: asyncpg.Connection, row: asyncpg.Record
    ) -> WorkflowRecord:
        step_rows = await conn.fetch(
            "SELECT step_order, tool, params, output_key, description, confidence "
            "FROM workflow_steps WHERE workflow_id = $1 ORDER BY step_order",
            row["id"],
        )
        return WorkflowRecord(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            trigger=_json(row["trigger"]),
            steps=[
                load_step(
                    {
                        "id": s["step_order"],
                        "tool": s["tool"],
                        "params": _json(s["params"]) or {},
                        "output_key": s["output_key"],
                        "description": s["description"] or "",
                        "confidence": s["confidence"],
                    }
                )
                for s in step_rows
            ],
            confidence=row["confidence"],
            run_count=row["run_count"],
            success_count=row["success_count"],
            enabled=row["enabled"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_run(row: asyncpg.Record) -> RunRecord:
        return RunRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            status=row["status"],
            output=_json(row["output"]) if row["output"] is not None else None,
            log=[RunEvent(**e) for e in _json(row["log"])] if row["log"] else [],
        )

    # ------------------------------------------------------------------
    async def create_workflow(
        self,
        name: str,
        steps: list[Step],
        trigger: dict | None = None,
        description: str = "",
    ) -> WorkflowRecord:
        workflow_id = str(uuid.uuid4())
        now = utcnow()
        confidence = (
            round(sum(s.confidence for s in steps) / len(steps), 6) if steps else 0.0
        )
        conn = await self._connect()
        try:
            async with conn.transaction():
                try:
                    await conn.execute(
                        f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) "
                        "VALUES ($1, $2, $3, $4, $5, 0, 0, TRUE, $6, $7)",
                        workflow_id,
                        name,
                        description,
                        json.dumps(trigger or {"type": "manual"}),
                        confidence,
                        now,
                        now,
                    )
                except asyncpg.UniqueViolationError as exc:
                    raise WorkflowExistsError(
                        f"Workflow '{name}' already exists"
                    ) from exc
                for step in steps:
                    await conn.execute(
                        "INSERT INTO workflow_steps (workflow_id, step_order, tool, params, "
                        "output_key, description, confidence) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                        workflow_id,
                        step.id,
                        step.tool,
                        json.dumps(step.model_dump(mode="json")["params"]),
                        step.output_key,
                        step.description,
                        step.confidence,
                    )
        finally:
            await conn.close()
        return await self.get_workflow(workflow_id)

    async def _get_workflow_where(self, column: str, value: str) -> WorkflowRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE {column} = $1", value
            )
            if not row:
                return None
            return await self._load_workflow(conn, row)
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        return await self._get_workflow_where("id", workflow_id)

    async def get_workflow_by_name(self, name: str) -> WorkflowRecord | None:
        return await self._get_workflow_where("name", name)

    async def list_workflows(self) -> list[WorkflowRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows ORDER BY run_count DESC, created_at"
            )
            return [await self._load_workflow(conn, r) for r in rows]
        finally:
            await conn.close()

    async def delete_workflow(self, workflow_id: str) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute("DELETE FROM workflows WHERE id = $1", workflow_id)
        finally:
            await conn.close()
        return result.endswith(" 1")

    async def set_enabled(self, workflow_id: str, enabled: bool) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflows SET enabled = $1, updated_at = $2 WHERE id = $3",
                enabled,
                utcnow(),
                workflow_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def start_run(self, workflow_id: str) -> RunRecord:
        run = RunRecord(id=str(uuid.uuid4()), workflow_id=workflow_id)
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO workflow_runs (id, workflow_id, started_at, status) VALUES ($1, $2, $3, $4)",
                run.id,
                workflow_id,
                run.started_at,
                run.status,
            )
        finally:
            await conn.close()
        return run

    async def complete_run(
        self, run_id: str, status: str, output: Any, log: list[RunEvent]
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflow_runs
                SET status = $1, completed_at = $2, output = $3, log = $4
                WHERE id = $5 AND status = 'running'
                """,
                status,
                utcnow(),
                json.dumps(output, default=str),
                json.dumps([e.model_dump(mode="json") for e in log]),
                run_id,
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> RunRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = $1", run_id
            )
        finally:
            await conn.close()
        return self._to_run(row) if row else None

    async def list_runs(
        self,
        workflow_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[RunRecord]:
        conditions = ["TRUE"]
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            conditions.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(status)
            conditions.append(f"status = ${len(params)}")
        query = (
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs "
            f"WHERE {' AND '.join(conditions)} ORDER BY seq DESC"
        )
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._to_run(r) for r in rows]

    # ------------------------------------------------------------------
    async def update_step_confidence(
        self, workflow_id: str, step_order: int, confidence: float
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflow_steps SET confidence = $1 WHERE workflow_id = $2 AND step_order = $3",
                float(confidence),
                workflow_id,
                step_order,
            )
        finally:
            await conn.close()

    async def increment_run_count(self, workflow_id: str, success: bool) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflows
                SET run_count = run_count + 1,
                    success_count = success_count + $1,
                    updated_at = $2
                WHERE id = $3
                """,
                1 if success else 0,
                utcnow(),
                workflow_id,
            )
        finally:
            await conn.close()

    async def recompute_confidence(self, workflow_id: str) -> float:
        conn = await self._connect()
        try:
            avg = await conn.fetchval(
                "SELECT AVG(confidence) FROM workflow_steps WHERE workflow_id = $1",
                workflow_id,
            )
            avg = round(float(avg), 6) if avg is not None else 0.0
            await conn.execute(
                "UPDATE workflows SET confidence = $1, updated_at = $2 WHERE id = $3",
                avg,
                utcnow(),
                workflow_id,
            )
        finally:
            await conn.close()
        return avg

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
        conn = await self._connect()
        try:
            record.id = await conn.fetchval(
                "INSERT INTO step_corrections (workflow_id, step_order, correction_type, "
                "original_value, corrected_value, created_at) "
                "VALUES ($1, $2, $3, $4, $5, $6) RETURNING id",
                workflow_id,
                step_order,
                correction_type,
                record.original_value,
                record.corrected_value,
                record.created_at,
            )
        finally:
            await conn.close()
        return record

    async def list_corrections(
        self, workflow_id: str, step_order: int | None = None
    ) -> list[CorrectionRecord]:
        query = (
            "SELECT id, workflow_id, step_order, correction_type, original_value, "
            "corrected_value, created_at FROM step_corrections WHERE workflow_id = $1"
        )
        params: list[Any] = [workflow_id]
        if step_order is not None:
            query += " AND step_order = $2"
            params.append(step_order)
        conn = await self._connect()
        try:
            rows = await conn.fetch(query + " ORDER BY id", *params)
        finally:
            await conn.close()
        return [
            CorrectionRecord(
                id=r["id"],
                workflow_id=r["workflow_id"],
                step_order=r["step_order"],
                correction_type=r["correction_type"],
                original_value=r["original_value"] or "",
                corrected_value=r["corrected_value"] or "",
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def record_trigger(
        self, workflow_id: str, trigger_type: str, context: dict | None = None
    ) -> TriggerRecord:
        record = TriggerRecord(
            workflow_id=workflow_id, trigger_type=trigger_type, context=context or {}
        )
        conn = await self._connect()
        try:
            record.id = await conn.fetchval(
                "INSERT INTO trigger_history (workflow_id, trigger_type, context, triggered_at) "
                "VALUES ($1, $2, $3, $4) RETURNING id",
                workflow_id,
                trigger_type,
                json.dumps(record.context, default=str),
                record.triggered_at,
            )
        finally:
            await conn.close()
        return record

    async def list_triggers(
        self, workflow_id: str, limit: int | None = None
    ) -> list[TriggerRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT id, workflow_id, trigger_type, context, triggered_at "
                "FROM trigger_history WHERE workflow_id = $1 ORDER BY id",
                workflow_id,
            )
        finally:
            await conn.close()
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return [
            TriggerRecord(
                id=r["id"],
                workflow_id=r["workflow_id"],
                trigger_type=r["trigger_type"],
                context=_json(r["context"]) or {},
                triggered_at=r["triggered_at"],
            )
            for r in rows
        ]
