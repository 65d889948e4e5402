"""PostgreSQL implementation of the workflow state store."""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

import asyncpg
from pydantic_core import to_jsonable_python

from .models import (
    STEP_TRANSITIONS,
    SerializedError,
    StepHistoryEntry,
    StepState,
    WorkflowRun,
    WorkflowStatus,
    WorkflowVersion,
    utcnow,
)
from .store import WorkflowStateStore

_STEP_JSON_COLUMNS = ("data", "result", "error", "retry_delay")

_STEP_COLUMNS = (
    "step_id, run_id, step_name, rpc_name, data, status, result, error, branch, "
    "attempt_count, retries, retry_delay, created_at, updated_at"
)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(to_jsonable_python(value))


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value is not None else None


class PostgresWorkflowStateStore(WorkflowStateStore):
    """Persist workflow state using PostgreSQL.

    The run lock is a session-level advisory lock held on a dedicated
    connection for the lifetime of the critical section, so it is released
    by the server if the holder dies.
    """

    def __init__(self, dsn: str, **lock_options: float):
        super().__init__(**lock_options)
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
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error JSONB,
                graph_hash TEXT NOT NULL,
                inline BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                step_id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                rpc_name TEXT,
                data JSONB,
                status TEXT NOT NULL,
                result JSONB,
                error JSONB,
                branch TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 1,
                retries INTEGER,
                retry_delay JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                scheduled_at TIMESTAMPTZ,
                running_at TIMESTAMPTZ,
                succeeded_at TIMESTAMPTZ,
                failed_at TIMESTAMPTZ,
                suspended_at TIMESTAMPTZ,
                PRIMARY KEY (run_id, step_name)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_step_history (
                history_id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                step_id TEXT NOT NULL,
                attempt_count INTEGER NOT NULL,
                status TEXT NOT NULL,
                result JSONB,
                error JSONB,
                branch TEXT,
                recorded_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_versions (
                workflow_name TEXT NOT NULL,
                graph_hash TEXT NOT NULL,
                graph JSONB NOT NULL,
                source TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (workflow_name, graph_hash)
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_run(row: asyncpg.Record) -> WorkflowRun:
        data = dict(row)
        for column in ("input", "output", "error"):
            data[column] = _loads(data[column])
        return WorkflowRun.model_validate(data)

    @staticmethod
    def _row_to_step(row: asyncpg.Record) -> StepState:
        data = dict(row)
        for column in _STEP_JSON_COLUMNS:
            data[column] = _loads(data[column])
        return StepState.model_validate(data)

    @staticmethod
    def _row_to_history(row: asyncpg.Record) -> StepHistoryEntry:
        data = dict(row)
        data["result"] = _loads(data["result"])
        data["error"] = _loads(data["error"])
        return StepHistoryEntry.model_validate(data)

    @staticmethod
    def _step_values(state: StepState) -> tuple:
        return (
            state.step_id,
            state.run_id,
            state.step_name,
            state.rpc_name,
            _dumps(state.data),
            state.status,
            _dumps(state.result),
            _dumps(state.error),
            state.branch,
            state.attempt_count,
            state.retries,
            _dumps(state.retry_delay),
            state.created_at,
            state.updated_at,
        )

    async def _record(self, conn: asyncpg.Connection, state: StepState) -> None:
        await conn.execute(
            """
            INSERT INTO workflow_step_history
                (run_id, step_name, step_id, attempt_count, status, result, error, branch, recorded_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            state.run_id,
            state.step_name,
            state.step_id,
            state.attempt_count,
            state.status,
            _dumps(state.result),
            _dumps(state.error),
            state.branch,
            state.updated_at,
        )

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_runs
                    (id, workflow, status, input, output, error, graph_hash, inline, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                run.id,
                run.workflow,
                run.status,
                _dumps(run.input),
                _dumps(run.output),
                _dumps(run.error),
                run.graph_hash,
                run.inline,
                run.created_at,
                run.updated_at,
            )
        finally:
            await conn.close()
        return run

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM workflow_runs WHERE id = $1", run_id)
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def list_runs(
        self, workflow: Optional[str] = None, status: Optional[str] = None
    ) -> List[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM workflow_runs
                WHERE ($1::text IS NULL OR workflow = $1)
                  AND ($2::text IS NULL OR status = $2)
                ORDER BY created_at DESC
                """,
                workflow,
                status,
            )
        finally:
            await conn.close()
        return [self._row_to_run(row) for row in rows]

    async def update_run_status(
        self,
        run_id: str,
        status: WorkflowStatus,
        output: Any = None,
        error: Optional[SerializedError] = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflow_runs SET status = $1, output = $2, error = $3, updated_at = $4 WHERE id = $5",
                status,
                _dumps(output),
                _dumps(error),
                utcnow(),
                run_id,
            )
        finally:
            await conn.close()

    async def delete_run(self, run_id: str) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                result = await conn.execute("DELETE FROM workflow_runs WHERE id = $1", run_id)
                await conn.execute("DELETE FROM workflow_steps WHERE run_id = $1", run_id)
                await conn.execute(
                    "DELETE FROM workflow_step_history WHERE run_id = $1", run_id
                )
        finally:
            await conn.close()
        return result != "DELETE 0"

    # ------------------------------------------------------------------
    # Steps
    async def insert_step_state(self, state: StepState) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                result = await conn.execute(
                    f"""
                    INSERT INTO workflow_steps ({_STEP_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                    ON CONFLICT (run_id, step_name) DO NOTHING
                    """,
                    *self._step_values(state),
                )
                inserted = result != "INSERT 0 0"
                if inserted:
                    await self._record(conn, state)
        finally:
            await conn.close()
        return inserted

    async def get_step_state(self, run_id: str, step_name: str) -> Optional[StepState]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM workflow_steps WHERE run_id = $1 AND step_name = $2",
                run_id,
                step_name,
            )
        finally:
            await conn.close()
        return self._row_to_step(row) if row else None

    async def get_step_state_by_id(self, step_id: str) -> Optional[StepState]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM workflow_steps WHERE step_id = $1", step_id)
        finally:
            await conn.close()
        return self._row_to_step(row) if row else None

    async def list_step_states(self, run_id: str) -> List[StepState]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM workflow_steps WHERE run_id = $1 ORDER BY created_at", run_id
            )
        finally:
            await conn.close()
        return [self._row_to_step(row) for row in rows]

    async def _transition(self, step_id: str, target: str, changes: Dict[str, Any]) -> bool:
        now = utcnow()
        columns: Dict[str, Any] = {"status": target, "updated_at": now, f"{target}_at": now}
        for field, value in changes.items():
            columns[field] = _dumps(value) if field in _STEP_JSON_COLUMNS else value
        assignments = ", ".join(
            f"{column} = ${position}" for position, column in enumerate(columns, start=1)
        )
        step_param = len(columns) + 1
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"UPDATE workflow_steps SET {assignments} "
                    f"WHERE step_id = ${step_param} AND status = ANY(${step_param + 1}::text[]) "
                    "RETURNING *",
                    *columns.values(),
                    step_id,
                    sorted(STEP_TRANSITIONS[target]),
                )
                if row is None:
                    return False
                await self._record(conn, self._row_to_step(row))
        finally:
            await conn.close()
        return True

    async def create_retry_attempt(self, run_id: str, step_name: str) -> Optional[StepState]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM workflow_steps WHERE run_id = $1 AND step_name = $2 FOR UPDATE",
                    run_id,
                    step_name,
                )
                if row is None or row["status"] != "failed":
                    return None
                current = self._row_to_step(row)
                now = utcnow()
                attempt = StepState(
                    step_id=str(uuid.uuid4()),
                    run_id=run_id,
                    step_name=step_name,
                    rpc_name=current.rpc_name,
                    data=current.data,
                    attempt_count=current.attempt_count + 1,
                    retries=current.retries,
                    retry_delay=current.retry_delay,
                    created_at=now,
                    updated_at=now,
                )
                await conn.execute(
                    "DELETE FROM workflow_steps WHERE run_id = $1 AND step_name = $2",
                    run_id,
                    step_name,
                )
                await conn.execute(
                    f"""
                    INSERT INTO workflow_steps ({_STEP_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                    """,
                    *self._step_values(attempt),
                )
                await self._record(conn, attempt)
        finally:
            await conn.close()
        return attempt

    async def get_run_history(self, run_id: str) -> List[StepHistoryEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM workflow_step_history WHERE run_id = $1 ORDER BY history_id",
                run_id,
            )
        finally:
            await conn.close()
        return [self._row_to_history(row) for row in rows]

    # ------------------------------------------------------------------
    # Versions
    async def upsert_workflow_version(self, version: WorkflowVersion) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_versions (workflow_name, graph_hash, graph, source, created_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (workflow_name, graph_hash) DO NOTHING
                """,
                version.workflow_name,
                version.graph_hash,
                version.graph.model_dump_json(),
                version.source,
                version.created_at,
            )
        finally:
            await conn.close()

    async def get_workflow_version(
        self, workflow_name: str, graph_hash: str
    ) -> Optional[WorkflowVersion]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM workflow_versions WHERE workflow_name = $1 AND graph_hash = $2",
                workflow_name,
                graph_hash,
            )
        finally:
            await conn.close()
        if row is None:
            return None
        data = dict(row)
        data["graph"] = json.loads(data["graph"])
        return WorkflowVersion.model_validate(data)

    # ------------------------------------------------------------------
    # Locking
    async def _try_acquire_lock(self, run_id: str) -> Optional[asyncpg.Connection]:
        conn = await self._connect()
        try:
            acquired = await conn.fetchval(
                "SELECT pg_try_advisory_lock(hashtext($1))", run_id
            )
        except BaseException:
            await conn.close()
            raise
        if acquired:
            return conn
        await conn.close()
        return None

    async def _release_lock(self, run_id: str, token: asyncpg.Connection) -> None:
        try:
            await token.execute("SELECT pg_advisory_unlock(hashtext($1))", run_id)
        finally:
            await token.close()
