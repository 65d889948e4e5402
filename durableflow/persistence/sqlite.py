"""SQLite implementation of the workflow state store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

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


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(to_jsonable_python(value))


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value is not None else None


class SQLiteWorkflowStateStore(WorkflowStateStore):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path, **lock_options: float):
        super().__init__(**lock_options)
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # Every statement runs on a worker thread; one at a time per connection.
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                graph_hash TEXT NOT NULL,
                inline INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                step_id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                rpc_name TEXT,
                data TEXT,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                branch TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 1,
                retries INTEGER,
                retry_delay TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                scheduled_at TEXT,
                running_at TEXT,
                succeeded_at TEXT,
                failed_at TEXT,
                suspended_at TEXT,
                PRIMARY KEY (run_id, step_name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_step_history (
                history_id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                step_id TEXT NOT NULL,
                attempt_count INTEGER NOT NULL,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                branch TEXT,
                recorded_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_versions (
                workflow_name TEXT NOT NULL,
                graph_hash TEXT NOT NULL,
                graph TEXT NOT NULL,
                source TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (workflow_name, graph_hash)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_locks (
                run_id TEXT PRIMARY KEY,
                token TEXT NOT NULL,
                expires_at REAL NOT NULL
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
            return cur.rowcount

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

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> WorkflowRun:
        data = dict(row)
        for column in ("input", "output", "error"):
            data[column] = _loads(data[column])
        data["inline"] = bool(data["inline"])
        return WorkflowRun.model_validate(data)

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> StepState:
        data = dict(row)
        for column in _STEP_JSON_COLUMNS:
            data[column] = _loads(data[column])
        return StepState.model_validate(data)

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> StepHistoryEntry:
        data = dict(row)
        data["result"] = _loads(data["result"])
        data["error"] = _loads(data["error"])
        return StepHistoryEntry.model_validate(data)

    def _record(self, cur: sqlite3.Cursor, state: StepState) -> None:
        cur.execute(
            """
            INSERT INTO workflow_step_history
                (run_id, step_name, step_id, attempt_count, status, result, error, branch, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                state.run_id,
                state.step_name,
                state.step_id,
                state.attempt_count,
                state.status,
                _dumps(state.result),
                _dumps(state.error),
                state.branch,
                state.updated_at.isoformat(),
            ),
        )

    def _write_step(self, cur: sqlite3.Cursor, state: StepState, verb: str) -> None:
        cur.execute(
            f"""
            {verb} INTO workflow_steps
                (step_id, run_id, step_name, rpc_name, data, status, result, error, branch,
                 attempt_count, retries, retry_delay, created_at, updated_at,
                 scheduled_at, running_at, succeeded_at, failed_at, suspended_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
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
                state.created_at.isoformat(),
                state.updated_at.isoformat(),
                None,
                None,
                None,
                None,
                None,
            ),
        )

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_runs
                (id, workflow, status, input, output, error, graph_hash, inline, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            run.id,
            run.workflow,
            run.status,
            _dumps(run.input),
            _dumps(run.output),
            _dumps(run.error),
            run.graph_hash,
            int(run.inline),
            run.created_at.isoformat(),
            run.updated_at.isoformat(),
        )
        return run

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_runs WHERE id = ?", run_id
        )
        return self._row_to_run(row) if row else None

    async def list_runs(
        self, workflow: Optional[str] = None, status: Optional[str] = None
    ) -> List[WorkflowRun]:
        query = "SELECT * FROM workflow_runs WHERE 1 = 1"
        params: List[Any] = []
        if workflow is not None:
            query += " AND workflow = ?"
            params.append(workflow)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_run(row) for row in rows]

    async def update_run_status(
        self,
        run_id: str,
        status: WorkflowStatus,
        output: Any = None,
        error: Optional[SerializedError] = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_runs SET status = ?, output = ?, error = ?, updated_at = ? WHERE id = ?",
            status,
            _dumps(output),
            _dumps(error),
            utcnow().isoformat(),
            run_id,
        )

    def _delete_run(self, run_id: str) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("DELETE FROM workflow_runs WHERE id = ?", (run_id,))
            existed = cur.rowcount > 0
            cur.execute("DELETE FROM workflow_steps WHERE run_id = ?", (run_id,))
            cur.execute("DELETE FROM workflow_step_history WHERE run_id = ?", (run_id,))
            cur.execute("DELETE FROM workflow_locks WHERE run_id = ?", (run_id,))
            self._conn.commit()
            return existed

    async def delete_run(self, run_id: str) -> bool:
        return await asyncio.to_thread(self._delete_run, run_id)

    # ------------------------------------------------------------------
    # Steps
    def _insert_step(self, state: StepState) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            self._write_step(cur, state, "INSERT OR IGNORE")
            inserted = cur.rowcount > 0
            if inserted:
                self._record(cur, state)
            self._conn.commit()
            return inserted

    async def insert_step_state(self, state: StepState) -> bool:
        return await asyncio.to_thread(self._insert_step, state)

    async def get_step_state(self, run_id: str, step_name: str) -> Optional[StepState]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflow_steps WHERE run_id = ? AND step_name = ?",
            run_id,
            step_name,
        )
        return self._row_to_step(row) if row else None

    async def get_step_state_by_id(self, step_id: str) -> Optional[StepState]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_steps WHERE step_id = ?", step_id
        )
        return self._row_to_step(row) if row else None

    async def list_step_states(self, run_id: str) -> List[StepState]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_steps WHERE run_id = ? ORDER BY created_at",
            run_id,
        )
        return [self._row_to_step(row) for row in rows]

    def _apply_transition(self, step_id: str, target: str, changes: Dict[str, Any]) -> bool:
        now = utcnow().isoformat()
        columns = {"status": target, "updated_at": now, f"{target}_at": now}
        for field, value in changes.items():
            columns[field] = _dumps(value) if field in _STEP_JSON_COLUMNS else value
        sources = sorted(STEP_TRANSITIONS[target])
        assignments = ", ".join(f"{column} = ?" for column in columns)
        placeholders = ", ".join("?" for _ in sources)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                f"UPDATE workflow_steps SET {assignments} "
                f"WHERE step_id = ? AND status IN ({placeholders})",
                (*columns.values(), step_id, *sources),
            )
            if cur.rowcount == 0:
                self._conn.commit()
                return False
            cur.execute("SELECT * FROM workflow_steps WHERE step_id = ?", (step_id,))
            self._record(cur, self._row_to_step(cur.fetchone()))
            self._conn.commit()
            return True

    async def _transition(self, step_id: str, target: str, changes: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self._apply_transition, step_id, target, changes)

    def _new_attempt(self, run_id: str, step_name: str) -> Optional[StepState]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT * FROM workflow_steps WHERE run_id = ? AND step_name = ?",
                (run_id, step_name),
            )
            row = cur.fetchone()
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
            self._write_step(cur, attempt, "INSERT OR REPLACE")
            self._record(cur, attempt)
            self._conn.commit()
            return attempt

    async def create_retry_attempt(self, run_id: str, step_name: str) -> Optional[StepState]:
        return await asyncio.to_thread(self._new_attempt, run_id, step_name)

    async def get_run_history(self, run_id: str) -> List[StepHistoryEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_step_history WHERE run_id = ? ORDER BY history_id",
            run_id,
        )
        return [self._row_to_history(row) for row in rows]

    # ------------------------------------------------------------------
    # Versions
    async def upsert_workflow_version(self, version: WorkflowVersion) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO workflow_versions
                (workflow_name, graph_hash, graph, source, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            version.workflow_name,
            version.graph_hash,
            version.graph.model_dump_json(),
            version.source,
            version.created_at.isoformat(),
        )

    async def get_workflow_version(
        self, workflow_name: str, graph_hash: str
    ) -> Optional[WorkflowVersion]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflow_versions WHERE workflow_name = ? AND graph_hash = ?",
            workflow_name,
            graph_hash,
        )
        if row is None:
            return None
        data = dict(row)
        data["graph"] = json.loads(data["graph"])
        return WorkflowVersion.model_validate(data)

    # ------------------------------------------------------------------
    # Locking
    def _acquire(self, run_id: str) -> Optional[str]:
        token = str(uuid.uuid4())
        now = time.time()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "DELETE FROM workflow_locks WHERE run_id = ? AND expires_at <= ?",
                (run_id, now),
            )
            cur.execute(
                "INSERT OR IGNORE INTO workflow_locks (run_id, token, expires_at) VALUES (?, ?, ?)",
                (run_id, token, now + self.lock_ttl),
            )
            acquired = cur.rowcount > 0
            self._conn.commit()
        return token if acquired else None

    async def _try_acquire_lock(self, run_id: str) -> Optional[str]:
        return await asyncio.to_thread(self._acquire, run_id)

    async def _release_lock(self, run_id: str, token: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflow_locks WHERE run_id = ? AND token = ?",
            run_id,
            token,
        )

    async def close(self) -> None:
        self._conn.close()
