"""SQLite implementation of the run store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from ..contracts import WorkflowDefinition, WorkflowRun
from ..errors import RunNotFoundError, StorageError
from .models import RunFilter
from .repository import RunStore

T = TypeVar("T")


class SQLiteRunStore(RunStore):
    """Persist run state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open SQLite store {self.db_path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    use_case_id TEXT NOT NULL,
                    workflow_version TEXT NOT NULL,
                    status TEXT NOT NULL,
                    archived INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL,
                    definition TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS step_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    step_id TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT,
                    ended_at TEXT,
                    error TEXT,
                    UNIQUE (run_id, seq)
                )
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        def locked() -> T:
            with self._lock:
                return func(*args)

        try:
            return await asyncio.to_thread(locked)
        except sqlite3.Error as exc:
            raise StorageError(f"SQLite store error: {exc}") from exc

    def _insert_run(self, run: WorkflowRun, definition: WorkflowDefinition) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO runs (run_id, workflow_id, use_case_id, workflow_version,
                                  status, archived, created_at, data, definition)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    run.workflow_id,
                    run.use_case_id,
                    run.workflow_version,
                    run.status.value,
                    int(run.archived),
                    run.created_at.isoformat(),
                    run.to_json(),
                    definition.to_json(),
                ),
            )
            self._upsert_history(run)

    def _update_run(self, run: WorkflowRun) -> None:
        with self._conn:
            cur = self._conn.execute(
                "UPDATE runs SET status = ?, archived = ?, data = ? WHERE run_id = ?",
                (run.status.value, int(run.archived), run.to_json(), run.run_id),
            )
            if cur.rowcount == 0:
                raise RunNotFoundError(f"Run {run.run_id} was never created")
            self._upsert_history(run)

    def _upsert_history(self, run: WorkflowRun) -> None:
        for seq, record in enumerate(run.history):
            self._conn.execute(
                """
                INSERT INTO step_history (run_id, seq, step_id, attempt, status,
                                          started_at, ended_at, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (run_id, seq) DO UPDATE SET
                    status = excluded.status,
                    ended_at = excluded.ended_at,
                    error = excluded.error
                """,
                (
                    run.run_id,
                    seq,
                    record.step_id,
                    record.attempt,
                    record.status.value,
                    record.started_at.isoformat(),
                    record.ended_at.isoformat() if record.ended_at else None,
                    record.error,
                ),
            )

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return self._conn.execute(query, params).fetchall()

    def _archive(self, run_id: str) -> None:
        row = self._fetchone("SELECT data FROM runs WHERE run_id = ?", run_id)
        if row is None:
            return
        run = WorkflowRun.from_json(row["data"])
        run.archived = True
        with self._conn:
            self._conn.execute(
                "UPDATE runs SET archived = 1, data = ? WHERE run_id = ?",
                (run.to_json(), run_id),
            )

    # ------------------------------------------------------------------
    # Store API
    async def create_run(self, run: WorkflowRun, definition: WorkflowDefinition) -> None:
        await self._run(self._insert_run, run, definition)

    async def save_run(self, run: WorkflowRun) -> None:
        await self._run(self._update_run, run)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._run(
            self._fetchone, "SELECT data FROM runs WHERE run_id = ?", run_id
        )
        return WorkflowRun.from_json(row["data"]) if row else None

    async def get_definition(self, run_id: str) -> WorkflowDefinition | None:
        row = await self._run(
            self._fetchone, "SELECT definition FROM runs WHERE run_id = ?", run_id
        )
        return WorkflowDefinition.from_json(row["definition"]) if row else None

    async def list_runs(self, run_filter: Optional[RunFilter] = None) -> list[WorkflowRun]:
        run_filter = run_filter or RunFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if run_filter.status:
            clauses.append(f"status IN ({', '.join('?' for _ in run_filter.status)})")
            params.extend(s.value for s in run_filter.status)
        if run_filter.use_case_id:
            clauses.append("use_case_id = ?")
            params.append(run_filter.use_case_id)
        if run_filter.workflow_id:
            clauses.append("workflow_id = ?")
            params.append(run_filter.workflow_id)
        if not run_filter.include_archived:
            clauses.append("archived = 0")
        query = "SELECT data FROM runs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, rowid"
        if run_filter.limit:
            query += f" LIMIT {int(run_filter.limit)}"
        rows = await self._run(self._fetchall, query, *params)
        return [WorkflowRun.from_json(r["data"]) for r in rows]

    async def get_history_rows(self, run_id: str) -> list[dict[str, Any]]:
        """Audit view of the step history table for ``run_id``."""
        rows = await self._run(
            self._fetchall,
            "SELECT seq, step_id, attempt, status, started_at, ended_at, error "
            "FROM step_history WHERE run_id = ? ORDER BY seq",
            run_id,
        )
        return [dict(r) for r in rows]

    async def archive_run(self, run_id: str) -> None:
        await self._run(self._archive, run_id)

    def close(self) -> None:
        self._conn.close()
