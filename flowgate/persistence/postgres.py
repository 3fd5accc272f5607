"""PostgreSQL implementation of the run store."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..contracts import WorkflowDefinition, WorkflowRun
from ..errors import RunNotFoundError, StorageError
from .models import RunFilter
from .repository import RunStore


class PostgresRunStore(RunStore):
    """Persist run state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
            if not self._initialized:
                await self._ensure_schema(conn)
                self._initialized = True
        except (asyncpg.PostgresError, OSError) as exc:
            raise StorageError(f"Cannot reach PostgreSQL store: {exc}") from exc
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                use_case_id TEXT NOT NULL,
                workflow_version TEXT NOT NULL,
                status TEXT NOT NULL,
                archived BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL,
                definition JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                step_id TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ,
                ended_at TIMESTAMPTZ,
                error TEXT,
                UNIQUE (run_id, seq)
            )
            """
        )

    async def _upsert_history(self, conn: asyncpg.Connection, run: WorkflowRun) -> None:
        await conn.executemany(
            """
            INSERT INTO step_history (run_id, seq, step_id, attempt, status,
                                      started_at, ended_at, error)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (run_id, seq) DO UPDATE SET
                status = EXCLUDED.status,
                ended_at = EXCLUDED.ended_at,
                error = EXCLUDED.error
            """,
            [
                (
                    run.run_id,
                    seq,
                    r.step_id,
                    r.attempt,
                    r.status.value,
                    r.started_at,
                    r.ended_at,
                    r.error,
                )
                for seq, r in enumerate(run.history)
            ],
        )

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun, definition: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO runs (run_id, workflow_id, use_case_id, workflow_version,
                                      status, archived, created_at, data, definition)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    run.run_id,
                    run.workflow_id,
                    run.use_case_id,
                    run.workflow_version,
                    run.status.value,
                    run.archived,
                    run.created_at,
                    run.to_json(),
                    definition.to_json(),
                )
                await self._upsert_history(conn, run)
        except asyncpg.PostgresError as exc:
            raise StorageError(f"Cannot create run {run.run_id}: {exc}") from exc
        finally:
            await conn.close()

    async def save_run(self, run: WorkflowRun) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                result = await conn.execute(
                    "UPDATE runs SET status = $1, archived = $2, data = $3 WHERE run_id = $4",
                    run.status.value,
                    run.archived,
                    run.to_json(),
                    run.run_id,
                )
                if result.endswith(" 0"):
                    raise RunNotFoundError(f"Run {run.run_id} was never created")
                await self._upsert_history(conn, run)
        except asyncpg.PostgresError as exc:
            raise StorageError(f"Cannot save run {run.run_id}: {exc}") from exc
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        except asyncpg.PostgresError as exc:
            raise StorageError(f"PostgreSQL query failed: {exc}") from exc
        finally:
            await conn.close()

    @staticmethod
    def _decode(value: Any) -> str:
        return value if isinstance(value, str) else json.dumps(value)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        rows = await self._fetch("SELECT data FROM runs WHERE run_id = $1", run_id)
        return WorkflowRun.from_json(self._decode(rows[0]["data"])) if rows else None

    async def get_definition(self, run_id: str) -> WorkflowDefinition | None:
        rows = await self._fetch("SELECT definition FROM runs WHERE run_id = $1", run_id)
        if not rows:
            return None
        return WorkflowDefinition.from_json(self._decode(rows[0]["definition"]))

    async def list_runs(self, run_filter: Optional[RunFilter] = None) -> list[WorkflowRun]:
        run_filter = run_filter or RunFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if run_filter.status:
            params.append([s.value for s in run_filter.status])
            clauses.append(f"status = ANY(${len(params)})")
        if run_filter.use_case_id:
            params.append(run_filter.use_case_id)
            clauses.append(f"use_case_id = ${len(params)}")
        if run_filter.workflow_id:
            params.append(run_filter.workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if not run_filter.include_archived:
            clauses.append("archived = FALSE")
        query = "SELECT data FROM runs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"
        if run_filter.limit:
            query += f" LIMIT {int(run_filter.limit)}"
        rows = await self._fetch(query, *params)
        return [WorkflowRun.from_json(self._decode(r["data"])) for r in rows]

    async def archive_run(self, run_id: str) -> None:
        run = await self.get_run(run_id)
        if run is None:
            return
        run.archived = True
        await self.save_run(run)
