"""In-memory implementation of the run store."""

from __future__ import annotations

from typing import Dict, Optional

from ..contracts import WorkflowDefinition, WorkflowRun
from ..errors import RunNotFoundError
from .models import RunFilter
from .repository import RunStore


class InMemoryRunStore(RunStore):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Runs are copied in and out so callers
    never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._definitions: Dict[str, WorkflowDefinition] = {}

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun, definition: WorkflowDefinition) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)
        self._definitions[run.run_id] = definition

    async def save_run(self, run: WorkflowRun) -> None:
        if run.run_id not in self._runs:
            raise RunNotFoundError(f"Run {run.run_id} was never created")
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def get_definition(self, run_id: str) -> WorkflowDefinition | None:
        return self._definitions.get(run_id)

    async def list_runs(self, run_filter: Optional[RunFilter] = None) -> list[WorkflowRun]:
        runs = [r.model_copy(deep=True) for r in self._runs.values()]
        return (run_filter or RunFilter()).apply(runs)

    async def archive_run(self, run_id: str) -> None:
        run = self._runs.get(run_id)
        if run:
            run.archived = True
