"""Repository abstraction for run state persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import WorkflowDefinition, WorkflowRun
from .models import RunFilter


class RunStore(Protocol):
    """Protocol for run state persistence backends.

    Backends raise :class:`~flowgate.errors.StorageError` when the underlying
    storage fails. Callers serialize writes per run; backends do not need
    cross-run locking.
    """

    async def create_run(self, run: WorkflowRun, definition: WorkflowDefinition) -> None:
        """Persist a new run together with the definition snapshot it executes."""

    async def save_run(self, run: WorkflowRun) -> None:
        """Persist the current state of ``run``, including its full history."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def get_definition(self, run_id: str) -> WorkflowDefinition | None:
        """Return the definition snapshot stored with the run."""

    async def list_runs(self, run_filter: Optional[RunFilter] = None) -> list[WorkflowRun]:
        """Return stored runs matching ``run_filter`` ordered by creation time."""

    async def archive_run(self, run_id: str) -> None:
        """Flag a terminal run as archived. Archived runs are kept for audit."""
