"""Query models for persisted run state."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from ..contracts import RunStatus, WorkflowRun


class RunFilter(BaseModel):
    """Criteria for listing runs. Unset fields match everything."""

    status: Optional[List[RunStatus]] = None
    use_case_id: Optional[str] = None
    workflow_id: Optional[str] = None
    include_archived: bool = True
    limit: Optional[int] = Field(default=None, ge=1)

    def matches(self, run: WorkflowRun) -> bool:
        if self.status and run.status not in self.status:
            return False
        if self.use_case_id and run.use_case_id != self.use_case_id:
            return False
        if self.workflow_id and run.workflow_id != self.workflow_id:
            return False
        if not self.include_archived and run.archived:
            return False
        return True

    def apply(self, runs: List[WorkflowRun]) -> List[WorkflowRun]:
        selected = sorted(
            (r for r in runs if self.matches(r)), key=lambda r: r.created_at
        )
        return selected[: self.limit] if self.limit else selected
