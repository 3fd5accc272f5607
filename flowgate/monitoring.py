"""Run metrics computed from the run store.

Nothing here is tracked in memory: every figure is a projection over
``RunStore.list_runs``, so metrics survive restarts and agree across engine
processes sharing a database.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .contracts import RunStatus, StepStatus, WorkflowRun, utcnow
from .persistence import RunFilter, RunStore

logger = logging.getLogger(__name__)

ACTIVE_RUN_STATUSES = [RunStatus.PENDING, RunStatus.RUNNING, RunStatus.WAITING_APPROVAL]
TOP_ERRORS = 10


class StepMetrics(BaseModel):
    """Attempt counts and timing for one step id across runs."""

    step_id: str
    attempts: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    average_duration_seconds: float = 0.0


class WorkflowMetrics(BaseModel):
    """Outcome counts and timing for every run of one use case."""

    use_case_id: str
    total_runs: int = 0
    succeeded: int = 0
    failed: int = 0
    aborted: int = 0
    active: int = 0
    success_rate: float = 0.0
    average_duration_seconds: float = 0.0
    last_run_at: Optional[datetime] = None
    steps: Dict[str, StepMetrics] = Field(default_factory=dict)
    error_frequency: Dict[str, int] = Field(default_factory=dict)


class ErrorCount(BaseModel):
    error: str
    count: int


class SystemMetrics(BaseModel):
    """Engine-wide view: run counts, per-workflow metrics and common errors."""

    total_runs: int = 0
    active_runs: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    workflows: Dict[str, WorkflowMetrics] = Field(default_factory=dict)
    top_errors: List[ErrorCount] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


def _seconds(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return max((end - start).total_seconds(), 0.0)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _step_metrics(runs: Iterable[WorkflowRun]) -> Dict[str, StepMetrics]:
    durations: Dict[str, List[float]] = defaultdict(list)
    metrics: Dict[str, StepMetrics] = {}
    for run in runs:
        for record in run.history:
            entry = metrics.setdefault(record.step_id, StepMetrics(step_id=record.step_id))
            if record.status is StepStatus.SKIPPED:
                entry.skipped += 1
                continue
            if record.status is StepStatus.SUCCEEDED:
                entry.succeeded += 1
            elif record.status in (StepStatus.FAILED, StepStatus.RETRYING):
                entry.failed += 1
            else:
                # still gated or dispatching
                continue
            entry.attempts += 1
            elapsed = _seconds(record.started_at, record.ended_at)
            if elapsed is not None:
                durations[record.step_id].append(elapsed)
    for step_id, entry in metrics.items():
        entry.average_duration_seconds = _mean(durations[step_id])
    return metrics


def workflow_metrics(use_case_id: str, runs: Iterable[WorkflowRun]) -> WorkflowMetrics:
    """Aggregate the runs of ``use_case_id`` found in ``runs``."""
    selected = [run for run in runs if run.use_case_id == use_case_id]
    statuses = Counter(run.status for run in selected)
    finished = [run for run in selected if run.is_terminal]
    errors = Counter(
        run.error.message for run in finished if run.error is not None
    )
    durations = [
        elapsed
        for elapsed in (_seconds(run.started_at, run.completed_at) for run in finished)
        if elapsed is not None
    ]
    succeeded = statuses[RunStatus.SUCCEEDED]
    return WorkflowMetrics(
        use_case_id=use_case_id,
        total_runs=len(selected),
        succeeded=succeeded,
        failed=statuses[RunStatus.FAILED],
        aborted=statuses[RunStatus.ABORTED],
        active=len(selected) - len(finished),
        success_rate=succeeded / len(finished) if finished else 0.0,
        average_duration_seconds=_mean(durations),
        last_run_at=max((run.created_at for run in selected), default=None),
        steps=_step_metrics(selected),
        error_frequency=dict(errors),
    )


def system_metrics(runs: Iterable[WorkflowRun], top: int = TOP_ERRORS) -> SystemMetrics:
    """Aggregate every run, with the ``top`` most frequent run errors."""
    runs = list(runs)
    workflows = {
        use_case_id: workflow_metrics(use_case_id, runs)
        for use_case_id in sorted({run.use_case_id for run in runs})
    }
    errors: Counter = Counter()
    for metrics in workflows.values():
        errors.update(metrics.error_frequency)
    return SystemMetrics(
        total_runs=len(runs),
        active_runs=sum(1 for run in runs if not run.is_terminal),
        by_status=dict(Counter(run.status.value for run in runs)),
        workflows=workflows,
        top_errors=[
            ErrorCount(error=error, count=count)
            for error, count in errors.most_common(top)
        ],
    )


class RunMonitor:
    """Reads runs from a store and reports metrics over them."""

    def __init__(self, store: RunStore) -> None:
        self.store = store

    async def active_runs(self, use_case_id: Optional[str] = None) -> List[WorkflowRun]:
        return await self.store.list_runs(
            RunFilter(status=ACTIVE_RUN_STATUSES, use_case_id=use_case_id)
        )

    async def workflow(self, use_case_id: str) -> WorkflowMetrics:
        runs = await self.store.list_runs(RunFilter(use_case_id=use_case_id))
        return workflow_metrics(use_case_id, runs)

    async def system(self, top: int = TOP_ERRORS) -> SystemMetrics:
        metrics = system_metrics(await self.store.list_runs(), top)
        logger.debug(
            f"System metrics: {metrics.total_runs} run(s), {metrics.active_runs} active"
        )
        return metrics


__all__ = [
    "ErrorCount",
    "RunMonitor",
    "StepMetrics",
    "SystemMetrics",
    "WorkflowMetrics",
    "system_metrics",
    "workflow_metrics",
]
