"""Run scheduler: a bounded worker pool that drives runs step by step."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Set

from .approvals import ApprovalBroker
from .constants import DEFAULT_MAX_WORKERS, DEFAULT_SLACK_FACTOR
from .contracts import (
    RunError,
    RunStatus,
    StepExecutionRecord,
    StepStatus,
    TriggerFire,
    WorkflowDefinition,
    WorkflowRun,
    utcnow,
)
from .errors import (
    FlowgateError,
    RunCancelledError,
    RunNotFoundError,
    RunTimeoutError,
    StorageError,
)
from .execute import StepExecutor, StepOutcome
from .persistence import RunFilter, RunStore

logger = logging.getLogger(__name__)

_OPEN_STEP_STATUSES = (StepStatus.PENDING, StepStatus.GATED, StepStatus.DISPATCHING)


class RunScheduler:
    """Schedules runs onto ``max_workers`` asyncio workers.

    Run ids flow through an ``asyncio.Queue``. A worker takes the run's lock,
    reloads it from the store and advances it until it finishes or parks.
    Parked runs (approval gates, long retry delays) hold no worker; a timer
    or an approval decision puts them back on the queue.
    """

    def __init__(
        self,
        executor: StepExecutor,
        store: RunStore,
        approvals: Optional[ApprovalBroker] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        slack_factor: float = DEFAULT_SLACK_FACTOR,
        default_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.executor = executor
        self.store = store
        self.approvals = approvals or executor.approvals
        self.max_workers = max_workers
        self.slack_factor = slack_factor
        self.default_timeout_seconds = default_timeout_seconds

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: Set[str] = set()
        self._workers: List[asyncio.Task] = []
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._done: Dict[str, asyncio.Event] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._cancelling: Set[str] = set()

        self.approvals.add_listener(self.wake)

    # ------------------------------------------------------------------
    # Lifecycle
    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"flowgate-worker-{i}")
            for i in range(self.max_workers)
        ]
        logger.info(f"Run scheduler started with {self.max_workers} worker(s)")

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._inflight.values():
            task.cancel()
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Run scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ------------------------------------------------------------------
    # Public API
    async def start_run(
        self, definition: WorkflowDefinition, trigger: Optional[TriggerFire] = None
    ) -> str:
        run = WorkflowRun.for_definition(definition, trigger)
        await self.store.create_run(run, definition)
        self._definitions[run.run_id] = definition
        self._done[run.run_id] = asyncio.Event()
        logger.info(
            f"Run {run.run_id} created for {definition.use_case_id} "
            f"v{definition.version} ({run.trigger.kind})"
        )
        self._enqueue(run.run_id)
        return run.run_id

    async def resume(self, run_id: str) -> WorkflowRun:
        """Re-enqueue a stored run; terminal runs are returned untouched."""
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        if run.is_terminal:
            logger.info(f"Run {run_id} is already {run.status.value}; nothing to resume")
            return run
        definition = await self.store.get_definition(run_id)
        if definition is None:
            raise RunNotFoundError(f"Run {run_id} has no stored definition")
        self._definitions[run_id] = definition
        self._done.setdefault(run_id, asyncio.Event())
        self._enqueue(run_id)
        return run

    async def recover(self) -> List[str]:
        """Resume every unfinished run found in the store."""
        unfinished = await self.store.list_runs(
            RunFilter(
                status=[RunStatus.PENDING, RunStatus.RUNNING, RunStatus.WAITING_APPROVAL]
            )
        )
        for run in unfinished:
            await self.resume(run.run_id)
        if unfinished:
            logger.info(f"Recovered {len(unfinished)} unfinished run(s)")
        return [run.run_id for run in unfinished]

    def wake(self, run_id: str) -> None:
        timer = self._timers.pop(run_id, None)
        if timer is not None:
            timer.cancel()
        if self.is_active(run_id):
            self._enqueue(run_id)

    def is_active(self, run_id: str) -> bool:
        event = self._done.get(run_id)
        return event is not None and not event.is_set()

    async def cancel(self, run_id: str) -> bool:
        """Abort a run. Returns ``False`` when it had already finished."""
        task = self._inflight.get(run_id)
        if task is not None and not task.done():
            self._cancelling.add(run_id)
            task.cancel()
            return True
        try:
            async with self._locks[run_id]:
                run = await self.store.get_run(run_id)
                if run is None:
                    raise RunNotFoundError(f"Run {run_id} not found")
                if run.is_terminal:
                    return False
                await self._abort(run, RunCancelledError(f"Run {run_id} was cancelled"))
        finally:
            self._prune(run_id)
        return True

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> WorkflowRun:
        """Wait until ``run_id`` is terminal and return its final state."""
        event = self._done.get(run_id)
        if event is None:
            run = await self.store.get_run(run_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if run.is_terminal:
                return run
            event = self._done.setdefault(run_id, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout)
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} disappeared from the store")
        return run

    # ------------------------------------------------------------------
    # Workers
    def _enqueue(self, run_id: str) -> None:
        if run_id in self._queued:
            return
        self._queued.add(run_id)
        self._queue.put_nowait(run_id)

    async def _worker(self, index: int) -> None:
        while True:
            run_id = await self._queue.get()
            self._queued.discard(run_id)
            try:
                await self._drive(run_id)
            except StorageError as exc:
                logger.error(f"Run {run_id} left in its last durable state: {exc}")
            except Exception:
                logger.exception(f"Worker {index} failed while driving run {run_id}")
            finally:
                self._queue.task_done()

    async def _drive(self, run_id: str) -> None:
        try:
            await self._drive_locked(run_id)
        finally:
            self._prune(run_id)

    async def _drive_locked(self, run_id: str) -> None:
        async with self._locks[run_id]:
            run = await self.store.get_run(run_id)
            if run is None:
                logger.error(f"Run {run_id} vanished from the store")
                self._forget(run_id)
                return
            if run.is_terminal:
                self._release(run)
                return
            definition = self._definitions.get(run_id) or await self.store.get_definition(
                run_id
            )
            if definition is None:
                logger.error(f"Run {run_id} has no stored definition")
                return

            if run.status is RunStatus.PENDING:
                run.start(
                    definition.run_budget(self.slack_factor, self.default_timeout_seconds)
                )
                await self.store.save_run(run)

            if run_id in self._cancelling:
                await self._abort(run, RunCancelledError(f"Run {run_id} was cancelled"))
                return

            remaining: Optional[float] = None
            if run.deadline_at is not None:
                remaining = (run.deadline_at - utcnow()).total_seconds()
                if remaining <= 0:
                    await self._abort(run, self._timeout_error(run))
                    return

            task = asyncio.create_task(self._advance(run, definition))
            self._inflight[run_id] = task
            try:
                done, _ = await asyncio.wait({task}, timeout=remaining)
            except asyncio.CancelledError:
                task.cancel()
                raise
            finally:
                self._inflight.pop(run_id, None)

            if not done:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                await self._abort(run, self._timeout_error(run))
            elif task.cancelled():
                await self._abort(run, RunCancelledError(f"Run {run_id} was cancelled"))
            else:
                exc = task.exception()
                if exc is not None:
                    raise exc
                if run_id in self._cancelling and not run.is_terminal:
                    await self._abort(
                        run, RunCancelledError(f"Run {run_id} was cancelled")
                    )

    async def _advance(self, run: WorkflowRun, definition: WorkflowDefinition) -> None:
        while run.current_step_index < len(definition.steps):
            step = definition.steps[run.current_step_index]
            result = await self.executor.execute(run, definition, step)
            if result.outcome is StepOutcome.COMPLETED:
                run.advance()
                await self.store.save_run(run)
                continue
            if result.outcome is StepOutcome.PARKED:
                self._park(run, result.wake_at)
                return
            status = (
                RunStatus.FAILED
                if result.outcome is StepOutcome.FAILED
                else RunStatus.ABORTED
            )
            run.finish(status, result.error)
            logger.error(
                f"Run {run.run_id} {status.value} at step {step.id}: "
                f"{result.error.message if result.error else 'unknown error'}"
            )
            await self._complete(run)
            return

        run.finish(RunStatus.SUCCEEDED)
        await self._complete(run)

    # ------------------------------------------------------------------
    # Bookkeeping
    def _timeout_error(self, run: WorkflowRun) -> RunTimeoutError:
        return RunTimeoutError(
            f"Run {run.run_id} exceeded its time budget (deadline {run.deadline_at})"
        )

    def _park(self, run: WorkflowRun, wake_at: Optional[datetime]) -> None:
        candidates = [t for t in (wake_at, run.deadline_at) if t is not None]
        if not candidates:
            logger.info(f"Run {run.run_id} parked until woken")
            return
        target = min(candidates)
        delay = max((target - utcnow()).total_seconds(), 0.0)
        existing = self._timers.pop(run.run_id, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[run.run_id] = loop.call_later(delay, self.wake, run.run_id)
        logger.info(f"Run {run.run_id} parked for {delay:.3f}s")

    def _open_record(self, run: WorkflowRun) -> Optional[StepExecutionRecord]:
        if not run.history:
            return None
        record = run.history[-1]
        return record if record.status in _OPEN_STEP_STATUSES else None

    async def _abort(self, run: WorkflowRun, error: FlowgateError) -> None:
        record = self._open_record(run)
        if record is not None:
            record.fail(error)
        step_id = record.step_id if record else None
        run.finish(
            RunStatus.ABORTED,
            RunError(kind=error.kind, message=str(error), step_id=step_id),
        )
        logger.error(f"Run {run.run_id} aborted: {error}")
        await self._complete(run)

    async def _complete(self, run: WorkflowRun) -> None:
        await self.store.save_run(run)
        await self.store.archive_run(run.run_id)
        logger.info(f"Run {run.run_id} finished with status {run.status.value}")
        self._release(run)

    def _release(self, run: WorkflowRun) -> None:
        timer = self._timers.pop(run.run_id, None)
        if timer is not None:
            timer.cancel()
        self._cancelling.discard(run.run_id)
        for step_id in {r.step_id for r in run.history if r.approval_deadline}:
            self.approvals.clear(run.run_id, step_id)
        self._forget(run.run_id)

    def _forget(self, run_id: str) -> None:
        # waiters hold their own reference to the event; later waits read the store
        event = self._done.pop(run_id, None)
        if event is not None:
            event.set()
        self._definitions.pop(run_id, None)

    def _prune(self, run_id: str) -> None:
        """Drop the per-run lock once the run is finished and nobody holds it."""
        lock = self._locks.get(run_id)
        if lock is not None and not lock.locked() and not self.is_active(run_id):
            del self._locks[run_id]


__all__ = ["RunScheduler"]
