"""Step execution: the per-attempt state machine of one workflow step."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .approvals import ApprovalBroker
from .conditions import build_scope, evaluate_all
from .contracts import (
    RunError,
    RunStatus,
    Step,
    StepExecutionRecord,
    StepStatus,
    WorkflowDefinition,
    WorkflowRun,
    utcnow,
)
from .dispatch import ActionDispatcher, select_outputs
from .errors import (
    ApprovalRejectedError,
    ApprovalTimeoutError,
    ConditionEvaluationError,
    DispatchError,
    ErrorKind,
    FlowgateError,
)
from .persistence import RunStore
from .retry import RetryManager

logger = logging.getLogger(__name__)

_APPROVAL_KINDS = (ErrorKind.APPROVAL_REJECTED, ErrorKind.APPROVAL_TIMEOUT)


class StepOutcome(str, Enum):
    COMPLETED = "completed"
    PARKED = "parked"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class StepResult:
    """What the scheduler should do with the run after one ``execute`` call.

    ``PARKED`` carries ``wake_at``; ``FAILED`` and ``ABORTED`` carry the run
    error.
    """

    outcome: StepOutcome
    wake_at: Optional[datetime] = None
    error: Optional[RunError] = None


def _run_error(step: Step, error: Exception) -> RunError:
    kind = error.kind if isinstance(error, FlowgateError) else ErrorKind.DISPATCH
    return RunError(kind=kind, message=str(error), step_id=step.id)


def idempotency_key(run: WorkflowRun, step: Step, attempt: int) -> str:
    return f"{run.run_id}:{step.id}:{attempt}"


class StepExecutor:
    """Drives one step of a run from its latest execution record.

    ``execute`` is re-entrant: it inspects the latest record of the step and
    continues from there, so the same call serves a fresh step, an approval
    wake-up, a retry timer and a resume after a crash. Every state change is
    saved before the next side effect.
    """

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        store: RunStore,
        retry_manager: Optional[RetryManager] = None,
        approvals: Optional[ApprovalBroker] = None,
        strict: bool = False,
    ) -> None:
        self.dispatcher = dispatcher
        self.store = store
        self.retry_manager = retry_manager or RetryManager()
        self.approvals = approvals or ApprovalBroker()
        self.strict = strict

    async def execute(
        self, run: WorkflowRun, definition: WorkflowDefinition, step: Step
    ) -> StepResult:
        record = run.latest_record(step.id)
        if record is None or record.status is StepStatus.PENDING:
            return await self._begin(run, definition, step, record)
        if record.status is StepStatus.GATED:
            return await self._check_gate(run, step, record)
        if record.status is StepStatus.DISPATCHING:
            logger.info(
                f"Run {run.run_id} step {step.id} resuming attempt {record.attempt}"
            )
            return await self._dispatch(run, step, record)
        if record.status is StepStatus.RETRYING:
            if record.retry_at is not None and record.retry_at > utcnow():
                return StepResult(StepOutcome.PARKED, wake_at=record.retry_at)
            return await self._dispatch(run, step, self._next_attempt(run, record))
        if record.status is StepStatus.SUCCEEDED:
            run.merge_outputs(record.outputs or {})
            await self.store.save_run(run)
            return StepResult(StepOutcome.COMPLETED)
        if record.status is StepStatus.SKIPPED:
            return StepResult(StepOutcome.COMPLETED)

        error = RunError(
            kind=record.error_kind or ErrorKind.DISPATCH,
            message=record.error or f"Step {step.id} failed",
            step_id=step.id,
        )
        outcome = (
            StepOutcome.ABORTED if error.kind in _APPROVAL_KINDS else StepOutcome.FAILED
        )
        return StepResult(outcome, error=error)

    # ------------------------------------------------------------------
    async def _begin(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: Step,
        record: Optional[StepExecutionRecord],
    ) -> StepResult:
        record = record or run.append_record(StepExecutionRecord(step_id=step.id))
        scope = build_scope(run.context, definition, run.trigger.payload)
        try:
            passed = evaluate_all(scope, step.conditions, strict=self.strict)
        except ConditionEvaluationError as exc:
            record.fail(exc)
            logger.error(f"Run {run.run_id} step {step.id} condition failed: {exc}")
            await self.retry_manager.escalate(run, step, record, exc)
            await self.store.save_run(run)
            return StepResult(StepOutcome.FAILED, error=_run_error(step, exc))

        if not passed:
            record.transition(StepStatus.SKIPPED)
            logger.info(f"Run {run.run_id} step {step.id} skipped")
            await self.store.save_run(run)
            return StepResult(StepOutcome.COMPLETED)

        if step.human_approval_required:
            deadline = utcnow() + timedelta(seconds=self.approvals.timeout_seconds)
            record.approval_deadline = deadline
            record.transition(StepStatus.GATED)
            run.transition(RunStatus.WAITING_APPROVAL)
            await self.store.save_run(run)
            self.approvals.expect(run.run_id, step.id, deadline)
            return StepResult(StepOutcome.PARKED, wake_at=deadline)

        return await self._dispatch(run, step, record)

    async def _check_gate(
        self, run: WorkflowRun, step: Step, record: StepExecutionRecord
    ) -> StepResult:
        decision = self.approvals.decision(run.run_id, step.id)
        if decision is not None and decision.approved:
            record.approved_by = decision.approver_id
            record.approved_at = decision.decided_at
            run.transition(RunStatus.RUNNING)
            return await self._dispatch(run, step, record)

        if decision is not None:
            error: FlowgateError = ApprovalRejectedError(
                f"Step {step.id} rejected by {decision.approver_id}"
                + (f": {decision.reason}" if decision.reason else "")
            )
        elif record.approval_deadline is None or utcnow() >= record.approval_deadline:
            error = ApprovalTimeoutError(f"Step {step.id} was not approved in time")
        else:
            self.approvals.expect(run.run_id, step.id, record.approval_deadline)
            return StepResult(StepOutcome.PARKED, wake_at=record.approval_deadline)

        record.fail(error)
        logger.error(f"Run {run.run_id} step {step.id}: {error}")
        await self.store.save_run(run)
        return StepResult(StepOutcome.ABORTED, error=_run_error(step, error))

    def _next_attempt(
        self, run: WorkflowRun, previous: StepExecutionRecord
    ) -> StepExecutionRecord:
        return run.append_record(
            StepExecutionRecord(
                step_id=previous.step_id,
                attempt=previous.attempt + 1,
                approved_by=previous.approved_by,
                approved_at=previous.approved_at,
            )
        )

    async def _invoke(
        self, run: WorkflowRun, step: Step, record: StepExecutionRecord
    ) -> Dict[str, Any]:
        try:
            raw = await self.dispatcher.dispatch(
                step.agent,
                step.service,
                step.action,
                dict(step.parameters),
                context=dict(run.context),
                idempotency_key=idempotency_key(run, step, record.attempt),
            )
        except DispatchError:
            raise
        except Exception as exc:
            raise DispatchError(f"{type(exc).__name__}: {exc}", retryable=True) from exc
        if not isinstance(raw, Mapping):
            raise DispatchError(
                f"{step.service}.{step.action} returned {type(raw).__name__}, "
                "expected a mapping",
                retryable=False,
            )
        return select_outputs(step, dict(raw))

    async def _dispatch(
        self, run: WorkflowRun, step: Step, record: StepExecutionRecord
    ) -> StepResult:
        while True:
            if record.status is not StepStatus.DISPATCHING:
                record.transition(StepStatus.DISPATCHING)
                await self.store.save_run(run)
            logger.info(
                f"Run {run.run_id} step {step.id} attempt {record.attempt} dispatching "
                f"{step.service}.{step.action}"
            )
            try:
                outputs = await self._invoke(run, step, record)
            except DispatchError as exc:
                error = exc
            else:
                record.outputs = outputs
                record.transition(StepStatus.SUCCEEDED)
                run.merge_outputs(outputs)
                await self.store.save_run(run)
                logger.info(f"Run {run.run_id} step {step.id} succeeded")
                return StepResult(StepOutcome.COMPLETED)

            decision = self.retry_manager.decide(step, record.attempt, error)
            if not decision.retry:
                record.fail(error)
                logger.error(
                    f"Run {run.run_id} step {step.id} failed after "
                    f"{record.attempt} attempt(s): {error}"
                )
                await self.retry_manager.escalate(run, step, record, error)
                await self.store.save_run(run)
                return StepResult(StepOutcome.FAILED, error=_run_error(step, error))

            record.error = str(error)
            record.error_kind = error.kind
            record.retry_at = decision.retry_at
            record.transition(StepStatus.RETRYING)
            await self.store.save_run(run)
            if decision.park:
                return StepResult(StepOutcome.PARKED, wake_at=decision.retry_at)
            await self.retry_manager.wait(decision)
            record = self._next_attempt(run, record)


__all__ = ["StepExecutor", "StepOutcome", "StepResult", "idempotency_key"]
