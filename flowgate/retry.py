"""Retry and escalation policy for failing steps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from .constants import DEFAULT_RETRY_PARK_THRESHOLD_MS
from .contracts import Step, StepExecutionRecord, WorkflowRun
from .errors import FlowgateError
from .notify import LoggingNotifier, NotificationPayload, Notifier
from .utils.retry import compute_delay, next_attempt_at

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed attempt: try again (when) or give up."""

    retry: bool
    delay_seconds: float = 0.0
    retry_at: Optional[datetime] = None
    park: bool = False


class RetryManager:
    """Decides whether a failed attempt is retried and escalates exhausted steps.

    Delays are fixed per step (``retry.delay_ms``). Delays at or above
    ``park_threshold_ms`` are reported as ``park`` so the scheduler can release
    the worker and re-enqueue the run on a timer; shorter delays are slept
    inline through :meth:`wait`.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        park_threshold_ms: int = DEFAULT_RETRY_PARK_THRESHOLD_MS,
        default_recipients: Optional[List[str]] = None,
        default_channels: Optional[List[str]] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.notifier = notifier or LoggingNotifier()
        self.park_threshold_ms = park_threshold_ms
        self.default_recipients = list(default_recipients or [])
        self.default_channels = list(default_channels or [])
        self._sleep = sleep

    def decide(self, step: Step, attempt: int, error: Exception) -> RetryDecision:
        if not getattr(error, "retryable", False):
            logger.info(f"Step {step.id} failed with a non-retryable error: {error}")
            return RetryDecision(retry=False)
        if attempt >= step.max_attempts:
            return RetryDecision(retry=False)
        policy = step.retry
        delay = compute_delay(policy)
        park = policy is not None and policy.delay_ms >= self.park_threshold_ms
        logger.warning(
            f"Step {step.id} attempt {attempt}/{step.max_attempts} failed: {error}; "
            f"retrying in {delay:.3f}s"
        )
        return RetryDecision(
            retry=True, delay_seconds=delay, retry_at=next_attempt_at(policy), park=park
        )

    async def wait(self, decision: RetryDecision) -> None:
        if decision.delay_seconds > 0:
            await self._sleep(decision.delay_seconds)

    def _targets(self, step: Step) -> tuple[List[str], List[str]]:
        policy = step.notification
        if policy is not None:
            return list(policy.recipients), list(policy.channels)
        if step.error_handling and step.error_handling.escalate:
            return self.default_recipients, self.default_channels
        return [], []

    async def escalate(
        self, run: WorkflowRun, step: Step, record: StepExecutionRecord, error: Exception
    ) -> bool:
        """Notify the step's recipients that it failed for good.

        Returns ``True`` when a notification was delivered. Delivery errors are
        logged and never change the step outcome.
        """
        recipients, channels = self._targets(step)
        if not recipients or not channels:
            return False
        payload = NotificationPayload(
            run_id=run.run_id,
            workflow_id=run.workflow_id,
            use_case_id=run.use_case_id,
            step_id=step.id,
            step_name=step.name or step.id,
            attempts=record.attempt,
            error=str(error),
            error_kind=error.kind if isinstance(error, FlowgateError) else None,
        )
        try:
            await self.notifier.notify(recipients, channels, payload)
        except Exception as exc:
            logger.error(f"Could not deliver failure notice for run {run.run_id}: {exc}")
            return False
        return True


__all__ = ["RetryDecision", "RetryManager"]
