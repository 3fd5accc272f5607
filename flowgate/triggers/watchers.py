"""Per-trigger watchers: decide when a definition's trigger fires."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from ..conditions import compare
from ..contracts import (
    ScheduledTrigger,
    ThresholdTrigger,
    TriggerFire,
    WorkflowDefinition,
    utcnow,
)
from ..errors import ConditionEvaluationError
from .cron import CronExpression

logger = logging.getLogger(__name__)

StartRun = Callable[[WorkflowDefinition, TriggerFire], Awaitable[str]]
Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]
IsActive = Callable[[str], bool]


class ThresholdWatcher:
    """Fires when a metric sample crosses the trigger's threshold.

    After firing the watcher ignores samples until ``cooldown_seconds`` have
    passed, measured on sample timestamps rather than on the local clock.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        trigger: ThresholdTrigger,
        cooldown_seconds: float,
    ) -> None:
        self.definition = definition
        self.trigger = trigger
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.cooling_until: Optional[datetime] = None

    def observe(self, value: float, timestamp: Optional[datetime] = None) -> bool:
        timestamp = timestamp or utcnow()
        if self.cooling_until is not None and timestamp < self.cooling_until:
            return False
        try:
            hit = compare(value, self.trigger.operator, self.trigger.value)
        except ConditionEvaluationError as exc:
            logger.warning(f"Ignoring sample for metric {self.trigger.metric}: {exc}")
            return False
        if not hit:
            return False
        self.cooling_until = timestamp + self.cooldown
        logger.info(
            f"Threshold {self.trigger.metric} {self.trigger.operator.value} "
            f"{self.trigger.value} crossed by {value} for {self.definition.use_case_id}"
        )
        return True

    def fire(self, value: float, timestamp: datetime) -> TriggerFire:
        return TriggerFire(
            kind="threshold",
            name=self.trigger.metric,
            payload={"metric": self.trigger.metric, "value": value},
            fired_at=timestamp,
        )


class ScheduleWatcher:
    """Sleeps until the next cron match and starts a run.

    With ``overlap="single_flight"`` a tick is skipped while the run started
    by the previous tick is still active.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        trigger: ScheduledTrigger,
        start_run: StartRun,
        overlap: str = "allow",
        is_active: Optional[IsActive] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.definition = definition
        self.trigger = trigger
        self.cron = CronExpression(trigger.cron_expr)
        self.start_run = start_run
        self.overlap = overlap
        self.is_active = is_active
        self._clock = clock
        self._sleep = sleep
        self.last_run_id: Optional[str] = None

    async def tick(self, due: Optional[datetime] = None) -> Optional[str]:
        """Wait for the next scheduled time (or ``due``) and fire once."""
        now = self._clock()
        if due is None:
            due = self.cron.next_after(now)
        await self._sleep(max((due - now).total_seconds(), 0.0))
        if (
            self.overlap == "single_flight"
            and self.last_run_id is not None
            and self.is_active is not None
            and self.is_active(self.last_run_id)
        ):
            logger.info(
                f"Skipping schedule {self.trigger.cron_expr} for "
                f"{self.definition.use_case_id}: run {self.last_run_id} still active"
            )
            return None
        fire = TriggerFire(
            kind="scheduled",
            name=self.trigger.cron_expr,
            payload={"scheduled_for": due.isoformat()},
            fired_at=due,
        )
        self.last_run_id = await self.start_run(self.definition, fire)
        return self.last_run_id

    async def run(self) -> None:
        while True:
            try:
                due = self.cron.next_after(self._clock())
            except ValueError as exc:
                logger.error(
                    f"Schedule for {self.definition.use_case_id} stopped: {exc}"
                )
                return
            try:
                await self.tick(due)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"Scheduled start of {self.definition.use_case_id} failed"
                )
