"""Wires trigger watchers to the event bus and the run scheduler."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from ..bus import EventBus
from ..config import TriggerConfig
from ..contracts import (
    EventTrigger,
    ScheduledTrigger,
    ThresholdTrigger,
    TriggerFire,
    WorkflowDefinition,
    utcnow,
)
from .watchers import Clock, IsActive, ScheduleWatcher, Sleep, StartRun, ThresholdWatcher

logger = logging.getLogger(__name__)


class TriggerManager:
    """Starts runs when registered triggers fire.

    Each event topic and each metric gets exactly one bus subscription; the
    manager fans every message out to all definitions registered on it.
    """

    def __init__(
        self,
        bus: EventBus,
        start_run: StartRun,
        config: Optional[TriggerConfig] = None,
        is_active: Optional[IsActive] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.bus = bus
        self.start_run = start_run
        self.config = config or TriggerConfig()
        self.is_active = is_active
        self._clock = clock
        self._sleep = sleep
        self._events: Dict[str, List[WorkflowDefinition]] = defaultdict(list)
        self._thresholds: Dict[str, List[ThresholdWatcher]] = defaultdict(list)
        self._schedules: Dict[str, ScheduleWatcher] = {}
        self._schedule_seq = 0
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lifespan: Optional[float] = None
        self._started = False

    # ------------------------------------------------------------------
    def register(self, definition: WorkflowDefinition) -> None:
        for trigger in definition.triggers:
            if isinstance(trigger, EventTrigger):
                self._events[trigger.event_name].append(definition)
                self._ensure_task(
                    f"event:{trigger.event_name}",
                    self._consume_events(trigger.event_name),
                )
            elif isinstance(trigger, ThresholdTrigger):
                self._thresholds[trigger.metric].append(
                    ThresholdWatcher(definition, trigger, self.config.cooldown_seconds)
                )
                self._ensure_task(
                    f"metric:{trigger.metric}", self._consume_metric(trigger.metric)
                )
            elif isinstance(trigger, ScheduledTrigger):
                watcher = ScheduleWatcher(
                    definition,
                    trigger,
                    self.start_run,
                    overlap=self.config.scheduled_overlap,
                    is_active=self.is_active,
                    clock=self._clock,
                    sleep=self._sleep,
                )
                self._schedule_seq += 1
                key = f"schedule:{self._schedule_seq}"
                self._schedules[key] = watcher
                self._ensure_task(key, watcher.run())
        logger.info(
            f"Registered {len(definition.triggers)} trigger(s) "
            f"for {definition.use_case_id}"
        )

    def unregister(self, use_case_id: str) -> None:
        """Drop every trigger registered for ``use_case_id``."""
        for definitions in self._events.values():
            definitions[:] = [d for d in definitions if d.use_case_id != use_case_id]
        for watchers in self._thresholds.values():
            watchers[:] = [
                w for w in watchers if w.definition.use_case_id != use_case_id
            ]
        for key in [
            k
            for k, w in self._schedules.items()
            if w.definition.use_case_id == use_case_id
        ]:
            del self._schedules[key]
            task = self._tasks.pop(key, None)
            if task is not None:
                task.cancel()

    def _ensure_task(self, key: str, coro) -> None:
        if not self._started or key in self._tasks:
            coro.close()
            return
        self._tasks[key] = asyncio.create_task(coro, name=f"flowgate-trigger-{key}")

    def start(self, lifespan: Optional[float] = None) -> None:
        if self._started:
            return
        self._started = True
        self._lifespan = lifespan
        for topic in list(self._events):
            self._ensure_task(f"event:{topic}", self._consume_events(topic))
        for metric in list(self._thresholds):
            self._ensure_task(f"metric:{metric}", self._consume_metric(metric))
        for key, watcher in self._schedules.items():
            self._ensure_task(key, watcher.run())

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._started = False
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    async def _fire(self, definition: WorkflowDefinition, fire: TriggerFire) -> None:
        try:
            run_id = await self.start_run(definition, fire)
        except Exception:
            logger.exception(
                f"Could not start {definition.use_case_id} from {fire.kind} trigger"
            )
            return
        logger.info(f"{fire.kind} trigger {fire.name} started run {run_id}")

    async def _consume_events(self, topic: str) -> None:
        async for message in self.bus.subscribe(topic, lifespan=self._lifespan):
            for definition in list(self._events[topic]):
                await self._fire(
                    definition,
                    TriggerFire(kind="event", name=topic, payload=dict(message.payload)),
                )

    async def _consume_metric(self, metric: str) -> None:
        async for message in self.bus.subscribe_metric(metric, lifespan=self._lifespan):
            for watcher in list(self._thresholds[metric]):
                if watcher.observe(message.value, message.timestamp):
                    await self._fire(
                        watcher.definition, watcher.fire(message.value, message.timestamp)
                    )


__all__ = ["TriggerManager"]
