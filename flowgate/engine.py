"""High level engine wiring registry, store, scheduler and triggers together."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .approvals import ApprovalBroker, ApprovalDecision
from .bus import EventBus
from .config import FlowgateConfig, load_config
from .contracts import TriggerFire, WorkflowDefinition, WorkflowRun, utcnow
from .dispatch import ActionDispatcher, HttpDispatcher
from .execute import StepExecutor
from .monitoring import RunMonitor, SystemMetrics, WorkflowMetrics
from .notify import LoggingNotifier, Notifier, WebhookNotifier
from .persistence import InMemoryRunStore, RunFilter, RunStore, get_run_store
from .registry import WorkflowRegistry
from .retry import RetryManager, Sleep
from .scheduler import RunScheduler
from .transports import get_transport
from .triggers import TriggerManager
from .triggers.watchers import Clock

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Entry point for embedding flowgate in an application.

    Example::

        dispatcher = LocalDispatcher()
        async with WorkflowEngine(dispatcher) as engine:
            engine.register(definition)
            run_id = await engine.start_run("grid-outage")
            run = await engine.wait(run_id)
    """

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        store: Optional[RunStore] = None,
        registry: Optional[WorkflowRegistry] = None,
        notifier: Optional[Notifier] = None,
        bus: Optional[EventBus] = None,
        config: Optional[FlowgateConfig] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or FlowgateConfig()
        engine_conf = self.config.engine
        self.dispatcher = dispatcher
        self.store = store or InMemoryRunStore()
        self.registry = registry or WorkflowRegistry()
        self.notifier = notifier or LoggingNotifier()
        self.bus = bus
        self.approvals = ApprovalBroker(engine_conf.approval_timeout_seconds)
        self.retry_manager = RetryManager(
            notifier=self.notifier,
            park_threshold_ms=engine_conf.retry_park_threshold_ms,
            default_recipients=self.config.notification.default_recipients,
            default_channels=self.config.notification.default_channels,
            sleep=sleep,
        )
        self.executor = StepExecutor(
            dispatcher,
            self.store,
            retry_manager=self.retry_manager,
            approvals=self.approvals,
            strict=engine_conf.strict_conditions,
        )
        self.scheduler = RunScheduler(
            self.executor,
            self.store,
            approvals=self.approvals,
            max_workers=engine_conf.max_workers,
            slack_factor=engine_conf.slack_factor,
            default_timeout_seconds=engine_conf.default_run_timeout_seconds,
        )
        self.monitor = RunMonitor(self.store)
        self.triggers: Optional[TriggerManager] = None
        if bus is not None:
            self.triggers = TriggerManager(
                bus,
                self.scheduler.start_run,
                self.config.triggers,
                is_active=self.scheduler.is_active,
                clock=clock,
                sleep=sleep,
            )
        self._approval_task: Optional[asyncio.Task] = None
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: Optional[FlowgateConfig] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        notifier: Optional[Notifier] = None,
    ) -> "WorkflowEngine":
        """Build an engine from configuration.

        Without an explicit ``dispatcher`` an :class:`HttpDispatcher` is
        created from ``dispatcher.base_url``.
        """
        config = config or load_config()
        if dispatcher is None:
            if not config.dispatcher.base_url:
                raise ValueError(
                    "dispatcher.base_url must be configured when no dispatcher is given"
                )
            dispatcher = HttpDispatcher(
                config.dispatcher.base_url, timeout=config.dispatcher.timeout_seconds
            )
        if notifier is None and config.notification.webhooks:
            notifier = WebhookNotifier(config.notification.webhooks)
        return cls(
            dispatcher,
            store=get_run_store(config.database_url, config),
            notifier=notifier,
            bus=EventBus(get_transport(config=config)),
            config=config,
        )

    # ------------------------------------------------------------------
    # Definitions
    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Register a definition; triggers follow the latest version."""
        definition = self.registry.register(definition)
        if self.registry.get(definition.use_case_id) is definition:
            self._follow_latest(definition.use_case_id)
        return definition

    def rollback(
        self,
        use_case_id: str,
        version: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Restore an earlier version; triggers start runs of it from now on."""
        restored = self.registry.rollback(use_case_id, version, reason, performed_by)
        self._follow_latest(use_case_id)
        return restored

    def _follow_latest(self, use_case_id: str) -> None:
        if self.triggers is None:
            return
        self.triggers.unregister(use_case_id)
        self.triggers.register(self.registry.get(use_case_id))

    def load_path(self, path: Union[str, Path]) -> List[WorkflowDefinition]:
        loaded = self.registry.load_path(path)
        for use_case_id in sorted({d.use_case_id for d in loaded}):
            self._follow_latest(use_case_id)
        return loaded

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self, lifespan: Optional[float] = None) -> None:
        if self._started:
            return
        self._started = True
        if self.bus is not None:
            await self.bus.transport.connect()
        self.scheduler.start()
        if self.config.engine.resume_on_start:
            await self.scheduler.recover()
        if self.bus is not None and self.triggers is not None:
            self.triggers.start(lifespan)
            self._approval_task = asyncio.create_task(
                self.approvals.listen(self.bus, lifespan), name="flowgate-approvals"
            )
        logger.info("Workflow engine started")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self.triggers is not None:
            await self.triggers.stop()
        if self._approval_task is not None:
            self._approval_task.cancel()
            await asyncio.gather(self._approval_task, return_exceptions=True)
            self._approval_task = None
        await self.scheduler.stop()
        if self.bus is not None:
            await self.bus.transport.disconnect()
        for resource in (self.dispatcher, self.notifier):
            aclose = getattr(resource, "aclose", None)
            if aclose is not None:
                await aclose()
        logger.info("Workflow engine stopped")

    async def serve(self, lifespan: Optional[float] = None) -> None:
        """Run until cancelled, or for ``lifespan`` seconds."""
        await self.start(lifespan)
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await self.stop()

    async def __aenter__(self) -> "WorkflowEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Runs
    async def start_run(
        self,
        workflow: Union[str, WorkflowDefinition],
        payload: Optional[Dict[str, Any]] = None,
        version: Optional[str] = None,
    ) -> str:
        """Start a manual run of a registered use case (or of ``workflow`` itself)."""
        if isinstance(workflow, WorkflowDefinition):
            definition = self.register(workflow)
        else:
            definition = self.registry.get(workflow, version)
        trigger = TriggerFire(kind="manual", payload=dict(payload or {}))
        return await self.scheduler.start_run(definition, trigger)

    async def resume(self, run_id: str) -> WorkflowRun:
        return await self.scheduler.resume(run_id)

    async def cancel(self, run_id: str) -> bool:
        return await self.scheduler.cancel(run_id)

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> WorkflowRun:
        return await self.scheduler.wait(run_id, timeout)

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        return await self.store.get_run(run_id)

    async def list_runs(
        self, run_filter: Optional[RunFilter] = None
    ) -> List[WorkflowRun]:
        return await self.store.list_runs(run_filter)

    async def active_runs(self, use_case_id: Optional[str] = None) -> List[WorkflowRun]:
        return await self.monitor.active_runs(use_case_id)

    async def workflow_metrics(self, use_case_id: str) -> WorkflowMetrics:
        return await self.monitor.workflow(use_case_id)

    async def system_metrics(self) -> SystemMetrics:
        return await self.monitor.system()

    def approve(self, run_id: str, step_id: str, approver_id: str) -> ApprovalDecision:
        return self.approvals.approve(run_id, step_id, approver_id)

    def reject(
        self, run_id: str, step_id: str, approver_id: str, reason: Optional[str] = None
    ) -> ApprovalDecision:
        return self.approvals.reject(run_id, step_id, approver_id, reason)

    async def publish_event(
        self, name: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        if self.bus is None:
            raise RuntimeError("Engine has no event bus")
        await self.bus.publish_event(name, payload)

    async def publish_sample(self, metric: str, value: float) -> None:
        if self.bus is None:
            raise RuntimeError("Engine has no event bus")
        await self.bus.publish_sample(metric, value)


__all__ = ["WorkflowEngine"]
