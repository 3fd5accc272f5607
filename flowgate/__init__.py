"""Flowgate: durable, human-gated workflow orchestration for agents and services."""

from .approvals import ApprovalBroker, ApprovalDecision
from .bus import EventBus
from .contracts import (
    Condition,
    RunStatus,
    Step,
    StepExecutionRecord,
    StepStatus,
    TriggerFire,
    WorkflowDefinition,
    WorkflowRun,
)
from .dispatch import HttpDispatcher, LocalDispatcher
from .engine import WorkflowEngine
from .errors import ErrorKind, FlowgateError
from .monitoring import RunMonitor, SystemMetrics, WorkflowMetrics
from .persistence import get_run_store
from .registry import WorkflowRegistry
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ApprovalBroker",
    "ApprovalDecision",
    "Condition",
    "ErrorKind",
    "EventBus",
    "FlowgateError",
    "HttpDispatcher",
    "LocalDispatcher",
    "RunMonitor",
    "RunStatus",
    "Step",
    "StepExecutionRecord",
    "StepStatus",
    "SystemMetrics",
    "TriggerFire",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowMetrics",
    "WorkflowRegistry",
    "WorkflowRun",
    "get_run_store",
    "get_transport",
]
