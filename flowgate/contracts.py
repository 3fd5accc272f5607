"""Core data contracts for flowgate workflows and runs."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import ErrorKind, InvalidTransitionError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DefinitionModel(BaseModel):
    """Base for definition models: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


class StepType(str, Enum):
    DETECT = "detect"
    ANALYZE = "analyze"
    DECIDE = "decide"
    EXECUTE = "execute"
    VERIFY = "verify"
    REPORT = "report"


class Operator(str, Enum):
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "=="
    NE = "!="
    EXISTS = "exists"
    CONTAINS = "contains"
    IN = "in"

    @classmethod
    def parse(cls, value: Any) -> "Operator":
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        if text == "=":
            text = "=="
        return cls(text)

    @property
    def is_ordering(self) -> bool:
        return self in (Operator.GT, Operator.LT, Operator.GE, Operator.LE)


class Condition(DefinitionModel):
    """Typed predicate ``field operator value`` over the run context."""

    field: str = Field(min_length=1)
    operator: Operator
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def _normalise_operator(cls, v: Any) -> Operator:
        return Operator.parse(v)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.field} {self.operator.value} {self.value!r}"


class RetryPolicy(DefinitionModel):
    attempts: int = Field(default=0, ge=0)
    delay_ms: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("delayMs", "delay_ms", "delay"),
        serialization_alias="delayMs",
    )


class NotificationPolicy(DefinitionModel):
    recipients: List[str] = Field(default_factory=list)
    channels: List[str] = Field(default_factory=list)


class ErrorHandling(DefinitionModel):
    retry: Optional[RetryPolicy] = None
    notification: Optional[NotificationPolicy] = None
    escalate: bool = False


class Step(DefinitionModel):
    """One unit of work within a workflow definition."""

    id: str = Field(min_length=1)
    name: str = ""
    type: StepType
    agent: str
    service: str
    action: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    outputs: List[str] = Field(default_factory=list)
    conditions: List[Condition] = Field(default_factory=list)
    human_approval_required: bool = False
    error_handling: Optional[ErrorHandling] = None

    @property
    def retry(self) -> Optional[RetryPolicy]:
        return self.error_handling.retry if self.error_handling else None

    @property
    def notification(self) -> Optional[NotificationPolicy]:
        return self.error_handling.notification if self.error_handling else None

    @property
    def max_attempts(self) -> int:
        """Total attempts allowed: the first try plus configured retries."""
        return 1 + (self.retry.attempts if self.retry else 0)


class EventTrigger(DefinitionModel):
    kind: Literal["event"] = "event"
    event_name: str = Field(min_length=1)


class ScheduledTrigger(DefinitionModel):
    kind: Literal["scheduled"] = "scheduled"
    cron_expr: str = Field(min_length=1)


class ThresholdTrigger(DefinitionModel):
    kind: Literal["threshold"] = "threshold"
    metric: str = Field(min_length=1)
    operator: Operator
    value: float

    @field_validator("operator", mode="before")
    @classmethod
    def _normalise_operator(cls, v: Any) -> Operator:
        return Operator.parse(v)


Trigger = Annotated[
    Union[EventTrigger, ScheduledTrigger, ThresholdTrigger],
    Field(discriminator="kind"),
]


def _normalise_trigger(raw: Any) -> Any:
    """Accept the ``{type: ..., event|schedule|threshold: ...}`` trigger shape."""
    if not isinstance(raw, dict) or "kind" in raw:
        return raw
    data = dict(raw)
    kind = data.pop("type", None)
    if kind == "event":
        data.setdefault("event_name", data.pop("event", None) or data.pop("eventName", None))
    elif kind == "scheduled":
        data.setdefault(
            "cron_expr",
            data.pop("schedule", None) or data.pop("cron", None) or data.pop("cronExpr", None),
        )
    elif kind == "threshold":
        nested = data.pop("threshold", None) or {}
        data = {**nested, **data}
    data["kind"] = kind
    return data


class WorkflowMetadata(DefinitionModel):
    required_services: List[str] = Field(default_factory=list)
    required_agents: List[str] = Field(default_factory=list)
    estimated_duration: Optional[int] = Field(
        default=None, ge=0, description="Expected run duration in milliseconds"
    )
    criticality: Literal["low", "medium", "high", "critical"] = "medium"
    tags: List[str] = Field(default_factory=list)
    compliance: List[str] = Field(default_factory=list)


class WorkflowDefinition(DefinitionModel):
    """Immutable, versioned workflow template."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    use_case_id: str = Field(min_length=1)
    name: str = ""
    description: Optional[str] = None
    industry: Optional[str] = None
    version: str = "1.0.0"
    steps: List[Step] = Field(default_factory=list)
    triggers: List[Trigger] = Field(default_factory=list)
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)

    @field_validator("triggers", mode="before")
    @classmethod
    def _normalise_triggers(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [_normalise_trigger(t) for t in v]
        return v

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def run_budget(
        self, slack_factor: float, default_seconds: Optional[float] = None
    ) -> Optional[float]:
        """Wall-clock budget for one run in seconds, or ``None`` when unbounded."""
        if self.metadata.estimated_duration:
            return self.metadata.estimated_duration / 1000.0 * slack_factor
        return default_seconds

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowDefinition":
        return cls.model_validate_json(data)


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED}
)

RUN_TRANSITIONS: Dict[RunStatus, frozenset] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.ABORTED}),
    RunStatus.RUNNING: frozenset(
        {
            RunStatus.WAITING_APPROVAL,
            RunStatus.SUCCEEDED,
            RunStatus.FAILED,
            RunStatus.ABORTED,
        }
    ),
    RunStatus.WAITING_APPROVAL: frozenset(
        {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.ABORTED}
    ),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.ABORTED: frozenset(),
}


class StepStatus(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    GATED = "gated"
    DISPATCHING = "dispatching"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


STEP_TRANSITIONS: Dict[StepStatus, frozenset] = {
    StepStatus.PENDING: frozenset(
        {StepStatus.SKIPPED, StepStatus.GATED, StepStatus.DISPATCHING, StepStatus.FAILED}
    ),
    StepStatus.GATED: frozenset({StepStatus.DISPATCHING, StepStatus.FAILED}),
    StepStatus.DISPATCHING: frozenset(
        {StepStatus.SUCCEEDED, StepStatus.RETRYING, StepStatus.FAILED}
    ),
    StepStatus.RETRYING: frozenset(),
    StepStatus.SKIPPED: frozenset(),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.FAILED: frozenset(),
}


class RunError(BaseModel):
    kind: ErrorKind
    message: str
    step_id: Optional[str] = None


class TriggerFire(BaseModel):
    """What started a run."""

    kind: Literal["manual", "event", "scheduled", "threshold"] = "manual"
    name: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    fired_at: datetime = Field(default_factory=utcnow)


class StepExecutionRecord(BaseModel):
    """One attempt of one step. Records are appended, never removed."""

    step_id: str
    attempt: int = 1
    status: StepStatus = StepStatus.PENDING
    transitions: List[StepStatus] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_deadline: Optional[datetime] = None
    retry_at: Optional[datetime] = None
    outputs: Optional[Dict[str, Any]] = None

    def transition(self, status: StepStatus) -> None:
        if status not in STEP_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Step {self.step_id} attempt {self.attempt}: "
                f"{self.status.value} -> {status.value} is not allowed"
            )
        self.status = status
        self.transitions.append(status)
        if status in (
            StepStatus.SKIPPED,
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.RETRYING,
        ):
            self.ended_at = utcnow()

    def fail(self, error: Exception, kind: Optional[ErrorKind] = None) -> None:
        self.error = str(error)
        self.error_kind = kind or getattr(error, "kind", ErrorKind.DISPATCH)
        self.transition(StepStatus.FAILED)


class WorkflowRun(BaseModel):
    """Mutable state of one executing workflow instance."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    use_case_id: str
    workflow_version: str
    status: RunStatus = RunStatus.PENDING
    context: Dict[str, Any] = Field(default_factory=dict)
    current_step_index: int = 0
    trigger: TriggerFire = Field(default_factory=TriggerFire)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    error: Optional[RunError] = None
    archived: bool = False
    history: List[StepExecutionRecord] = Field(default_factory=list)

    @classmethod
    def for_definition(
        cls, definition: WorkflowDefinition, trigger: Optional[TriggerFire] = None
    ) -> "WorkflowRun":
        return cls(
            workflow_id=definition.id,
            use_case_id=definition.use_case_id,
            workflow_version=definition.version,
            trigger=trigger or TriggerFire(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: RunStatus) -> None:
        if status == self.status:
            return
        if status not in RUN_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Run {self.run_id}: {self.status.value} -> {status.value} is not allowed"
            )
        logger.info(f"Run {self.run_id}: {self.status.value} -> {status.value}")
        self.status = status

    def start(self, budget_seconds: Optional[float] = None) -> None:
        self.transition(RunStatus.RUNNING)
        self.started_at = utcnow()
        if budget_seconds is not None:
            self.deadline_at = self.started_at + timedelta(seconds=budget_seconds)

    def finish(self, status: RunStatus, error: Optional[RunError] = None) -> None:
        self.transition(status)
        self.error = error
        self.completed_at = utcnow()

    def advance(self) -> None:
        self.current_step_index += 1

    def records_for(self, step_id: str) -> List[StepExecutionRecord]:
        return [r for r in self.history if r.step_id == step_id]

    def latest_record(self, step_id: str) -> Optional[StepExecutionRecord]:
        records = self.records_for(step_id)
        return records[-1] if records else None

    def append_record(self, record: StepExecutionRecord) -> StepExecutionRecord:
        self.history.append(record)
        return record

    def merge_outputs(self, outputs: Dict[str, Any]) -> None:
        """Merge step outputs; keys already bound to a different value are rejected."""
        for key, value in outputs.items():
            if key in self.context and self.context[key] != value:
                raise InvalidTransitionError(
                    f"Run {self.run_id}: context key {key!r} is already bound"
                )
        for key, value in outputs.items():
            self.context.setdefault(key, value)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowRun":
        return cls.model_validate_json(data)


class BusMessage(BaseModel):
    """Envelope exchanged over the event bus: events, metric samples, approvals."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Literal["event", "metric", "approval"] = "event"
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    value: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "BusMessage":
        return cls.model_validate_json(data)
