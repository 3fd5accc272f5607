"""Definition-time checks for workflow definitions."""

from __future__ import annotations

from typing import Dict, List

from ..conditions import _as_number
from ..contracts import (
    Condition,
    Operator,
    ScheduledTrigger,
    ThresholdTrigger,
    WorkflowDefinition,
)
from ..triggers.cron import CronExpression
from .models import SemanticVersion


def _condition_errors(step_id: str, conditions: List[Condition]) -> List[str]:
    errors: List[str] = []
    for cond in conditions:
        where = f"step {step_id!r} condition on {cond.field!r}"
        if cond.operator.is_ordering and _as_number(cond.value) is None:
            errors.append(
                f"{where}: operator {cond.operator.value!r} needs a numeric value, "
                f"got {cond.value!r}"
            )
        elif cond.operator is Operator.IN and not isinstance(cond.value, (list, tuple)):
            errors.append(f"{where}: operator 'in' needs a list value, got {cond.value!r}")
    return errors


def validate_definition(definition: WorkflowDefinition) -> List[str]:
    """Return every problem found in ``definition``; an empty list means valid."""

    errors: List[str] = []
    try:
        SemanticVersion.parse(definition.version)
    except ValueError:
        errors.append(f"version {definition.version!r} is not major.minor.patch")

    if not definition.steps:
        errors.append("workflow must declare at least one step")

    seen_ids: set[str] = set()
    producers: Dict[str, str] = {}
    for step in definition.steps:
        if step.id in seen_ids:
            errors.append(f"duplicate step id {step.id!r}")
        seen_ids.add(step.id)

        for output in step.outputs:
            owner = producers.get(output)
            if owner is not None:
                errors.append(
                    f"output {output!r} of step {step.id!r} is already produced "
                    f"by step {owner!r}"
                )
            else:
                producers[output] = step.id

        policy = step.notification
        if policy is not None and (not policy.recipients or not policy.channels):
            errors.append(
                f"step {step.id!r} notification needs at least one recipient and channel"
            )

        errors.extend(_condition_errors(step.id, step.conditions))

    for trigger in definition.triggers:
        if isinstance(trigger, ScheduledTrigger):
            errors.extend(
                f"trigger schedule: {problem}"
                for problem in CronExpression.validate(trigger.cron_expr)
            )
        elif isinstance(trigger, ThresholdTrigger):
            if not (trigger.operator.is_ordering or trigger.operator.value in ("==", "!=")):
                errors.append(
                    f"threshold on {trigger.metric!r} uses non-numeric operator "
                    f"{trigger.operator.value!r}"
                )

    return errors
