"""Step-level diff between two versions of a workflow definition."""

from __future__ import annotations

from typing import Any, Dict, List

from ..contracts import Step, WorkflowDefinition
from .models import ChangeType, VersionComparison, WorkflowChange

_STEP_FIELDS = ("name", "type", "agent", "service", "action", "humanApprovalRequired")
_STEP_DOCUMENT_FIELDS = ("parameters", "conditions", "outputs", "errorHandling")
_METADATA_FIELDS = ("requiredServices", "requiredAgents", "criticality", "tags", "compliance")
_BREAKING_METADATA = ("metadata.requiredServices", "metadata.requiredAgents")


def _dump(model: Any) -> Any:
    return model.model_dump(mode="json", by_alias=True)


def _modified(path: str, old: Any, new: Any) -> WorkflowChange:
    return WorkflowChange(type=ChangeType.MODIFIED, path=path, old_value=old, new_value=new)


def _step_changes(old: Step, new: Step) -> List[WorkflowChange]:
    before, after = _dump(old), _dump(new)
    changes: List[WorkflowChange] = []
    for field in _STEP_FIELDS + _STEP_DOCUMENT_FIELDS:
        if before.get(field) != after.get(field):
            changes.append(
                _modified(f"steps.{old.id}.{field}", before.get(field), after.get(field))
            )
    return changes


def diff_definitions(
    old: WorkflowDefinition, new: WorkflowDefinition
) -> List[WorkflowChange]:
    """Changes that turn ``old`` into ``new``, in definition order."""
    changes: List[WorkflowChange] = []
    for field in ("name", "description", "industry"):
        before, after = getattr(old, field), getattr(new, field)
        if before != after:
            changes.append(_modified(field, before, after))

    old_steps: Dict[str, Step] = {step.id: step for step in old.steps}
    new_steps: Dict[str, Step] = {step.id: step for step in new.steps}
    for step in new.steps:
        if step.id not in old_steps:
            changes.append(
                WorkflowChange(
                    type=ChangeType.ADDED,
                    path=f"steps.{step.id}",
                    new_value=_dump(step),
                    description=f"Added step {step.name or step.id}",
                )
            )
    for step in old.steps:
        if step.id not in new_steps:
            changes.append(
                WorkflowChange(
                    type=ChangeType.REMOVED,
                    path=f"steps.{step.id}",
                    old_value=_dump(step),
                    description=f"Removed step {step.name or step.id}",
                )
            )
        else:
            changes.extend(_step_changes(step, new_steps[step.id]))

    kept = [step.id for step in old.steps if step.id in new_steps]
    reordered = [step.id for step in new.steps if step.id in old_steps]
    if kept != reordered:
        changes.append(
            WorkflowChange(
                type=ChangeType.MODIFIED,
                path="steps",
                old_value=kept,
                new_value=reordered,
                description="Step order changed",
            )
        )

    old_triggers = [_dump(t) for t in old.triggers]
    new_triggers = [_dump(t) for t in new.triggers]
    if old_triggers != new_triggers:
        changes.append(
            WorkflowChange(
                type=ChangeType.MODIFIED,
                path="triggers",
                old_value=old_triggers,
                new_value=new_triggers,
                description="Workflow triggers modified",
            )
        )

    old_meta, new_meta = _dump(old.metadata), _dump(new.metadata)
    for field in _METADATA_FIELDS:
        if old_meta.get(field) != new_meta.get(field):
            changes.append(
                _modified(f"metadata.{field}", old_meta.get(field), new_meta.get(field))
            )
    return changes


def is_breaking(change: WorkflowChange) -> bool:
    """Removed steps, changed step types and changed service/agent needs break callers."""
    if change.type is ChangeType.REMOVED and change.path.startswith("steps."):
        return True
    if change.type is ChangeType.MODIFIED and change.path.endswith(".type"):
        return True
    return change.path in _BREAKING_METADATA


def compare_definitions(
    old: WorkflowDefinition, new: WorkflowDefinition
) -> VersionComparison:
    changes = diff_definitions(old, new)
    breaking = any(is_breaking(change) for change in changes)
    if breaking:
        compatibility = "incompatible"
    elif any(change.type is ChangeType.MODIFIED for change in changes):
        compatibility = "warning"
    else:
        compatibility = "compatible"
    return VersionComparison(
        use_case_id=new.use_case_id,
        from_version=old.version,
        to_version=new.version,
        changes=changes,
        breaking=breaking,
        compatibility=compatibility,
    )


__all__ = ["compare_definitions", "diff_definitions", "is_breaking"]
