"""Formatting helpers for workflow definitions and runs."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from ..contracts import StepExecutionRecord, WorkflowDefinition, WorkflowRun


def _format_path(path: Path, search_path: Path) -> str:
    resolved_path = path.resolve()
    candidate_bases = []
    if search_path.is_dir():
        candidate_bases.append(search_path.resolve())
    else:
        candidate_bases.append(search_path.parent.resolve())
    candidate_bases.append(Path.cwd())

    for base in candidate_bases:
        try:
            rel = resolved_path.relative_to(base)
            return f"./{rel}"
        except ValueError:
            continue
    return str(path)


def _unique_preserve_order(values: Iterable[Optional[str]]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def _timestamp(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def workflow_agent_names(definition: WorkflowDefinition) -> list[str]:
    """Return unique agent names referenced in ``definition`` preserving order."""

    return _unique_preserve_order(step.agent for step in definition.steps)


def workflow_trigger_labels(definition: WorkflowDefinition) -> list[str]:
    labels = []
    for trigger in definition.triggers:
        if trigger.kind == "event":
            labels.append(f"event:{trigger.event_name}")
        elif trigger.kind == "scheduled":
            labels.append(f"cron:{trigger.cron_expr}")
        else:
            labels.append(
                f"threshold:{trigger.metric} {trigger.operator.value} {trigger.value}"
            )
    return labels


def describe_definition(definition: WorkflowDefinition) -> list[str]:
    lines = [
        f"{definition.use_case_id} v{definition.version} - "
        f"{definition.name or 'unnamed'} ({len(definition.steps)} steps, "
        f"{definition.metadata.criticality})"
    ]
    triggers = workflow_trigger_labels(definition) or ["(manual only)"]
    lines.append(f"  Triggers: {', '.join(triggers)}")
    lines.append(f"  Agents: {', '.join(workflow_agent_names(definition))}")
    return lines


def format_record(record: StepExecutionRecord) -> str:
    line = (
        f"- {record.step_id} #{record.attempt}: {record.status.value}"
        f" ({_timestamp(record.started_at)} -> {_timestamp(record.ended_at)})"
    )
    if record.approved_by:
        line += f" approved by {record.approved_by}"
    if record.error:
        line += f" error: {record.error}"
    return line


def describe_run(run: WorkflowRun) -> list[str]:
    lines = [
        f"Run {run.run_id}: {run.status.value}",
        f"Workflow: {run.use_case_id} v{run.workflow_version}",
        f"Trigger: {run.trigger.kind}"
        + (f" ({run.trigger.name})" if run.trigger.name else ""),
        f"Step index: {run.current_step_index}",
    ]
    if run.error:
        lines.append(f"Error [{run.error.kind.value}]: {run.error.message}")
    if run.context:
        lines.append(f"Context: {run.context}")
    lines.extend(format_record(r) for r in run.history)
    return lines
