"""Workflow definition registry."""

from __future__ import annotations

from .models import (
    ChangeType,
    RegisteredWorkflow,
    RegistrySnapshot,
    RegistryStatistics,
    SemanticVersion,
    VersionComparison,
    VersionHistoryEntry,
    WorkflowChange,
)
from .validation import validate_definition
from .versioning import compare_definitions
from .workflows import WorkflowRegistry

__all__ = [
    "ChangeType",
    "SemanticVersion",
    "RegisteredWorkflow",
    "RegistrySnapshot",
    "RegistryStatistics",
    "VersionComparison",
    "VersionHistoryEntry",
    "WorkflowChange",
    "WorkflowRegistry",
    "compare_definitions",
    "validate_definition",
]
