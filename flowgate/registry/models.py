"""Pydantic models describing registry entries."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import WorkflowDefinition, utcnow


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a dotted semantic version string."""
        parts = value.split(".")
        if len(parts) != 3:
            raise ValueError("Semantic version must have three components")
        major, minor, patch = (int(p) for p in parts)
        return cls(major=major, minor=minor, patch=patch)

    @property
    def key(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: "SemanticVersion") -> bool:
        return self.key < other.key

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.major}.{self.minor}.{self.patch}"

    def next_patch(self) -> "SemanticVersion":
        return SemanticVersion(major=self.major, minor=self.minor, patch=self.patch + 1)


class RegisteredWorkflow(BaseModel):
    """A definition as stored in the registry."""

    definition: WorkflowDefinition
    version: SemanticVersion
    registered_at: datetime = Field(default_factory=utcnow)


class RegistryStatistics(BaseModel):
    """Aggregate view over the latest version of every registered workflow."""

    total_workflows: int = 0
    total_versions: int = 0
    by_industry: Dict[str, int] = Field(default_factory=dict)
    by_criticality: Dict[str, int] = Field(default_factory=dict)
    total_steps: int = 0
    approval_steps: int = 0
    average_steps: float = 0.0
    trigger_kinds: Dict[str, int] = Field(default_factory=dict)


class RegistrySnapshot(BaseModel):
    """Export document for the registry."""

    workflows: List[WorkflowDefinition] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)
    schema_version: str = "1"


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class WorkflowChange(BaseModel):
    """One difference between two versions, addressed by a dotted path."""

    type: ChangeType
    path: str
    old_value: Any = None
    new_value: Any = None
    description: Optional[str] = None


class VersionComparison(BaseModel):
    """Differences from ``from_version`` to ``to_version`` of one use case.

    A comparison is ``incompatible`` when it contains a breaking change,
    ``warning`` when something was modified and ``compatible`` otherwise.
    """

    use_case_id: str
    from_version: str
    to_version: str
    changes: List[WorkflowChange] = Field(default_factory=list)
    breaking: bool = False
    compatibility: Literal["compatible", "warning", "incompatible"] = "compatible"


class VersionHistoryEntry(BaseModel):
    """How and when a version came to be registered."""

    version: str
    change: Literal["created", "updated", "rollback"]
    registered_at: datetime = Field(default_factory=utcnow)
    description: Optional[str] = None
    performed_by: Optional[str] = None
    rolled_back_to: Optional[str] = None
    active: bool = False
