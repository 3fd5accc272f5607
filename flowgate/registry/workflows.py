"""Versioned registry of workflow definitions."""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from ..cli_utils.fs import _iter_definition_files
from ..contracts import WorkflowDefinition
from ..errors import DefinitionValidationError
from .models import (
    RegisteredWorkflow,
    RegistrySnapshot,
    RegistryStatistics,
    SemanticVersion,
    VersionComparison,
    VersionHistoryEntry,
)
from .validation import validate_definition
from .versioning import compare_definitions

logger = logging.getLogger(__name__)


def _content(definition: WorkflowDefinition, *, ignore_version: bool = False) -> Dict[str, Any]:
    exclude = {"id", "version"} if ignore_version else {"id"}
    return definition.model_dump(mode="json", exclude=exclude)


def _pydantic_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    ]


def _documents(data: Any) -> List[Any]:
    """Definitions in a loaded file: one object, a list, or ``{workflows: [...]}``."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("workflows"), list):
        return data["workflows"]
    return [data]


class WorkflowRegistry:
    """Holds validated, immutable definitions keyed by ``(use_case_id, version)``."""

    def __init__(self) -> None:
        self._entries: Dict[str, Dict[str, RegisteredWorkflow]] = {}
        self._history: Dict[str, List[VersionHistoryEntry]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, use_case_id: object) -> bool:
        return use_case_id in self._entries

    # ------------------------------------------------------------------
    # Registration
    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store ``definition``.

        Registering identical content again returns the stored definition;
        different content under an existing version is rejected.
        """
        errors = validate_definition(definition)
        if errors:
            raise DefinitionValidationError(errors, workflow=definition.use_case_id)

        versions = self._entries.setdefault(definition.use_case_id, {})
        existing = versions.get(definition.version)
        if existing is not None:
            if _content(existing.definition) == _content(definition):
                return existing.definition
            raise DefinitionValidationError(
                [
                    f"version {definition.version} is already registered "
                    "with different content"
                ],
                workflow=definition.use_case_id,
            )
        self._store(definition, "updated" if versions else "created")
        return definition

    def _store(self, definition: WorkflowDefinition, change: str, **details: Any) -> None:
        entry = RegisteredWorkflow(
            definition=definition, version=SemanticVersion.parse(definition.version)
        )
        self._entries.setdefault(definition.use_case_id, {})[definition.version] = entry
        self._history.setdefault(definition.use_case_id, []).append(
            VersionHistoryEntry(
                version=definition.version,
                change=change,
                registered_at=entry.registered_at,
                **details,
            )
        )
        logger.info(f"Registered workflow {definition.use_case_id} v{definition.version}")

    def register_dict(self, data: Dict[str, Any]) -> WorkflowDefinition:
        try:
            definition = WorkflowDefinition.model_validate(data)
        except ValidationError as exc:
            name = None
            if isinstance(data, dict):
                name = data.get("useCaseId") or data.get("use_case_id")
            raise DefinitionValidationError(_pydantic_errors(exc), workflow=name) from exc
        return self.register(definition)

    def load_path(self, path: str | Path) -> List[WorkflowDefinition]:
        """Register every JSON/YAML definition under ``path``.

        All files are checked before raising, so the error lists every
        problem found.
        """
        loaded: List[WorkflowDefinition] = []
        problems: List[str] = []
        for file in _iter_definition_files(Path(path)):
            try:
                text = file.read_text(encoding="utf-8")
                data = json.loads(text) if file.suffix == ".json" else yaml.safe_load(text)
            except (OSError, ValueError, yaml.YAMLError) as exc:
                problems.append(f"{file}: {exc}")
                continue
            for doc in _documents(data):
                try:
                    loaded.append(self.register_dict(doc))
                except DefinitionValidationError as exc:
                    problems.extend(f"{file}: {err}" for err in exc.errors)
        if problems:
            raise DefinitionValidationError(problems)
        return loaded

    def import_json(self, text: str) -> List[WorkflowDefinition]:
        return [self.register_dict(doc) for doc in _documents(json.loads(text))]

    def export_json(self, indent: Optional[int] = 2) -> str:
        snapshot = RegistrySnapshot(workflows=list(self._all()))
        return snapshot.model_dump_json(by_alias=True, indent=indent)

    # ------------------------------------------------------------------
    # Queries
    def _all(self) -> Iterable[WorkflowDefinition]:
        for versions in self._entries.values():
            for entry in sorted(versions.values(), key=lambda e: e.version.key):
                yield entry.definition

    def get(self, use_case_id: str, version: Optional[str] = None) -> WorkflowDefinition:
        """Return a definition; the highest semantic version by default."""
        versions = self._entries.get(use_case_id)
        if not versions:
            raise KeyError(f"Unknown workflow {use_case_id!r}")
        if version is None:
            return max(versions.values(), key=lambda e: e.version.key).definition
        try:
            return versions[version].definition
        except KeyError:
            raise KeyError(f"Workflow {use_case_id!r} has no version {version}") from None

    def versions(self, use_case_id: str) -> List[str]:
        entries = self._entries.get(use_case_id, {})
        ordered = sorted(entries.values(), key=lambda e: e.version.key)
        return [str(e.version) for e in ordered]

    def compare(
        self, use_case_id: str, from_version: str, to_version: str
    ) -> VersionComparison:
        """Step-level differences between two registered versions."""
        return compare_definitions(
            self.get(use_case_id, from_version), self.get(use_case_id, to_version)
        )

    def rollback(
        self,
        use_case_id: str,
        version: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Make the content of ``version`` the active definition again.

        The content is re-registered under the next patch version after the
        current latest. Rolling back to content that is already active
        changes nothing.
        """
        target = self.get(use_case_id, version)
        current = self.get(use_case_id)
        if _content(target, ignore_version=True) == _content(current, ignore_version=True):
            logger.info(f"Workflow {use_case_id} already runs the content of v{version}")
            return current
        next_version = str(SemanticVersion.parse(current.version).next_patch())
        restored = target.model_copy(
            update={"version": next_version, "id": str(uuid.uuid4())}
        )
        self._store(
            restored,
            "rollback",
            rolled_back_to=version,
            description=f"Rollback to version {version}"
            + (f": {reason}" if reason else ""),
            performed_by=performed_by,
        )
        logger.warning(
            f"Rolled back workflow {use_case_id} to the content of v{version} "
            f"as v{next_version}"
        )
        return restored

    def version_history(self, use_case_id: str) -> List[VersionHistoryEntry]:
        """Registration history, newest first, with the active version flagged."""
        entries = self._history.get(use_case_id)
        if not entries:
            raise KeyError(f"Unknown workflow {use_case_id!r}")
        active = self.get(use_case_id).version
        return [
            entry.model_copy(update={"active": entry.version == active})
            for entry in reversed(entries)
        ]

    def latest(self) -> List[WorkflowDefinition]:
        return [self.get(use_case_id) for use_case_id in sorted(self._entries)]

    def search(
        self,
        industry: Optional[str] = None,
        criticality: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        compliance: Optional[Iterable[str]] = None,
    ) -> List[WorkflowDefinition]:
        """Latest definitions matching every given filter.

        ``tags`` and ``compliance`` match when the workflow carries any of them.
        """
        tag_set = set(tags or [])
        compliance_set = set(compliance or [])
        results = []
        for definition in self.latest():
            meta = definition.metadata
            if industry and (definition.industry or "").lower() != industry.lower():
                continue
            if criticality and meta.criticality != criticality:
                continue
            if tag_set and not tag_set.intersection(meta.tags):
                continue
            if compliance_set and not compliance_set.intersection(meta.compliance):
                continue
            results.append(definition)
        return results

    def statistics(self) -> RegistryStatistics:
        latest = self.latest()
        total_steps = sum(len(d.steps) for d in latest)
        return RegistryStatistics(
            total_workflows=len(latest),
            total_versions=sum(len(v) for v in self._entries.values()),
            by_industry=dict(Counter(d.industry or "unspecified" for d in latest)),
            by_criticality=dict(Counter(d.metadata.criticality for d in latest)),
            total_steps=total_steps,
            approval_steps=sum(
                1 for d in latest for s in d.steps if s.human_approval_required
            ),
            average_steps=total_steps / len(latest) if latest else 0.0,
            trigger_kinds=dict(Counter(t.kind for d in latest for t in d.triggers)),
        )


__all__ = ["WorkflowRegistry"]
