"""Tests for the workflow definition registry."""

import json

import pytest

from flowgate.errors import DefinitionValidationError
from flowgate.registry import (
    ChangeType,
    SemanticVersion,
    WorkflowRegistry,
    validate_definition,
)


def test_semantic_version_parse_and_order():
    v1 = SemanticVersion.parse("1.2.0")
    v2 = SemanticVersion.parse("1.10.0")
    assert v1 < v2
    assert str(v2) == "1.10.0"
    with pytest.raises(ValueError):
        SemanticVersion.parse("1.2")


def test_validation_reports_every_problem(make_definition, make_step):
    definition = make_definition(
        [
            make_step("a", outputs=["report"]),
            make_step("a", outputs=["report"]),
            make_step(
                "c",
                errorHandling={"notification": {"recipients": [], "channels": ["sms"]}},
            ),
        ],
        triggers=[
            {"type": "scheduled", "schedule": "61 * * * *"},
            {"type": "threshold", "threshold": {"metric": "m", "operator": "contains", "value": 1}},
        ],
    )
    errors = validate_definition(definition)
    assert any("duplicate step id 'a'" in e for e in errors)
    assert any("output 'report'" in e for e in errors)
    assert any("notification" in e for e in errors)
    assert any("schedule" in e for e in errors)
    assert any("non-numeric operator" in e for e in errors)

    with pytest.raises(DefinitionValidationError) as exc_info:
        WorkflowRegistry().register(definition)
    assert len(exc_info.value.errors) == len(errors)


def test_register_rejects_schedule_that_never_fires(make_definition, make_step):
    definition = make_definition(
        [make_step("report")], triggers=[{"type": "scheduled", "schedule": "0 0 31 2 *"}]
    )
    with pytest.raises(DefinitionValidationError) as exc_info:
        WorkflowRegistry().register(definition)
    assert any("never matches" in e for e in exc_info.value.errors)


def test_ordering_condition_needs_numeric_literal(make_definition, make_step):
    definition = make_definition(
        [
            make_step(
                "page",
                conditions=[
                    {"field": "severity", "operator": ">=", "value": "high"},
                    {"field": "load", "operator": "<", "value": "0.5"},
                ],
            )
        ]
    )
    errors = validate_definition(definition)
    assert errors == [
        "step 'page' condition on 'severity': operator '>=' needs a numeric "
        "value, got 'high'"
    ]
    with pytest.raises(DefinitionValidationError):
        WorkflowRegistry().register(definition)


def test_in_condition_needs_list_literal(make_definition, make_step):
    definition = make_definition(
        [
            make_step(
                "route",
                conditions=[
                    {"field": "region", "operator": "in", "value": "north"},
                    {"field": "zone", "operator": "in", "value": ["a", "b"]},
                ],
            )
        ]
    )
    errors = validate_definition(definition)
    assert len(errors) == 1
    assert "'region': operator 'in' needs a list value" in errors[0]
    with pytest.raises(DefinitionValidationError):
        WorkflowRegistry().register(definition)


def test_empty_workflow_is_rejected(make_definition):
    assert validate_definition(make_definition([])) == [
        "workflow must declare at least one step"
    ]


def test_register_is_idempotent_for_same_content(make_definition, make_step):
    registry = WorkflowRegistry()
    first = registry.register(make_definition([make_step("a")]))
    again = registry.register(make_definition([make_step("a")]))
    assert again is first
    assert registry.versions("test-case") == ["1.0.0"]


def test_register_rejects_changed_content_under_same_version(make_definition, make_step):
    registry = WorkflowRegistry()
    registry.register(make_definition([make_step("a")]))
    with pytest.raises(DefinitionValidationError):
        registry.register(make_definition([make_step("b")]))


def test_get_returns_latest_semantic_version(make_definition, make_step):
    registry = WorkflowRegistry()
    registry.register(make_definition([make_step("a")], version="1.9.0"))
    registry.register(make_definition([make_step("b")], version="1.10.0"))

    assert registry.get("test-case").version == "1.10.0"
    assert registry.get("test-case", "1.9.0").steps[0].id == "a"
    assert registry.versions("test-case") == ["1.9.0", "1.10.0"]
    with pytest.raises(KeyError):
        registry.get("unknown")


def test_register_dict_wraps_schema_errors():
    registry = WorkflowRegistry()
    with pytest.raises(DefinitionValidationError) as exc_info:
        registry.register_dict({"useCaseId": "broken", "steps": [{"id": "a"}]})
    assert exc_info.value.workflow == "broken"
    assert exc_info.value.errors


def test_search_and_statistics(make_definition, make_step):
    registry = WorkflowRegistry()
    registry.register(
        make_definition(
            [make_step("a", humanApprovalRequired=True), make_step("b")],
            use_case_id="grid",
            industry="energy",
            metadata={"criticality": "critical", "tags": ["grid"], "compliance": ["NERC-CIP"]},
            triggers=[{"type": "event", "event": "grid.alarm"}],
        )
    )
    registry.register(
        make_definition(
            [make_step("a")],
            use_case_id="claims",
            industry="insurance",
            metadata={"criticality": "medium", "tags": ["claims"]},
        )
    )

    assert [d.use_case_id for d in registry.search(industry="Energy")] == ["grid"]
    assert [d.use_case_id for d in registry.search(criticality="medium")] == ["claims"]
    assert [d.use_case_id for d in registry.search(compliance=["NERC-CIP"])] == ["grid"]
    assert registry.search(tags=["nothing"]) == []

    stats = registry.statistics()
    assert stats.total_workflows == 2
    assert stats.total_steps == 3
    assert stats.approval_steps == 1
    assert stats.by_industry == {"energy": 1, "insurance": 1}
    assert stats.trigger_kinds == {"event": 1}
    assert stats.average_steps == pytest.approx(1.5)


def test_load_path_reads_json_and_yaml(tmp_path):
    (tmp_path / "grid.json").write_text(
        json.dumps(
            {
                "useCaseId": "grid",
                "steps": [
                    {"id": "a", "type": "detect", "agent": "x", "service": "s", "action": "a"}
                ],
            }
        )
    )
    (tmp_path / "claims.yaml").write_text(
        """
workflows:
  - useCaseId: claims
    version: 2.0.0
    steps:
      - id: intake
        type: analyze
        agent: claims-agent
        service: claims
        action: intake
"""
    )
    (tmp_path / "notes.txt").write_text("ignored")

    registry = WorkflowRegistry()
    loaded = registry.load_path(tmp_path)
    assert sorted(d.use_case_id for d in loaded) == ["claims", "grid"]
    assert registry.get("claims").version == "2.0.0"


def test_load_path_collects_errors_per_file(tmp_path):
    (tmp_path / "bad.json").write_text("{not json")
    (tmp_path / "empty.yaml").write_text("useCaseId: empty\nsteps: []\n")

    with pytest.raises(DefinitionValidationError) as exc_info:
        WorkflowRegistry().load_path(tmp_path)
    errors = exc_info.value.errors
    assert any("bad.json" in e for e in errors)
    assert any("empty.yaml" in e and "at least one step" in e for e in errors)


def test_export_then_import(make_definition, make_step):
    registry = WorkflowRegistry()
    registry.register(
        make_definition(
            [make_step("a", errorHandling={"retry": {"attempts": 2, "delayMs": 10}})],
            triggers=[{"type": "scheduled", "schedule": "0 */5 * * * *"}],
        )
    )
    exported = registry.export_json()
    assert '"useCaseId": "test-case"' in exported

    other = WorkflowRegistry()
    imported = other.import_json(exported)
    assert len(imported) == 1
    assert imported[0].steps[0].retry.delay_ms == 10
    assert imported[0].triggers[0].cron_expr == "0 */5 * * * *"


def _versioned(make_definition, make_step):
    registry = WorkflowRegistry()
    registry.register(
        make_definition(
            [make_step("detect"), make_step("assess"), make_step("inform")],
            version="1.0.0",
            metadata={"requiredServices": ["scada"], "tags": ["grid"]},
        )
    )
    registry.register(
        make_definition(
            [
                make_step("detect"),
                make_step("assess", parameters={"depth": "full"}),
                make_step("inform"),
                make_step("report"),
            ],
            version="1.1.0",
            metadata={"requiredServices": ["scada"], "tags": ["grid", "storm"]},
        )
    )
    registry.register(
        make_definition(
            [make_step("detect", type="detect"), make_step("assess")],
            version="2.0.0",
            metadata={"requiredServices": ["scada", "gis"], "tags": ["grid"]},
        )
    )
    return registry


def test_compare_reports_step_level_changes(make_definition, make_step):
    registry = _versioned(make_definition, make_step)

    minor = registry.compare("test-case", "1.0.0", "1.1.0")
    paths = {(c.type, c.path) for c in minor.changes}
    assert paths == {
        (ChangeType.MODIFIED, "steps.assess.parameters"),
        (ChangeType.ADDED, "steps.report"),
        (ChangeType.MODIFIED, "metadata.tags"),
    }
    assert not minor.breaking
    assert minor.compatibility == "warning"

    major = registry.compare("test-case", "1.0.0", "2.0.0")
    paths = {(c.type, c.path) for c in major.changes}
    assert (ChangeType.REMOVED, "steps.inform") in paths
    assert (ChangeType.MODIFIED, "steps.detect.type") in paths
    assert (ChangeType.MODIFIED, "metadata.requiredServices") in paths
    assert major.breaking
    assert major.compatibility == "incompatible"
    type_change = next(c for c in major.changes if c.path == "steps.detect.type")
    assert (type_change.old_value, type_change.new_value) == ("execute", "detect")


def test_compare_identical_and_additive_versions(make_definition, make_step):
    registry = WorkflowRegistry()
    registry.register(make_definition([make_step("a")], version="1.0.0"))
    registry.register(make_definition([make_step("a"), make_step("b")], version="1.0.1"))
    registry.register(make_definition([make_step("a"), make_step("b")], version="1.0.2"))

    additive = registry.compare("test-case", "1.0.0", "1.0.1")
    assert [c.type for c in additive.changes] == [ChangeType.ADDED]
    assert additive.compatibility == "compatible"
    assert registry.compare("test-case", "1.0.1", "1.0.2").changes == []
    with pytest.raises(KeyError):
        registry.compare("test-case", "1.0.0", "9.9.9")


def test_rollback_restores_content_as_new_latest_version(make_definition, make_step):
    registry = _versioned(make_definition, make_step)

    restored = registry.rollback("test-case", "1.1.0", reason="gis outage", performed_by="ops")

    assert restored.version == "2.0.1"
    assert registry.get("test-case") is restored
    assert [s.id for s in restored.steps] == ["detect", "assess", "inform", "report"]
    assert registry.compare("test-case", "1.1.0", "2.0.1").changes == []
    assert registry.versions("test-case") == ["1.0.0", "1.1.0", "2.0.0", "2.0.1"]

    # rolling back again to the same content is a no-op
    assert registry.rollback("test-case", "1.1.0") is restored
    assert registry.versions("test-case")[-1] == "2.0.1"


def test_version_history_flags_active_version(make_definition, make_step):
    registry = _versioned(make_definition, make_step)
    registry.rollback("test-case", "1.0.0", reason="bad release", performed_by="ops")

    history = registry.version_history("test-case")
    assert [(h.version, h.change) for h in history] == [
        ("2.0.1", "rollback"),
        ("2.0.0", "updated"),
        ("1.1.0", "updated"),
        ("1.0.0", "created"),
    ]
    assert [h.active for h in history] == [True, False, False, False]
    assert history[0].rolled_back_to == "1.0.0"
    assert history[0].performed_by == "ops"
    assert history[0].description == "Rollback to version 1.0.0: bad release"
    with pytest.raises(KeyError):
        registry.version_history("unknown")
