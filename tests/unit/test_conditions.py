"""Condition evaluator tests."""

import pytest

from flowgate.conditions import (
    UNDEFINED,
    build_scope,
    compare,
    evaluate,
    evaluate_all,
    resolve_path,
)
from flowgate.contracts import Condition, Operator
from flowgate.errors import ConditionEvaluationError, ErrorKind


def _cond(field, operator, value=None):
    return Condition(field=field, operator=operator, value=value)


def test_resolve_path_walks_mappings_and_lists():
    scope = {"outageData": {"areas": [{"id": "north"}, {"id": "south"}]}}
    assert resolve_path(scope, "outageData.areas.1.id") == "south"
    assert resolve_path(scope, "context.outageData.areas.0.id") == "north"
    assert resolve_path(scope, "outageData.missing") is UNDEFINED
    assert resolve_path(scope, "outageData.areas.7.id") is UNDEFINED


def test_resolve_path_prefers_flat_dotted_key():
    scope = {"a.b": 1, "a": {"b": 2}}
    assert resolve_path(scope, "a.b") == 1


def test_numeric_operators():
    scope = {"deviation": 3, "count": "4"}
    assert evaluate(scope, _cond("deviation", ">", 2))
    assert not evaluate(scope, _cond("deviation", "<", 2))
    assert evaluate(scope, _cond("deviation", ">=", 3))
    assert evaluate(scope, _cond("count", "<=", 4))


def test_equality_accepts_single_equals_and_mixed_numbers():
    scope = {"confirmed": True, "level": 2, "region": "north"}
    assert evaluate(scope, _cond("confirmed", "=", True))
    assert evaluate(scope, _cond("level", "==", 2.0))
    assert evaluate(scope, _cond("region", "!=", "south"))
    assert not evaluate(scope, _cond("confirmed", "==", False))


def test_bool_is_not_a_number():
    with pytest.raises(ConditionEvaluationError) as exc_info:
        evaluate({"flag": True}, _cond("flag", ">", 0))
    assert exc_info.value.kind is ErrorKind.TYPE_MISMATCH


def test_type_mismatch_raises():
    with pytest.raises(ConditionEvaluationError):
        evaluate({"name": "abc"}, _cond("name", ">", 3))
    with pytest.raises(ConditionEvaluationError):
        evaluate({"n": 5}, _cond("n", "contains", 1))
    with pytest.raises(ConditionEvaluationError):
        evaluate({"n": 5}, _cond("n", "in", 5))


def test_missing_field_is_false_unless_strict():
    assert evaluate({}, _cond("temperature", ">", 2)) is False
    with pytest.raises(ConditionEvaluationError) as exc_info:
        evaluate({}, _cond("temperature", ">", 2), strict=True)
    assert exc_info.value.kind is ErrorKind.MISSING_FIELD


def test_exists_never_raises():
    assert evaluate({"a": None}, _cond("a", "exists"))
    assert not evaluate({}, _cond("a", "exists"), strict=True)
    assert evaluate({}, _cond("a", "exists", False))


def test_contains_and_in():
    scope = {"tags": ["grid", "storm"], "note": "storm warning", "region": "north"}
    assert evaluate(scope, _cond("tags", "contains", "storm"))
    assert evaluate(scope, _cond("note", "contains", "warn"))
    assert evaluate(scope, _cond("region", "in", ["north", "east"]))
    assert not evaluate(scope, _cond("region", "in", ["south"]))


def test_compare_shared_with_thresholds():
    assert compare(3, Operator.GT, 2)
    assert not compare(1.5, Operator.GT, 2)


def test_evaluate_all_surfaces_errors_after_false_condition():
    conditions = [_cond("missing", ">", 1), _cond("name", ">", 1)]
    with pytest.raises(ConditionEvaluationError):
        evaluate_all({"name": "x"}, conditions)


def test_evaluate_all_empty_is_true():
    assert evaluate_all({}, [])


def test_build_scope_exposes_outputs_by_step_id(make_definition, make_step):
    definition = make_definition(
        [
            make_step("detect-outages", outputs=["outageData"]),
            make_step("dispatch-crews", outputs=["crewPlan"]),
        ]
    )
    context = {"outageData": {"confirmed": True}}
    scope = build_scope(context, definition, {"source": "scada"})

    assert resolve_path(scope, "detect-outages.outageData.confirmed") is True
    assert resolve_path(scope, "outageData.confirmed") is True
    assert resolve_path(scope, "dispatch-crews.crewPlan") is UNDEFINED
    assert resolve_path(scope, "trigger.source") == "scada"
