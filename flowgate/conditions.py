"""Condition evaluation against a run's accumulated context.

Conditions are typed ``{field, operator, value}`` triples validated when a
definition is registered. Evaluation never executes user supplied code: the
field is a dotted path looked up in the context and the operator is one of a
closed set of comparisons.
"""

from __future__ import annotations

import logging
from collections import ChainMap
from collections.abc import Mapping, Sequence, Set
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .contracts import Condition, Operator, WorkflowDefinition
from .errors import ConditionEvaluationError, ErrorKind

logger = logging.getLogger(__name__)


class _Undefined:
    """Result of resolving a path that does not exist in the context."""

    _instance: Optional["_Undefined"] = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


def resolve_path(scope: Mapping, path: str) -> Any:
    """Resolve ``path`` (``a.b.0.c``) in ``scope`` or return ``UNDEFINED``."""
    if path in scope:
        return scope[path]

    parts = path.split(".")
    if parts[0] == "context" and len(parts) > 1 and "context" not in scope:
        parts = parts[1:]

    current: Any = scope
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return UNDEFINED
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return UNDEFINED
        elif not part.startswith("_") and hasattr(current, part):
            current = getattr(current, part)
        else:
            return UNDEFINED
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _is_collection(value: Any) -> bool:
    return isinstance(value, (Sequence, Set)) and not isinstance(value, (str, bytes))


def compare(left: Any, operator: Operator, right: Any) -> bool:
    """Apply ``operator`` to two resolved values.

    Raises:
        ConditionEvaluationError: If the operator does not apply to the types.
    """
    if operator.is_ordering:
        lnum, rnum = _as_number(left), _as_number(right)
        if lnum is None or rnum is None:
            raise ConditionEvaluationError(
                f"Operator {operator.value} needs numbers, got "
                f"{type(left).__name__} and {type(right).__name__}",
                kind=ErrorKind.TYPE_MISMATCH,
            )
        if operator is Operator.GT:
            return lnum > rnum
        if operator is Operator.LT:
            return lnum < rnum
        if operator is Operator.GE:
            return lnum >= rnum
        return lnum <= rnum

    if operator in (Operator.EQ, Operator.NE):
        lnum, rnum = _as_number(left), _as_number(right)
        if lnum is not None and rnum is not None:
            equal = lnum == rnum
        else:
            equal = _plain(left) == _plain(right)
        return equal if operator is Operator.EQ else not equal

    if operator is Operator.CONTAINS:
        if isinstance(left, str) and isinstance(right, str):
            return right in left
        if _is_collection(left) or isinstance(left, Mapping):
            return _plain(right) in left
        raise ConditionEvaluationError(
            f"Operator contains is not supported for {type(left).__name__}",
            kind=ErrorKind.TYPE_MISMATCH,
        )

    if operator is Operator.IN:
        if isinstance(right, str) and isinstance(left, str):
            return left in right
        if _is_collection(right):
            return _plain(left) in right
        raise ConditionEvaluationError(
            f"Operator in needs a list on the right, got {type(right).__name__}",
            kind=ErrorKind.TYPE_MISMATCH,
        )

    raise ConditionEvaluationError(
        f"Operator {operator.value} cannot compare values", kind=ErrorKind.TYPE_MISMATCH
    )


def evaluate(scope: Mapping, condition: Condition, *, strict: bool = False) -> bool:
    """Evaluate one condition.

    A missing field makes the condition ``False`` unless ``strict`` is set,
    in which case a ``MISSING_FIELD`` error is raised.
    """
    value = resolve_path(scope, condition.field)

    if condition.operator is Operator.EXISTS:
        present = value is not UNDEFINED
        return present if condition.value in (None, True) else not present

    if value is UNDEFINED:
        if strict:
            raise ConditionEvaluationError(
                f"Field {condition.field!r} is not present in the context",
                kind=ErrorKind.MISSING_FIELD,
            )
        logger.debug(f"Condition {condition.field} unresolved, evaluating to False")
        return False

    return compare(value, condition.operator, condition.value)


def evaluate_all(
    scope: Mapping, conditions: Iterable[Condition], *, strict: bool = False
) -> bool:
    """AND all conditions. Every condition is evaluated so type errors surface."""
    results = [evaluate(scope, c, strict=strict) for c in conditions]
    return all(results)


def build_scope(
    context: Dict[str, Any],
    definition: WorkflowDefinition,
    trigger_payload: Optional[Dict[str, Any]] = None,
) -> Mapping:
    """Read-only view used for condition lookups.

    Flat output names win; each step's outputs are also reachable under the
    step id, and the trigger payload under ``trigger``.
    """
    by_step = {
        step.id: {name: context[name] for name in step.outputs if name in context}
        for step in definition.steps
        if any(name in context for name in step.outputs)
    }
    extras: Dict[str, Any] = {"trigger": dict(trigger_payload or {})}
    return ChainMap(dict(context), by_step, extras)


__all__ = [
    "UNDEFINED",
    "resolve_path",
    "compare",
    "evaluate",
    "evaluate_all",
    "build_scope",
]
