"""Error taxonomy for flowgate workflow runs."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    """Machine readable classification attached to every flowgate error."""

    TYPE_MISMATCH = "type_mismatch"
    MISSING_FIELD = "missing_field"
    DISPATCH = "dispatch"
    INCOMPLETE_OUTPUT = "incomplete_output"
    APPROVAL_TIMEOUT = "approval_timeout"
    APPROVAL_REJECTED = "approval_rejected"
    RUN_TIMEOUT = "run_timeout"
    CANCELLED = "cancelled"
    DEFINITION_VALIDATION = "definition_validation"
    STORAGE = "storage"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"


class FlowgateError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.DISPATCH
    retryable: bool = False

    def __init__(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class ConditionEvaluationError(FlowgateError):
    """A condition could not be evaluated (type mismatch or strict missing field)."""

    kind = ErrorKind.TYPE_MISMATCH


class DispatchError(FlowgateError):
    """An external action failed.

    ``retryable`` is the collaborator's hint on whether trying again can help.
    """

    kind = ErrorKind.DISPATCH

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class IncompleteOutputError(DispatchError):
    """An action succeeded but did not return every declared output."""

    kind = ErrorKind.INCOMPLETE_OUTPUT

    def __init__(self, step_id: str, missing: List[str]) -> None:
        super().__init__(
            f"Step {step_id} did not produce declared outputs: {', '.join(missing)}",
            retryable=False,
        )
        self.step_id = step_id
        self.missing = missing


class ApprovalTimeoutError(FlowgateError):
    kind = ErrorKind.APPROVAL_TIMEOUT


class ApprovalRejectedError(FlowgateError):
    kind = ErrorKind.APPROVAL_REJECTED


class RunTimeoutError(FlowgateError):
    kind = ErrorKind.RUN_TIMEOUT


class RunCancelledError(FlowgateError):
    kind = ErrorKind.CANCELLED


class DefinitionValidationError(FlowgateError):
    """A workflow definition was rejected at registration time."""

    kind = ErrorKind.DEFINITION_VALIDATION

    def __init__(self, errors: List[str], workflow: Optional[str] = None) -> None:
        prefix = f"Invalid workflow {workflow}" if workflow else "Invalid workflow"
        super().__init__(f"{prefix}: " + "; ".join(errors))
        self.errors = errors
        self.workflow = workflow


class StorageError(FlowgateError):
    """The run store failed; the run keeps its last durable state."""

    kind = ErrorKind.STORAGE
    retryable = True


class RunNotFoundError(FlowgateError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransitionError(FlowgateError):
    kind = ErrorKind.INVALID_TRANSITION


__all__ = [
    "ErrorKind",
    "FlowgateError",
    "ConditionEvaluationError",
    "DispatchError",
    "IncompleteOutputError",
    "ApprovalTimeoutError",
    "ApprovalRejectedError",
    "RunTimeoutError",
    "RunCancelledError",
    "DefinitionValidationError",
    "StorageError",
    "RunNotFoundError",
    "InvalidTransitionError",
]
