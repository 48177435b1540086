"""Deterministic failure classification and structured error info."""

from __future__ import annotations

import traceback
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from task_relay.orchestrator.errors import (
    ConcurrentUpdateError,
    InvalidTaskParametersError,
    MalformedMessageError,
    RateLimitExceededError,
    TaskFailure,
    TransportError,
)
from task_relay.orchestrator.models import ErrorInfo, FailureClass
from task_relay.storage.common import utc_now

FAILURE_CLASSIFIER_VERSION = 1
STACK_TRACE_DEPTH = 10

# Order matters: PermissionError is an OSError, ValidationError is a ValueError.
_TYPE_RULES: tuple[tuple[str, tuple[type[BaseException], ...], FailureClass], ...] = (
    ("timeout", (TimeoutError,), FailureClass.TIMEOUT),
    ("permission", (PermissionError,), FailureClass.ACCESS_OR_AUTH),
    ("connection", (ConnectionError,), FailureClass.BACKEND_TRANSIENT),
    ("rate_limit", (RateLimitExceededError,), FailureClass.BACKEND_TRANSIENT),
    (
        "input_contract",
        (ValidationError, InvalidTaskParametersError, MalformedMessageError),
        FailureClass.INPUT_CONTRACT_ERROR,
    ),
    ("infrastructure", (TransportError, ConcurrentUpdateError), FailureClass.INFRASTRUCTURE),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    exception_class: str

    def to_error_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify by exception type, falling back to the direct cause."""

    classification = _classify_single(error)
    cause = error.__cause__
    if classification.failure_class is FailureClass.UNCLASSIFIED and cause is not None:
        from_cause = _classify_single(cause)
        if from_cause.failure_class is not FailureClass.UNCLASSIFIED:
            return FailureClassification(
                failure_class=from_cause.failure_class,
                matched_rule=f"cause:{from_cause.matched_rule}",
                exception_class=classification.exception_class,
            )
    return classification


def _classify_single(error: BaseException) -> FailureClassification:
    exception_class = type(error).__name__
    if isinstance(error, TaskFailure):
        return FailureClassification(
            failure_class=error.kind,
            matched_rule="explicit_kind",
            exception_class=exception_class,
        )
    for rule, types, failure_class in _TYPE_RULES:
        if isinstance(error, types):
            return FailureClassification(
                failure_class=failure_class,
                matched_rule=rule,
                exception_class=exception_class,
            )
    return FailureClassification(
        failure_class=FailureClass.UNCLASSIFIED,
        matched_rule="fallback",
        exception_class=exception_class,
    )


def retryable_failure_classes(
    *classes: FailureClass,
) -> Callable[[BaseException], bool]:
    """Build an ``is_retryable`` predicate accepting only the given classes."""

    allowed = frozenset(classes)

    def _predicate(error: BaseException) -> bool:
        return classify_failure(error).failure_class in allowed

    return _predicate


def build_error_info(error: BaseException, **context: Any) -> ErrorInfo:
    """Structured error info stored on the task record and carried by events."""

    classification = classify_failure(error)
    info: ErrorInfo = {
        "message": str(error),
        "exception_class": classification.exception_class,
        "failure_class": classification.failure_class.value,
        "timestamp": utc_now().isoformat(),
        "stack_trace": _format_stack(error),
    }
    cause = error.__cause__ or error.__context__
    if cause is not None:
        info["cause"] = {
            "message": str(cause),
            "exception_class": type(cause).__name__,
        }
    info.update(context)
    return info


def build_infrastructure_error_info(message: str, **context: Any) -> ErrorInfo:
    """Error info for failures that have no exception, such as a missing executable."""

    info: ErrorInfo = {
        "message": message,
        "exception_class": None,
        "failure_class": FailureClass.INFRASTRUCTURE.value,
        "timestamp": utc_now().isoformat(),
        "stack_trace": [],
    }
    info.update(context)
    return info


def _format_stack(error: BaseException) -> list[str]:
    frames = traceback.extract_tb(error.__traceback__)[-STACK_TRACE_DEPTH:]
    return [f"{frame.filename}:{frame.lineno} in {frame.name}" for frame in frames]
