"""Deterministic attempt failure classification for task retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from stageflow.engine.errors import TaskTimeoutError, ValidationError
from stageflow.engine.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "try again later",
)
_OUTPUT_INVALID_PATTERNS: tuple[str, ...] = (
    "failed to parse json",
    "invalid json",
    "malformed work output",
)

NON_RETRYABLE_CLASSES = frozenset(
    {FailureClass.VALIDATION, FailureClass.BILLING_OR_QUOTA, FailureClass.ACCESS_OR_AUTH},
)


@dataclass(slots=True)
class TaskFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class not in NON_RETRYABLE_CLASSES

    def tag(self, message: str) -> str:
        """Prefix an error message with its failure class."""

        return f"{self.failure_class.value}: {message}"


def classify_task_failure(*, task_type: str, error: BaseException) -> TaskFailureClassification:
    """Classify one attempt exception into a deterministic failure class."""

    if isinstance(error, ValidationError):
        return TaskFailureClassification(
            failure_class=FailureClass.VALIDATION,
            reason_code=f"{task_type}_validation",
            matched_rule="validation_error",
            matched_pattern=None,
        )
    if isinstance(error, TaskTimeoutError | TimeoutError):
        return TaskFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code=f"{task_type}_timeout",
            matched_rule="timeout_error",
            matched_pattern=None,
        )

    haystack = f"{type(error).__name__}: {error}".lower()
    for failure_class, rule, patterns in (
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.RATE_LIMIT, "rate_limit", _RATE_LIMIT_PATTERNS),
        (FailureClass.OUTPUT_INVALID, "output_invalid", _OUTPUT_INVALID_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return TaskFailureClassification(
                failure_class=failure_class,
                reason_code=f"{task_type}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return TaskFailureClassification(
        failure_class=FailureClass.TRANSIENT,
        reason_code=f"{task_type}_transient",
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
