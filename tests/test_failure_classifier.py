from __future__ import annotations

import allure
import pytest

from stageflow.engine.errors import TaskTimeoutError, TransientTaskError, ValidationError
from stageflow.engine.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_task_failure,
)
from stageflow.engine.models import FailureClass

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_validation_error_is_non_retryable() -> None:
    classified = classify_task_failure(task_type="audit", error=ValidationError("bad input"))
    assert classified.failure_class == FailureClass.VALIDATION
    assert classified.reason_code == "audit_validation"
    assert classified.retryable is False


def test_timeout_is_retryable() -> None:
    classified = classify_task_failure(task_type="audit", error=TaskTimeoutError("audit", 500))
    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.matched_rule == "timeout_error"
    assert classified.retryable is True
    assert classified.tag("slow") == "timeout: slow"


def test_classifier_prefers_billing_over_rate_limit() -> None:
    classified = classify_task_failure(
        task_type="audit",
        error=RuntimeError("429: quota exceeded for this project"),
    )
    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"
    assert classified.retryable is False


@pytest.mark.parametrize(
    ("error", "expected", "pattern"),
    [
        (PermissionError("permission denied"), FailureClass.ACCESS_OR_AUTH, "permission denied"),
        (RuntimeError("HTTP 429 Too Many Requests"), FailureClass.RATE_LIMIT, "too many requests"),
        (RuntimeError("model overloaded"), FailureClass.RATE_LIMIT, "overloaded"),
        (ValueError("Failed to parse JSON from response"), FailureClass.OUTPUT_INVALID, None),
        (TransientTaskError("Malformed work output: str"), FailureClass.OUTPUT_INVALID, None),
    ],
)
def test_message_patterns(error: Exception, expected: FailureClass, pattern: str | None) -> None:
    classified = classify_task_failure(task_type="audit", error=error)
    assert classified.failure_class == expected
    if pattern is not None:
        assert classified.matched_pattern == pattern


def test_unknown_errors_fall_back_to_transient() -> None:
    classified = classify_task_failure(task_type="audit", error=ConnectionResetError("reset"))
    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "fallback_transient"
    assert classified.matched_pattern is None
    assert classified.retryable is True
