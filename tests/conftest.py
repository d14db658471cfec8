"""Shared test fixtures."""

from __future__ import annotations

import os
from datetime import UTC, datetime

import pytest

from stageflow.engine.models import (
    FailureClass,
    StageResult,
    StageStatus,
    TaskMetrics,
    TaskResult,
    TaskStatus,
)
from stageflow.engine.rate_limiter import RateLimiter
from stageflow.engine.task_runner import TaskRunner


@pytest.fixture(autouse=True)
def _clean_stageflow_env(monkeypatch):
    """Keep developer STAGEFLOW_* variables out of tests."""

    for name in list(os.environ):
        if name.startswith("STAGEFLOW_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def recorded_sleeps() -> list[float]:
    return []


@pytest.fixture()
def fake_sleep(recorded_sleeps):
    """Backoff sleep that records the delay and returns immediately."""

    async def _sleep(delay: float) -> None:
        recorded_sleeps.append(delay)

    return _sleep


@pytest.fixture()
def fast_runner(fake_sleep) -> TaskRunner:
    return TaskRunner(RateLimiter(10_000, 60), sleep=fake_sleep)


@pytest.fixture()
def make_task_result():
    def _make(
        task_type_id: str,
        *,
        succeeded: bool = True,
        payload=None,
        cost_units: float = 0,
        duration_ms: int = 10,
        attempts: int = 1,
        failure_class: FailureClass | None = None,
        cached: bool = False,
    ) -> TaskResult:
        if succeeded:
            return TaskResult(
                task_type_id=task_type_id,
                status=TaskStatus.COMPLETED,
                payload={"type": task_type_id} if payload is None else payload,
                metrics=TaskMetrics(cost_units=cost_units, duration_ms=duration_ms),
                attempts=attempts,
                cached=cached,
            )
        failure = failure_class or FailureClass.TRANSIENT
        return TaskResult(
            task_type_id=task_type_id,
            status=TaskStatus.FAILED,
            payload=None,
            metrics=TaskMetrics(duration_ms=duration_ms),
            errors=(f"{failure.value}: boom",),
            failure_class=failure,
            attempts=attempts,
        )

    return _make


@pytest.fixture()
def make_stage_result():
    def _make(
        stage_name: str,
        task_results: list[TaskResult],
        *,
        duration_ms: int = 100,
        errors: list[str] | None = None,
    ) -> StageResult:
        now = datetime.now(tz=UTC)
        return StageResult(
            stage_name=stage_name,
            status=(
                StageStatus.FAILED
                if errors or any(not result.succeeded for result in task_results)
                else StageStatus.COMPLETED
            ),
            task_results=task_results,
            started_at=now,
            completed_at=now,
            duration_ms=duration_ms,
            errors=list(errors or []),
        )

    return _make
