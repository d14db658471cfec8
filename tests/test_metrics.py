from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from stageflow.engine.budget import BudgetSnapshot
from stageflow.engine.metrics import build_run_metrics, render_run_lines
from stageflow.engine.models import (
    CriterionOutcome,
    FailureClass,
    PipelineRun,
    QualityGateResult,
    RunStatus,
)

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Run Metrics"),
]


@pytest.fixture()
def sample_run(make_task_result, make_stage_result) -> PipelineRun:
    research = make_stage_result(
        "research",
        [
            make_task_result("market", duration_ms=1_000, cost_units=100),
            make_task_result("market_cached", duration_ms=1, cached=True, attempts=0),
            make_task_result("pricing", duration_ms=3_000, cost_units=50, attempts=2),
        ],
    )
    synthesis = make_stage_result(
        "synthesis",
        [
            make_task_result("summary", duration_ms=2_000, cost_units=25),
            make_task_result(
                "risk",
                succeeded=False,
                duration_ms=500,
                attempts=3,
                failure_class=FailureClass.ACCESS_OR_AUTH,
            ),
        ],
    )
    now = datetime.now(tz=UTC)
    return PipelineRun(
        stage_results=[research, synthesis],
        overall_status=RunStatus.PARTIAL,
        total_cost_units=175,
        started_at=now,
        completed_at=now,
        duration_ms=6_500,
        gate_results={
            "research": QualityGateResult(
                stage_name="research",
                passed=True,
                score=10.0,
                threshold=7.0,
                outcomes=(CriterionOutcome(name="a", passed=True, required=True, weight=1),),
            ),
            "synthesis": QualityGateResult(
                stage_name="synthesis",
                passed=False,
                score=5.0,
                threshold=7.0,
            ),
        },
        skipped_stages=["intake"],
        estimated_cost_usd=0.5,
    )


def test_build_run_metrics_counts_tasks(sample_run) -> None:
    metrics = build_run_metrics(sample_run)

    assert metrics.task_count == 5
    assert metrics.completed_count == 4
    assert metrics.failed_count == 1
    assert metrics.success_rate == 0.8
    assert metrics.cache_hit_rate == 0.2
    assert metrics.total_attempts == 7
    assert metrics.retried_task_count == 2
    assert metrics.status_counts == {"completed": 4, "failed": 1}
    assert metrics.failure_class_counts == {"access_or_auth": 1}


def test_latency_excludes_cached_results(sample_run) -> None:
    metrics = build_run_metrics(sample_run)

    assert "market_cached" not in metrics.latency_by_task_type
    pricing = metrics.latency_by_task_type["pricing"]
    assert pricing.sample_size == 1
    assert pricing.average_seconds == 3.0
    assert pricing.p99_seconds == 3.0
    assert [slow.task_type_id for slow in metrics.slowest_tasks] == ["pricing", "summary", "market"]


def test_render_run_lines(sample_run) -> None:
    lines = render_run_lines(sample_run, build_run_metrics(sample_run))

    assert lines[0] == "Pipeline status: partial"
    assert "Cost: 175 units (~$0.5000)" in lines
    assert any(
        line.startswith("  research: status=completed tasks=3/3") and "gate=pass" in line
        for line in lines
    )
    assert any(
        line.startswith("  synthesis: status=failed tasks=1/2") and "gate=fail score=5.0" in line
        for line in lines
    )
    assert "Skipped (already in context): intake" in lines
    assert "Failure-class distribution: access_or_auth=1" in lines
    assert any(line.startswith("Slowest tasks: research/pricing=3.00s") for line in lines)


def test_empty_run_renders_placeholders() -> None:
    now = datetime.now(tz=UTC)
    run = PipelineRun(
        stage_results=[],
        overall_status=RunStatus.FAILED,
        total_cost_units=0,
        started_at=now,
        completed_at=now,
        duration_ms=0,
        errors=["Duplicate stage names: a"],
    )

    metrics = build_run_metrics(run)
    lines = render_run_lines(run, metrics)

    assert metrics.success_rate is None
    assert "Latency by task type: none" in lines
    assert "  none" in lines
    assert lines[-2:] == ["Errors:", "  - Duplicate stage names: a"]


def test_budget_line_rendered_when_snapshot_present(sample_run) -> None:
    sample_run.budget = BudgetSnapshot(
        used_units=175,
        cap_units=1_000,
        percent_used=17.5,
        remaining_units=825,
        over_cap=False,
    )

    lines = render_run_lines(sample_run, build_run_metrics(sample_run))

    assert lines[3] == "Budget: 175/1,000 units (17.5% used, 825 remaining)"
    assert lines[4] == "Stages:"
