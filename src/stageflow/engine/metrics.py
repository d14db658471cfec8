"""Run metrics and operator-facing report lines for a finished pipeline run."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass

from stageflow.engine.models import PipelineRun, TaskResult

SLOWEST_TASKS_LIMIT = 3


@dataclass(slots=True)
class LatencyPercentiles:
    """Duration percentiles for one task type."""

    sample_size: int
    average_seconds: float
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float


@dataclass(slots=True)
class SlowTask:
    stage_name: str
    task_type_id: str
    duration_ms: int


@dataclass(slots=True)
class RunMetricsSnapshot:
    """Aggregated task-level metrics of one pipeline run."""

    task_count: int
    completed_count: int
    failed_count: int
    cached_count: int
    total_attempts: int
    retried_task_count: int
    total_cost_units: float
    status_counts: dict[str, int]
    failure_class_counts: dict[str, int]
    latency_by_task_type: dict[str, LatencyPercentiles]
    slowest_tasks: list[SlowTask]

    @property
    def success_rate(self) -> float | None:
        return _safe_ratio(self.completed_count, self.task_count)

    @property
    def cache_hit_rate(self) -> float | None:
        return _safe_ratio(self.cached_count, self.task_count)


def build_run_metrics(run: PipelineRun) -> RunMetricsSnapshot:
    """Build one metrics snapshot from the run's task results."""

    status_counts = Counter[str]()
    failure_class_counts = Counter[str]()
    latency_values: dict[str, list[float]] = defaultdict(list)
    timed: list[tuple[str, TaskResult]] = []

    for stage in run.stage_results:
        for task in stage.task_results:
            status_counts[task.status.value] += 1
            if task.failure_class is not None:
                failure_class_counts[task.failure_class.value] += 1
            if not task.cached:
                latency_values[task.task_type_id].append(task.metrics.duration_ms / 1000)
                timed.append((stage.stage_name, task))

    tasks = [task for stage in run.stage_results for task in stage.task_results]
    latency_by_task_type = {
        task_type: LatencyPercentiles(
            sample_size=len(values),
            average_seconds=sum(values) / len(values),
            p50_seconds=_percentile(values, 0.50),
            p90_seconds=_percentile(values, 0.90),
            p99_seconds=_percentile(values, 0.99),
        )
        for task_type, values in sorted(latency_values.items())
    }
    slowest = sorted(timed, key=lambda item: item[1].metrics.duration_ms, reverse=True)
    return RunMetricsSnapshot(
        task_count=len(tasks),
        completed_count=sum(1 for task in tasks if task.succeeded),
        failed_count=sum(1 for task in tasks if not task.succeeded),
        cached_count=sum(1 for task in tasks if task.cached),
        total_attempts=sum(task.attempts for task in tasks),
        retried_task_count=sum(1 for task in tasks if task.attempts > 1),
        total_cost_units=run.total_cost_units,
        status_counts=dict(sorted(status_counts.items())),
        failure_class_counts=dict(sorted(failure_class_counts.items())),
        latency_by_task_type=latency_by_task_type,
        slowest_tasks=[
            SlowTask(
                stage_name=stage_name,
                task_type_id=task.task_type_id,
                duration_ms=task.metrics.duration_ms,
            )
            for stage_name, task in slowest[:SLOWEST_TASKS_LIMIT]
        ],
    )


def render_run_lines(run: PipelineRun, metrics: RunMetricsSnapshot) -> list[str]:
    """Render the run report for CLI output."""

    lines = [
        f"Pipeline status: {run.overall_status.value}",
        f"Duration: {run.duration_ms / 1000:.2f}s",
        (
            f"Cost: {run.total_cost_units:,.0f} units"
            + (
                f" (~${run.estimated_cost_usd:.4f})"
                if run.estimated_cost_usd is not None
                else ""
            )
        ),
    ]
    if run.budget is not None:
        lines.append(
            f"Budget: {run.budget.used_units:,.0f}/{run.budget.cap_units:,.0f} units "
            f"({run.budget.percent_used:.1f}% used, "
            f"{run.budget.remaining_units:,.0f} remaining)",
        )
    lines.append("Stages:")
    for stage in run.stage_results:
        gate = run.gate_results.get(stage.stage_name)
        gate_text = (
            f"gate={'pass' if gate.passed else 'fail'} score={gate.score:.1f}"
            if gate is not None
            else "gate=n/a"
        )
        lines.append(
            f"  {stage.stage_name}: status={stage.status.value} "
            f"tasks={stage.completed_count}/{len(stage.task_results)} "
            f"duration={stage.duration_ms / 1000:.2f}s {gate_text}",
        )
    if run.skipped_stages:
        lines.append("Skipped (already in context): " + ", ".join(run.skipped_stages))
    if not run.stage_results and not run.skipped_stages:
        lines.append("  none")

    lines.append(
        f"Tasks: total={metrics.task_count} completed={metrics.completed_count} "
        f"failed={metrics.failed_count} success_rate={_fmt_ratio(metrics.success_rate)}",
    )
    lines.append(
        f"Attempts: total={metrics.total_attempts} retried_tasks={metrics.retried_task_count} "
        f"cache_hit_rate={_fmt_ratio(metrics.cache_hit_rate)}",
    )
    lines.append(
        "Failure-class distribution: " + (_fmt_key_value(metrics.failure_class_counts) or "none"),
    )

    if metrics.latency_by_task_type:
        lines.append("Latency by task type:")
        for task_type, latency in metrics.latency_by_task_type.items():
            lines.append(
                "  "
                f"task_type={task_type} n={latency.sample_size} "
                f"avg={latency.average_seconds:.2f}s "
                f"p50={latency.p50_seconds:.2f}s "
                f"p90={latency.p90_seconds:.2f}s "
                f"p99={latency.p99_seconds:.2f}s",
            )
    else:
        lines.append("Latency by task type: none")

    if metrics.slowest_tasks:
        lines.append(
            "Slowest tasks: "
            + ", ".join(
                f"{slow.stage_name}/{slow.task_type_id}={slow.duration_ms / 1000:.2f}s"
                for slow in metrics.slowest_tasks
            ),
        )

    if run.errors:
        lines.append("Errors:")
        lines.extend(f"  - {error}" for error in run.errors)
    return lines


def _safe_ratio(numerator: int, denominator: int) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
