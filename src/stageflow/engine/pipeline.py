"""PipelineEngine: sequential stage orchestration with budget and quality gates."""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from stageflow.engine.budget import BudgetTracker
from stageflow.engine.cache import TaskResultCache
from stageflow.engine.context_store import ContextStore
from stageflow.engine.errors import (
    BudgetExceededError,
    QualityGateFailure,
    UnknownTaskTypeError,
)
from stageflow.engine.models import (
    PipelineRun,
    QualityCriterion,
    RunStatus,
    StageResult,
    StageSpec,
    StageStatus,
)
from stageflow.engine.pricing import estimate_results_cost_usd
from stageflow.engine.quality_gate import QualityGateEvaluator, base_criteria
from stageflow.engine.rate_limiter import RateLimiter
from stageflow.engine.registry import TaskRegistry
from stageflow.engine.stage_runner import StageRunner
from stageflow.engine.task_runner import TaskRunner

if TYPE_CHECKING:
    from stageflow.config import Settings

logger = logging.getLogger(__name__)


class PipelineEngine:
    """Runs stages strictly in order and turns every fatal condition into a result.

    After each stage the engine folds task costs into the budget, stops when
    the cap is exceeded, evaluates the quality gate and records completed
    payloads into the context store for later stages. ``orchestrate`` never
    raises.

    Stages already in the context store are skipped only when ``resume`` is
    set; otherwise they fail the run before any work starts. The budget is
    per engine and accumulates across ``orchestrate`` calls.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: TaskRegistry,
        task_runner: TaskRunner,
        budget: BudgetTracker,
        context_store: ContextStore,
        gate_evaluator: QualityGateEvaluator,
        criteria: Sequence[QualityCriterion] | None = None,
        checkpoint_path: Path | None = None,
        raw_pricing: str | None = None,
        resume: bool = False,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.registry = registry
        self.task_runner = task_runner
        self.budget = budget
        self.context_store = context_store
        self.gate_evaluator = gate_evaluator
        self.criteria = tuple(base_criteria() if criteria is None else criteria)
        self.checkpoint_path = checkpoint_path
        self.raw_pricing = raw_pricing
        self.resume = resume
        self._on_progress = on_progress or (lambda _msg: None)
        self.stage_runner = StageRunner(task_runner, on_progress=self._on_progress)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: TaskRegistry,
        *,
        resume: bool = False,
        on_progress: Callable[[str], None] | None = None,
    ) -> PipelineEngine:
        """Wire a fresh engine from settings; ``resume`` loads the checkpoint first."""

        cache = (
            TaskResultCache(ttl_seconds=settings.cache.ttl_seconds)
            if settings.cache.enabled
            else None
        )
        task_runner = TaskRunner(
            RateLimiter(
                settings.rate_limit.max_requests,
                settings.rate_limit.window_seconds,
            ),
            retry_base_seconds=settings.retry.retry_base_seconds,
            stop_on_non_retryable=settings.retry.stop_on_non_retryable,
            cache=cache,
        )
        context_store = ContextStore(
            per_entry_max_bytes=settings.context.per_entry_max_bytes,
            aggregate_max_bytes=settings.context.aggregate_max_bytes,
        )
        checkpoint_path = settings.checkpoint_path
        if resume and checkpoint_path is not None and checkpoint_path.exists():
            context_store.load(checkpoint_path)
            logger.info(
                "Resumed context from %s: %s",
                checkpoint_path,
                ", ".join(context_store.stage_names()) or "no stages",
            )
        return cls(
            registry=registry,
            task_runner=task_runner,
            budget=BudgetTracker(
                settings.budget.cap_units,
                warning_ratio=settings.budget.warning_ratio,
            ),
            context_store=context_store,
            gate_evaluator=QualityGateEvaluator(settings.quality.pass_threshold),
            criteria=base_criteria(
                min_completion_ratio=settings.quality.min_completion_ratio,
                max_stage_duration_ms=settings.quality.max_stage_duration_ms,
            ),
            checkpoint_path=checkpoint_path,
            raw_pricing=settings.cost_pricing or None,
            resume=resume,
            on_progress=on_progress,
        )

    async def orchestrate(self, stages: Sequence[StageSpec]) -> PipelineRun:
        started_at = datetime.now(tz=UTC)
        started = time.monotonic()
        run = PipelineRun(
            stage_results=[],
            overall_status=RunStatus.SUCCESS,
            total_cost_units=0,
            started_at=started_at,
            completed_at=started_at,
            duration_ms=0,
        )
        self._emit(f"Pipeline started: {len(stages)} stage(s)")

        counts = Counter(stage.name for stage in stages)
        duplicates = sorted(name for name, count in counts.items() if count > 1)
        if duplicates:
            run.errors.append(f"Duplicate stage names: {', '.join(duplicates)}")
            return self._finish(run, stages, started, aborted=True)
        if not self.resume:
            recorded = [stage.name for stage in stages if self.context_store.has_stage(stage.name)]
            if recorded:
                run.errors.append(
                    f"Stages already recorded in context: {', '.join(recorded)} "
                    "(enable resume to skip them)",
                )
                return self._finish(run, stages, started, aborted=True)

        aborted = False
        current: StageSpec | None = None
        try:
            for stage_no, stage_spec in enumerate(stages, start=1):
                current = stage_spec
                if self.resume and self.context_store.has_stage(stage_spec.name):
                    run.skipped_stages.append(stage_spec.name)
                    self._emit(
                        f"Stage {stage_no}/{len(stages)} {stage_spec.name}: "
                        "already in context, skipped",
                    )
                    continue
                self._emit(
                    f"Stage {stage_no}/{len(stages)} {stage_spec.name} "
                    f"({stage_spec.criticality.value})",
                )
                self._expire_cached_results()
                if not await self._run_stage(run, stage_spec):
                    aborted = True
                    break
        except Exception as error:  # noqa: BLE001
            logger.exception("Pipeline aborted by unexpected error")
            stage_name = current.name if current is not None else "-"
            run.errors.append(f"Unexpected error in stage {stage_name}: {error}")
            run.aborted_stage = stage_name
            aborted = True

        return self._finish(run, stages, started, aborted=aborted)

    async def _run_stage(self, run: PipelineRun, stage_spec: StageSpec) -> bool:
        """Execute one stage; False means the pipeline must stop."""

        try:
            strategies = self.registry.resolve_many(stage_spec.task_type_ids)
        except UnknownTaskTypeError as error:
            now = datetime.now(tz=UTC)
            stage_result = StageResult(
                stage_name=stage_spec.name,
                status=StageStatus.FAILED,
                task_results=[],
                started_at=now,
                completed_at=now,
                duration_ms=0,
                errors=[str(error)],
            )
            self._emit(f"[{stage_spec.name}] cannot be scheduled: {error}")
        else:
            stage_result = await self.stage_runner.run(
                stage_spec,
                strategies,
                self.context_store.snapshot(),
            )
        run.stage_results.append(stage_result)

        for task_result in stage_result.task_results:
            self.budget.add(task_result.metrics.cost_units)
        if self.budget.is_over_cap():
            budget_error = BudgetExceededError(
                used_units=self.budget.used_units,
                cap_units=self.budget.cap_units,
                stage_name=stage_spec.name,
            )
            run.errors.append(str(budget_error))
            run.aborted_stage = stage_spec.name
            self._emit(f"ABORT: {budget_error}")
            return False
        if self.budget.crossed_warning():
            self._emit(
                f"WARNING: {self.budget.percent_used():.1f}% of budget used "
                f"({self.budget.used_units:,.0f}/{self.budget.cap_units:,.0f} units)",
            )

        gate = await self.gate_evaluator.evaluate(
            stage_result,
            [*self.criteria, *stage_spec.quality_criteria],
        )
        run.gate_results[stage_spec.name] = gate
        if gate.passed:
            self._emit(f"[{stage_spec.name}] quality gate passed ({gate.score:.1f}/10)")
        elif stage_spec.is_critical:
            gate_error = QualityGateFailure(
                stage_name=stage_spec.name,
                score=gate.score,
                threshold=gate.threshold,
            )
            run.errors.append(str(gate_error))
            run.aborted_stage = stage_spec.name
            self._emit(f"ABORT: {gate_error}")
            return False
        else:
            self._emit(
                f"[{stage_spec.name}] quality gate failed ({gate.score:.1f}/10), "
                "continuing with warnings",
            )

        recorded = self.context_store.record_stage(stage_result)
        logger.debug("Recorded %d payload(s) from stage %s", recorded, stage_spec.name)
        if self.checkpoint_path is not None:
            self.context_store.save(self.checkpoint_path)
            logger.debug("Checkpoint written to %s", self.checkpoint_path)
        return True

    def _finish(
        self,
        run: PipelineRun,
        stages: Sequence[StageSpec],
        started: float,
        *,
        aborted: bool,
    ) -> PipelineRun:
        run.completed_at = datetime.now(tz=UTC)
        run.duration_ms = int((time.monotonic() - started) * 1000)
        run.budget = self.budget.snapshot()
        run.total_cost_units = sum(result.cost_units for result in run.stage_results)
        run.estimated_cost_usd = estimate_results_cost_usd(
            (task for stage in run.stage_results for task in stage.task_results),
            raw_pricing=self.raw_pricing,
        )
        run.overall_status = determine_overall_status(run, stages, aborted=aborted)

        cost_line = f"{run.total_cost_units:,.0f} units"
        if run.estimated_cost_usd is not None:
            cost_line += f", ~${run.estimated_cost_usd:.2f}"
        self._emit(
            f"Pipeline {run.overall_status.value} in {run.duration_ms / 1000:.2f}s ({cost_line})",
        )
        return run

    def _expire_cached_results(self) -> None:
        cache = self.task_runner.cache
        if cache is None:
            return
        expired = cache.cleanup()
        stats = cache.stats()
        logger.debug(
            "Result cache: %d expired, %d live, %d hits, %d misses",
            expired,
            stats.size,
            stats.hits,
            stats.misses,
        )

    def _emit(self, msg: str) -> None:
        logger.info(msg)
        self._on_progress(msg)


def determine_overall_status(
    run: PipelineRun,
    stages: Sequence[StageSpec],
    *,
    aborted: bool,
) -> RunStatus:
    """``failed`` on abort or a failed critical stage, ``partial`` on any other failure."""

    if aborted:
        return RunStatus.FAILED
    critical = {stage.name for stage in stages if stage.is_critical}
    failed = [
        result.stage_name
        for result in run.stage_results
        if result.status == StageStatus.FAILED
    ]
    if any(name in critical for name in failed):
        return RunStatus.FAILED
    if failed or any(not gate.passed for gate in run.gate_results.values()):
        return RunStatus.PARTIAL
    return RunStatus.SUCCESS
