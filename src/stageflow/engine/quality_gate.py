"""Weighted quality gate evaluated against each finished stage."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Iterable, Mapping, Sequence

from stageflow.engine.models import (
    CriterionOutcome,
    QualityCriterion,
    QualityGateResult,
    StageResult,
)

logger = logging.getLogger(__name__)

DEFAULT_PASS_THRESHOLD = 7.0
DEFAULT_MIN_COMPLETION_RATIO = 0.6
DEFAULT_MAX_STAGE_DURATION_MS = 600_000
MAX_SCORE = 10.0


class QualityGateEvaluator:
    """Scores a stage as ``10 * passed_weight / total_weight``.

    The gate passes only when every required criterion passed and the score
    reaches ``pass_threshold``. A criterion that raises counts as failed.
    """

    def __init__(self, pass_threshold: float = DEFAULT_PASS_THRESHOLD) -> None:
        if not 0 <= pass_threshold <= MAX_SCORE:
            raise ValueError(f"pass_threshold must be within 0..{MAX_SCORE:g}")
        self.pass_threshold = pass_threshold

    async def evaluate(
        self,
        stage_result: StageResult,
        criteria: Sequence[QualityCriterion],
    ) -> QualityGateResult:
        outcomes = await asyncio.gather(
            *(_check_criterion(criterion, stage_result) for criterion in criteria),
        )
        total_weight = sum(outcome.weight for outcome in outcomes)
        passed_weight = sum(outcome.weight for outcome in outcomes if outcome.passed)
        score = MAX_SCORE if total_weight == 0 else MAX_SCORE * passed_weight / total_weight
        required_ok = all(outcome.passed for outcome in outcomes if outcome.required)
        gate = QualityGateResult(
            stage_name=stage_result.stage_name,
            passed=required_ok and score >= self.pass_threshold,
            score=round(score, 1),
            threshold=self.pass_threshold,
            outcomes=tuple(outcomes),
        )
        logger.debug(
            "Gate %s: score=%.1f threshold=%.1f passed=%s failed_required=%s",
            gate.stage_name,
            gate.score,
            gate.threshold,
            gate.passed,
            gate.failed_required,
        )
        return gate


async def _check_criterion(
    criterion: QualityCriterion,
    stage_result: StageResult,
) -> CriterionOutcome:
    try:
        verdict = criterion.check(stage_result)
        if inspect.isawaitable(verdict):
            verdict = await verdict
    except Exception as error:  # noqa: BLE001
        logger.warning(
            "Quality criterion %r raised on stage %s: %s",
            criterion.name,
            stage_result.stage_name,
            error,
        )
        return CriterionOutcome(
            name=criterion.name,
            passed=False,
            required=criterion.required,
            weight=criterion.weight,
            error=str(error) or type(error).__name__,
        )
    return CriterionOutcome(
        name=criterion.name,
        passed=bool(verdict),
        required=criterion.required,
        weight=criterion.weight,
    )


def base_criteria(
    *,
    min_completion_ratio: float = DEFAULT_MIN_COMPLETION_RATIO,
    max_stage_duration_ms: int = DEFAULT_MAX_STAGE_DURATION_MS,
) -> tuple[QualityCriterion, ...]:
    """Criteria applied to every stage before its own extras."""

    def majority_completed(result: StageResult) -> bool:
        total = len(result.task_results)
        return total == 0 or result.completed_count / total >= min_completion_ratio

    def no_stage_errors(result: StageResult) -> bool:
        return not result.errors

    def payloads_present(result: StageResult) -> bool:
        return all(task.payload is not None for task in result.task_results)

    def within_duration(result: StageResult) -> bool:
        return result.duration_ms < max_stage_duration_ms

    return (
        QualityCriterion(
            name="majority_completed",
            check=majority_completed,
            weight=3,
            required=True,
            description=f"At least {min_completion_ratio:.0%} of tasks completed",
        ),
        QualityCriterion(
            name="no_stage_errors",
            check=no_stage_errors,
            weight=2,
            required=True,
            description="No stage-level errors reported",
        ),
        QualityCriterion(
            name="payloads_present",
            check=payloads_present,
            weight=3,
            description="Every task produced a payload",
        ),
        QualityCriterion(
            name="within_duration",
            check=within_duration,
            weight=2,
            description=f"Stage finished in under {max_stage_duration_ms / 1000:.0f}s",
        ),
    )


def required_payload_keys(
    task_type_id: str,
    keys: Iterable[str],
    *,
    weight: float = 4,
    required: bool = False,
    name: str | None = None,
) -> QualityCriterion:
    """Criterion: the task's mapping payload contains every key in ``keys``.

    Passes when the task is absent from the stage or produced no payload;
    missing data is already penalized by the base criteria.
    """

    wanted = tuple(keys)

    def has_keys(result: StageResult) -> bool:
        for task in result.task_results:
            if task.task_type_id != task_type_id or task.payload is None:
                continue
            if not isinstance(task.payload, Mapping):
                return False
            return all(key in task.payload for key in wanted)
        return True

    return QualityCriterion(
        name=name or f"{task_type_id}_payload_keys",
        check=has_keys,
        weight=weight,
        required=required,
        description=f"{task_type_id} payload has keys: {', '.join(wanted)}",
    )
