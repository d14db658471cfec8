"""Batch-barrier execution of one stage's tasks."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from stageflow.engine.context_store import ContextSnapshot
from stageflow.engine.models import (
    FailureClass,
    StageResult,
    StageSpec,
    StageStatus,
    TaskInput,
    TaskMetrics,
    TaskResult,
    TaskStatus,
)
from stageflow.engine.registry import TaskStrategy
from stageflow.engine.task_runner import TaskRunner

logger = logging.getLogger(__name__)


def split_batches(items: Sequence[TaskStrategy], size: int) -> list[list[TaskStrategy]]:
    """Consecutive slices of ``size``; the last batch may be shorter."""

    if size <= 0:
        raise ValueError("Batch size must be positive.")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


class StageRunner:
    """Runs a stage in fixed-size batches, each awaited to full settlement.

    Batch ``i + 1`` never starts before every task of batch ``i`` has
    finished, successfully or not. Results keep scheduling order.
    """

    def __init__(
        self,
        task_runner: TaskRunner,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.task_runner = task_runner
        self._on_progress = on_progress or (lambda _msg: None)

    async def run(
        self,
        stage_spec: StageSpec,
        tasks: Sequence[TaskStrategy],
        context: ContextSnapshot | None,
    ) -> StageResult:
        started_at = datetime.now(tz=UTC)
        started = time.monotonic()
        batches = split_batches(tasks, stage_spec.concurrency_limit)
        self._emit(
            f"[{stage_spec.name}] {len(tasks)} tasks in {len(batches)} batch(es) "
            f"of up to {stage_spec.concurrency_limit}",
        )

        task_results: list[TaskResult] = []
        for batch_no, batch in enumerate(batches, start=1):
            logger.debug(
                "Stage %s batch %d/%d: %s",
                stage_spec.name,
                batch_no,
                len(batches),
                [strategy.type_id for strategy in batch],
            )
            settled = await asyncio.gather(
                *(self._run_task(stage_spec, strategy, context) for strategy in batch),
                return_exceptions=True,
            )
            for strategy, outcome in zip(batch, settled, strict=True):
                result = (
                    outcome
                    if isinstance(outcome, TaskResult)
                    else _escaped_error_result(strategy, outcome)
                )
                task_results.append(result)
                self._report_task(stage_spec.name, result)

        status = (
            StageStatus.FAILED
            if any(not result.succeeded for result in task_results)
            else StageStatus.COMPLETED
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        self._emit(
            f"[{stage_spec.name}] {status.value}: "
            f"{sum(1 for result in task_results if result.succeeded)}/{len(task_results)} "
            f"tasks completed in {duration_ms / 1000:.1f}s",
        )
        return StageResult(
            stage_name=stage_spec.name,
            status=status,
            task_results=task_results,
            started_at=started_at,
            completed_at=datetime.now(tz=UTC),
            duration_ms=duration_ms,
        )

    async def _run_task(
        self,
        stage_spec: StageSpec,
        strategy: TaskStrategy,
        context: ContextSnapshot | None,
    ) -> TaskResult:
        task_input = TaskInput(
            task_type_id=strategy.type_id,
            stage_name=stage_spec.name,
            context=context,
            params=dict(stage_spec.task_params.get(strategy.type_id, {})),
        )
        return await self.task_runner.run_strategy(strategy, task_input)

    def _report_task(self, stage_name: str, result: TaskResult) -> None:
        if result.succeeded:
            suffix = " (cached)" if result.cached else ""
            self._emit(f"  [{stage_name}] ok {result.task_type_id}{suffix}")
        else:
            reason = result.errors[0] if result.errors else "failed"
            self._emit(f"  [{stage_name}] FAILED {result.task_type_id} - {reason}")

    def _emit(self, msg: str) -> None:
        logger.info(msg)
        self._on_progress(msg)


def _escaped_error_result(strategy: TaskStrategy, error: BaseException) -> TaskResult:
    if isinstance(error, asyncio.CancelledError):
        raise error
    logger.error(
        "Task %s raised outside the task envelope",
        strategy.type_id,
        exc_info=(type(error), error, error.__traceback__),
    )
    message = str(error).strip() or type(error).__name__
    return TaskResult(
        task_type_id=strategy.type_id,
        status=TaskStatus.FAILED,
        payload=None,
        metrics=TaskMetrics(),
        errors=(f"{FailureClass.TRANSIENT.value}: {message}",),
        failure_class=FailureClass.TRANSIENT,
    )
