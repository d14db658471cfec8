"""Per-task execution envelope: validation, rate limiting, timeout, retry."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from typing import Any

from stageflow.engine.cache import TaskResultCache
from stageflow.engine.errors import TaskTimeoutError, TransientTaskError
from stageflow.engine.failure_classifier import (
    TaskFailureClassification,
    classify_task_failure,
)
from stageflow.engine.models import (
    FailureClass,
    InputValidator,
    TaskInput,
    TaskMetrics,
    TaskResult,
    TaskSpec,
    TaskStatus,
    WorkFn,
    WorkOutput,
)
from stageflow.engine.rate_limiter import RateLimiter
from stageflow.engine.registry import TaskStrategy

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BASE_SECONDS = 1.0


class TaskRunner:
    """Runs one work function with the engine's retry and timeout policy.

    Every attempt first takes a rate-limiter slot and then races the work
    function against ``spec.timeout_ms``. Failed attempts back off
    ``retry_base_seconds * 2**k`` before retry ``k + 1``. Nothing raised by
    the work function escapes :meth:`run`; it is folded into a failed
    :class:`TaskResult` instead.
    """

    def __init__(  # noqa: PLR0913
        self,
        rate_limiter: RateLimiter,
        *,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        stop_on_non_retryable: bool = False,
        cache: TaskResultCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if retry_base_seconds < 0:
            raise ValueError("retry_base_seconds must be >= 0")
        self.rate_limiter = rate_limiter
        self.retry_base_seconds = retry_base_seconds
        self.stop_on_non_retryable = stop_on_non_retryable
        self.cache = cache
        self._sleep = sleep
        self._clock = clock

    def backoff_seconds(self, retry_index: int) -> float:
        """Delay before retry ``retry_index + 1`` (0-based)."""

        return self.retry_base_seconds * (2**retry_index)

    async def run_strategy(self, strategy: TaskStrategy, task_input: TaskInput) -> TaskResult:
        return await self.run(
            strategy.spec,
            strategy.work_fn,
            task_input,
            validate=strategy.validate_input,
        )

    async def run(
        self,
        spec: TaskSpec,
        work_fn: WorkFn,
        task_input: TaskInput,
        *,
        validate: InputValidator | None = None,
    ) -> TaskResult:
        started = self._clock()

        if validate is not None:
            try:
                validate(task_input)
            except Exception as error:  # noqa: BLE001
                message = _error_message(error)
                logger.warning("Task %s rejected input: %s", spec.type_id, message)
                return TaskResult(
                    task_type_id=spec.type_id,
                    status=TaskStatus.FAILED,
                    payload=None,
                    metrics=TaskMetrics(duration_ms=self._elapsed_ms(started)),
                    errors=(f"{FailureClass.VALIDATION.value}: {message}",),
                    failure_class=FailureClass.VALIDATION,
                    attempts=0,
                )

        if self.cache is not None:
            cached = self.cache.get(task_input)
            if cached is not None:
                logger.info("Task %s served from cache", spec.type_id)
                return replace(
                    cached,
                    metrics=replace(
                        cached.metrics,
                        cost_units=0,
                        duration_ms=self._elapsed_ms(started),
                    ),
                    attempts=0,
                    cached=True,
                )

        max_attempts = spec.max_retries + 1
        last_error: BaseException | None = None
        classification: TaskFailureClassification | None = None
        attempts = 0
        for attempt_index in range(max_attempts):
            attempts = attempt_index + 1
            try:
                output = await self._attempt(spec, work_fn, task_input)
            except Exception as error:  # noqa: BLE001
                last_error = error
                classification = classify_task_failure(task_type=spec.type_id, error=error)
                logger.warning(
                    "Task %s attempt %d/%d failed (%s): %s",
                    spec.type_id,
                    attempts,
                    max_attempts,
                    classification.failure_class.value,
                    _error_message(error),
                )
                if self.stop_on_non_retryable and not classification.retryable:
                    break
                if attempt_index < spec.max_retries:
                    await self._sleep(self.backoff_seconds(attempt_index))
                continue

            result = TaskResult(
                task_type_id=spec.type_id,
                status=TaskStatus.COMPLETED,
                payload=output.payload,
                metrics=TaskMetrics(
                    cost_units=output.cost_units,
                    duration_ms=self._elapsed_ms(started),
                    confidence=output.confidence,
                    sources=output.sources,
                ),
                attempts=attempts,
            )
            logger.info(
                "Task %s completed in %dms (attempt %d/%d, %s units)",
                spec.type_id,
                result.metrics.duration_ms,
                attempts,
                max_attempts,
                f"{output.cost_units:,.0f}",
            )
            if self.cache is not None:
                self.cache.put(task_input, result)
            return result

        if last_error is None or classification is None:
            raise RuntimeError("Retry loop finished without an attempt error.")
        return TaskResult(
            task_type_id=spec.type_id,
            status=TaskStatus.FAILED,
            payload=None,
            metrics=TaskMetrics(duration_ms=self._elapsed_ms(started)),
            errors=(classification.tag(_error_message(last_error)),),
            failure_class=classification.failure_class,
            attempts=attempts,
        )

    async def _attempt(self, spec: TaskSpec, work_fn: WorkFn, task_input: TaskInput) -> WorkOutput:
        await self.rate_limiter.wait_for_slot()
        deadline = asyncio.timeout(spec.timeout_ms / 1000)
        try:
            async with deadline:
                raw = await work_fn(task_input)
        except TimeoutError as error:
            if not deadline.expired():
                raise
            raise TaskTimeoutError(spec.type_id, spec.timeout_ms) from error
        return coerce_work_output(raw)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)


def coerce_work_output(raw: WorkOutput | Mapping[str, Any]) -> WorkOutput:
    """Normalize a work function's return value; malformed values fail the attempt."""

    if isinstance(raw, WorkOutput):
        output = raw
    elif isinstance(raw, Mapping) and "payload" in raw:
        sources = raw.get("sources") or ()
        if isinstance(sources, str) or not all(isinstance(item, str) for item in sources):
            raise TransientTaskError(f"Malformed work output sources: {sources!r}")
        output = WorkOutput(
            payload=raw["payload"],
            cost_units=raw.get("cost_units", 0) or 0,
            confidence=raw.get("confidence"),
            sources=tuple(sources),
        )
    else:
        raise TransientTaskError(f"Malformed work output: {type(raw).__name__}")

    if (
        isinstance(output.cost_units, bool)
        or not isinstance(output.cost_units, int | float)
        or not math.isfinite(output.cost_units)
        or output.cost_units < 0
    ):
        raise TransientTaskError(f"Malformed work output cost_units: {output.cost_units!r}")
    if output.confidence is not None and not 0 <= output.confidence <= 1:
        raise TransientTaskError(f"Malformed work output confidence: {output.confidence!r}")
    return output


def _error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or type(error).__name__
