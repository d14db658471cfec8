"""Error taxonomy for task, stage and pipeline failures."""

from __future__ import annotations


class StageflowError(RuntimeError):
    """Base class for engine errors."""


class ValidationError(StageflowError):
    """Task input rejected before any attempt; never retried."""


class TransientTaskError(StageflowError):
    """Work-function attempt failure; retried up to the configured limit."""


class TaskTimeoutError(TransientTaskError):
    """Attempt exceeded its time budget."""

    def __init__(self, task_type_id: str, timeout_ms: int) -> None:
        super().__init__(f"Task {task_type_id} timed out after {timeout_ms}ms")
        self.task_type_id = task_type_id
        self.timeout_ms = timeout_ms


class BudgetExceededError(StageflowError):
    """Cumulative cost units went over the configured cap."""

    def __init__(self, *, used_units: float, cap_units: float, stage_name: str) -> None:
        super().__init__(
            f"Budget exceeded after stage {stage_name}: "
            f"{used_units:,.0f} units used (limit: {cap_units:,.0f})",
        )
        self.used_units = used_units
        self.cap_units = cap_units
        self.stage_name = stage_name


class QualityGateFailure(StageflowError):
    """A stage scored below the gate; fatal only for critical stages."""

    def __init__(self, *, stage_name: str, score: float, threshold: float) -> None:
        super().__init__(
            f"Critical stage {stage_name} failed quality gate "
            f"(score {score:.1f}/10, threshold {threshold:.1f})",
        )
        self.stage_name = stage_name
        self.score = score
        self.threshold = threshold


class UnknownTaskTypeError(StageflowError, KeyError):
    """Stage references a task type missing from the registry."""

    def __init__(self, task_type_id: str) -> None:
        super().__init__(f"Unknown task type: {task_type_id!r}")
        self.task_type_id = task_type_id

    def __str__(self) -> str:
        return str(self.args[0])


class ContextConflictError(StageflowError, ValueError):
    """Attempt to overwrite an existing (stage, task type) context entry."""
