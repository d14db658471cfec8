"""Domain models for staged task execution."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stageflow.engine.budget import BudgetSnapshot
    from stageflow.engine.context_store import ContextSnapshot


class TaskStatus(str, Enum):
    """Terminal task outcomes."""

    COMPLETED = "completed"
    FAILED = "failed"


class StageStatus(str, Enum):
    """Terminal stage outcomes."""

    COMPLETED = "completed"
    FAILED = "failed"


class Criticality(str, Enum):
    """Whether a stage's gate failure aborts the whole pipeline."""

    CRITICAL = "critical"
    NONCRITICAL = "noncritical"


class RunStatus(str, Enum):
    """Overall pipeline outcome."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used for error tags and retry policy."""

    VALIDATION = "validation"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    OUTPUT_INVALID = "output_invalid"
    TRANSIENT = "transient"


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """Declarative per-type execution limits."""

    type_id: str
    max_retries: int = 3
    timeout_ms: int = 120_000

    def __post_init__(self) -> None:
        if not self.type_id.strip():
            raise ValueError("TaskSpec.type_id must be non-empty.")
        if self.max_retries < 0:
            raise ValueError(f"TaskSpec.max_retries must be >= 0: {self.type_id!r}")
        if self.timeout_ms <= 0:
            raise ValueError(f"TaskSpec.timeout_ms must be > 0: {self.type_id!r}")


@dataclass(frozen=True, slots=True)
class TaskInput:
    """Everything a work function receives for one task execution."""

    task_type_id: str
    stage_name: str
    context: ContextSnapshot | None = None
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class WorkOutput:
    """Value returned by a work function on success."""

    payload: Any
    cost_units: float = 0
    confidence: float | None = None
    sources: tuple[str, ...] = ()


WorkFn = Callable[[TaskInput], Awaitable[WorkOutput | Mapping[str, Any]]]
InputValidator = Callable[[TaskInput], None]


@dataclass(frozen=True, slots=True)
class TaskMetrics:
    """Cost and timing telemetry for one task execution."""

    cost_units: float = 0
    duration_ms: int = 0
    confidence: float | None = None
    sources: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Outcome of one task execution; created once and never mutated."""

    task_type_id: str
    status: TaskStatus
    payload: Any
    metrics: TaskMetrics
    errors: tuple[str, ...] = ()
    failure_class: FailureClass | None = None
    attempts: int = 0
    cached: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED


@dataclass(slots=True)
class StageResult:
    """Aggregated outcome of one stage, task results in scheduling order."""

    stage_name: str
    status: StageStatus
    task_results: list[TaskResult]
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    errors: list[str] = field(default_factory=list)

    @property
    def cost_units(self) -> float:
        return sum(result.metrics.cost_units for result in self.task_results)

    @property
    def completed_count(self) -> int:
        return sum(1 for result in self.task_results if result.succeeded)


CriterionCheck = Callable[[StageResult], bool | Awaitable[bool]]


@dataclass(frozen=True, slots=True)
class QualityCriterion:
    """Weighted predicate over a stage result."""

    name: str
    check: CriterionCheck
    weight: float = 1.0
    required: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        if self.weight <= 0:
            raise ValueError(f"Quality criterion weight must be > 0: {self.name!r}")


@dataclass(frozen=True, slots=True)
class StageSpec:
    """Declarative stage definition supplied by the caller."""

    name: str
    task_type_ids: tuple[str, ...]
    criticality: Criticality = Criticality.NONCRITICAL
    concurrency_limit: int = 5
    quality_criteria: tuple[QualityCriterion, ...] = ()
    task_params: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("StageSpec.name must be non-empty.")
        if self.concurrency_limit <= 0:
            raise ValueError(f"StageSpec.concurrency_limit must be > 0: {self.name!r}")
        if len(set(self.task_type_ids)) != len(self.task_type_ids):
            raise ValueError(f"StageSpec.task_type_ids must be unique: {self.name!r}")

    @property
    def is_critical(self) -> bool:
        return self.criticality == Criticality.CRITICAL


@dataclass(frozen=True, slots=True)
class CriterionOutcome:
    """One criterion's evaluation inside a gate result."""

    name: str
    passed: bool
    required: bool
    weight: float
    error: str | None = None


@dataclass(frozen=True, slots=True)
class QualityGateResult:
    """Gate verdict for one stage."""

    stage_name: str
    passed: bool
    score: float
    threshold: float
    outcomes: tuple[CriterionOutcome, ...] = ()

    @property
    def failed_required(self) -> list[str]:
        return [
            outcome.name for outcome in self.outcomes if outcome.required and not outcome.passed
        ]


@dataclass(slots=True)
class PipelineRun:
    """Complete record of one orchestrated run."""

    stage_results: list[StageResult]
    overall_status: RunStatus
    total_cost_units: float
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    errors: list[str] = field(default_factory=list)
    gate_results: dict[str, QualityGateResult] = field(default_factory=dict)
    skipped_stages: list[str] = field(default_factory=list)
    aborted_stage: str | None = None
    estimated_cost_usd: float | None = None
    budget: BudgetSnapshot | None = None
