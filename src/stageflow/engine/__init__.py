"""Staged task execution engine.

Why not Prefect / Celery?
~~~~~~~~~~~~~~~~~~~~~~~~~
The engine runs a handful of stages against one expensive external
resource inside a single process. What it has to get right is the policy
around each call, not distribution:

- Per-attempt timeout and exponential backoff with failure classification.
- A shared sliding-window rate limiter across all concurrent tasks.
- Barrier batches inside a stage and strict ordering between stages.
- A hard cost cap checked at stage boundaries.
- Weighted quality gates that decide between abort and degraded continue.
- Size-capped context handed from earlier stages to later ones.

All of that is plain asyncio plus a few dataclasses; a broker would add an
operational dependency without removing any of the above.
"""

from stageflow.engine.budget import BudgetTracker
from stageflow.engine.context_store import ContextSnapshot, ContextStore
from stageflow.engine.models import (
    Criticality,
    PipelineRun,
    QualityCriterion,
    RunStatus,
    StageSpec,
    TaskInput,
    TaskSpec,
    WorkOutput,
)
from stageflow.engine.pipeline import PipelineEngine
from stageflow.engine.quality_gate import QualityGateEvaluator, base_criteria
from stageflow.engine.rate_limiter import RateLimiter
from stageflow.engine.registry import TaskRegistry, TaskStrategy
from stageflow.engine.task_runner import TaskRunner

__all__ = [
    "BudgetTracker",
    "ContextSnapshot",
    "ContextStore",
    "Criticality",
    "PipelineEngine",
    "PipelineRun",
    "QualityCriterion",
    "QualityGateEvaluator",
    "RateLimiter",
    "RunStatus",
    "StageSpec",
    "TaskInput",
    "TaskRegistry",
    "TaskRunner",
    "TaskSpec",
    "TaskStrategy",
    "WorkOutput",
    "base_criteria",
]
