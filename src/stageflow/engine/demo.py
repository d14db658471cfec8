"""Deterministic synthetic work functions for exercising the engine end to end.

Each task type behaves according to its ``demo_case`` param, mirroring the
failure modes a real text-completion resource shows: transient rate-limit
errors, slow responses, chatty JSON and hard permission failures.
"""

from __future__ import annotations

import asyncio
from collections import Counter

from stageflow.engine.models import Criticality, StageSpec, TaskInput, TaskSpec, WorkOutput
from stageflow.engine.payload_parser import require_payload
from stageflow.engine.quality_gate import required_payload_keys
from stageflow.engine.registry import TaskRegistry, TaskStrategy

DEMO_CASES = (
    "success",
    "transient_retry_once",
    "timeout_once",
    "chatty_json",
    "non_retryable_failure",
)
_BASE_COST_UNITS = 1_200
_SLOW_ATTEMPT_SECONDS = 0.5


class DemoBackend:
    """Stateful echo backend; attempt counters make failure cases deterministic."""

    def __init__(self, *, latency_seconds: float = 0.05) -> None:
        self.latency_seconds = latency_seconds
        self.attempts = Counter[str]()

    async def __call__(self, task_input: TaskInput) -> WorkOutput:
        key = f"{task_input.stage_name}/{task_input.task_type_id}"
        self.attempts[key] += 1
        attempt = self.attempts[key]
        case = str(task_input.params.get("demo_case", "success")).strip().lower()
        await asyncio.sleep(self.latency_seconds)

        if case == "timeout_once" and attempt == 1:
            await asyncio.sleep(_SLOW_ATTEMPT_SECONDS)
        if case == "transient_retry_once" and attempt == 1:
            raise RuntimeError("HTTP 429 too many requests, please retry")
        if case == "non_retryable_failure":
            raise PermissionError("permission denied")

        context = task_input.context
        context_entries = len(context.entries) if context is not None else 0
        context_bytes = context.total_bytes if context is not None else 0
        payload = {
            "task_type": task_input.task_type_id,
            "summary": f"Synthetic output for {task_input.task_type_id}",
            "context_entries": context_entries,
            "attempt": attempt,
        }
        if case == "chatty_json":
            payload = require_payload(
                "Sure, here is the result:\n```json\n"
                f'{{"task_type": "{task_input.task_type_id}", "findings": ["a", "b"]}}'
                "\n```\nLet me know if you need more.",
            )
        return WorkOutput(
            payload=payload,
            cost_units=_BASE_COST_UNITS + context_bytes // 4,
            confidence=0.8,
            sources=(f"demo:{task_input.task_type_id}",),
        )


def build_demo_registry(backend: DemoBackend, *, timeout_ms: int = 300) -> TaskRegistry:
    type_ids = (
        "market_overview",
        "competitor_scan",
        "pricing_scan",
        "segmentation",
        "positioning",
        "executive_summary",
        "risk_review",
    )
    return TaskRegistry(
        TaskStrategy(
            spec=TaskSpec(type_id=type_id, max_retries=2, timeout_ms=timeout_ms),
            work_fn=backend,
            required_params=("demo_case",),
        )
        for type_id in type_ids
    )


def build_demo_stages() -> list[StageSpec]:
    return [
        StageSpec(
            name="research",
            task_type_ids=("market_overview", "competitor_scan", "pricing_scan"),
            criticality=Criticality.CRITICAL,
            concurrency_limit=2,
            task_params={
                "market_overview": {"demo_case": "success"},
                "competitor_scan": {"demo_case": "transient_retry_once"},
                "pricing_scan": {"demo_case": "chatty_json"},
            },
        ),
        StageSpec(
            name="analysis",
            task_type_ids=("segmentation", "positioning"),
            criticality=Criticality.CRITICAL,
            concurrency_limit=2,
            task_params={
                "segmentation": {"demo_case": "success"},
                "positioning": {"demo_case": "timeout_once"},
            },
        ),
        StageSpec(
            name="synthesis",
            task_type_ids=("executive_summary", "risk_review"),
            criticality=Criticality.NONCRITICAL,
            concurrency_limit=2,
            quality_criteria=(
                required_payload_keys("executive_summary", ("summary", "context_entries")),
            ),
            task_params={
                "executive_summary": {"demo_case": "success"},
                "risk_review": {"demo_case": "non_retryable_failure"},
            },
        ),
    ]
