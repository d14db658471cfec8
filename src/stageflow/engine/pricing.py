"""Cost-unit to money conversion for run reporting."""

from __future__ import annotations

import os
from collections.abc import Iterable

from stageflow.engine.models import TaskResult

PRICING_ENV_VAR = "STAGEFLOW_COST_PRICING"


def estimate_cost_usd(
    *,
    task_type: str,
    cost_units: float,
    raw_pricing: str | None = None,
) -> float | None:
    """Estimate USD cost of ``cost_units`` consumed by one task type."""

    rate = _lookup_rate(task_type=task_type, raw_pricing=raw_pricing)
    if rate is None:
        return None
    return (cost_units / 1_000_000) * rate


def estimate_results_cost_usd(
    results: Iterable[TaskResult],
    *,
    raw_pricing: str | None = None,
) -> float | None:
    """Sum per-task estimates; None when no task type has a configured rate."""

    total: float | None = None
    for result in results:
        cost = estimate_cost_usd(
            task_type=result.task_type_id,
            cost_units=result.metrics.cost_units,
            raw_pricing=raw_pricing,
        )
        if cost is None:
            continue
        total = (total or 0.0) + cost
    return total


def _lookup_rate(*, task_type: str, raw_pricing: str | None) -> float | None:
    if raw_pricing is None:
        raw_pricing = os.getenv(PRICING_ENV_VAR, "")
    mapping = _parse_pricing_mapping(raw_pricing)
    direct = mapping.get(task_type.strip().lower())
    if direct is not None:
        return direct
    return mapping.get("*")


def _parse_pricing_mapping(raw: str) -> dict[str, float]:
    """Parse `STAGEFLOW_COST_PRICING` mapping.

    Format:
    - `task_type:usd_per_1m_units`
    - multiple entries separated by `,`
    - `*` matches any task type without its own entry
    - malformed or negative rows are skipped
    """

    parsed: dict[str, float] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 2:
            continue
        task_type, rate_raw = parts
        try:
            rate = float(rate_raw)
        except ValueError:
            continue
        if rate < 0:
            continue
        parsed[task_type.lower()] = rate
    return parsed
