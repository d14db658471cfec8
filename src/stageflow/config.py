"""Runtime configuration for the staged execution engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from stageflow.engine.context_store import MIN_PER_ENTRY_MAX_BYTES, SNAPSHOT_OVERHEAD_BYTES

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(slots=True)
class RateLimitSettings:
    """Sliding-window limit on calls to the external resource."""

    max_requests: int = 50
    window_seconds: float = 60.0


@dataclass(slots=True)
class RetrySettings:
    """Per-attempt retry policy shared by all task types."""

    retry_base_seconds: float = 1.0
    stop_on_non_retryable: bool = False


@dataclass(slots=True)
class BudgetSettings:
    """Hard cost cap and warning threshold."""

    cap_units: float = 500_000
    warning_ratio: float = 0.8


@dataclass(slots=True)
class ContextSettings:
    """Byte caps for context handed between stages."""

    per_entry_max_bytes: int = 5_000
    aggregate_max_bytes: int = 20_000


@dataclass(slots=True)
class QualitySettings:
    """Quality gate threshold and base-criteria tunables."""

    pass_threshold: float = 7.0
    min_completion_ratio: float = 0.6
    max_stage_duration_ms: int = 600_000


@dataclass(slots=True)
class CacheSettings:
    """Optional in-memory result cache."""

    enabled: bool = False
    ttl_seconds: float = 3_600


@dataclass(slots=True)
class Settings:
    """Application settings grouped by engine concern."""

    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    checkpoint_path: Path | None = None
    cost_pricing: str = ""
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, checkpoint_path: Path | None = None) -> Settings:
        """Load settings from ``STAGEFLOW_*`` environment variables."""

        raw_checkpoint = os.getenv("STAGEFLOW_CHECKPOINT_PATH", "").strip()
        return cls(
            rate_limit=RateLimitSettings(
                max_requests=int(os.getenv("STAGEFLOW_RATE_LIMIT_MAX_REQUESTS", "50")),
                window_seconds=float(os.getenv("STAGEFLOW_RATE_LIMIT_WINDOW_SECONDS", "60")),
            ),
            retry=RetrySettings(
                retry_base_seconds=float(os.getenv("STAGEFLOW_RETRY_BASE_SECONDS", "1.0")),
                stop_on_non_retryable=_env_bool(
                    "STAGEFLOW_RETRY_STOP_ON_NON_RETRYABLE",
                    default=False,
                ),
            ),
            budget=BudgetSettings(
                cap_units=float(os.getenv("STAGEFLOW_BUDGET_CAP_UNITS", "500000")),
                warning_ratio=float(os.getenv("STAGEFLOW_BUDGET_WARNING_RATIO", "0.8")),
            ),
            context=ContextSettings(
                per_entry_max_bytes=int(
                    os.getenv("STAGEFLOW_CONTEXT_PER_ENTRY_MAX_BYTES", "5000"),
                ),
                aggregate_max_bytes=int(
                    os.getenv("STAGEFLOW_CONTEXT_AGGREGATE_MAX_BYTES", "20000"),
                ),
            ),
            quality=QualitySettings(
                pass_threshold=float(os.getenv("STAGEFLOW_QUALITY_PASS_THRESHOLD", "7.0")),
                min_completion_ratio=float(
                    os.getenv("STAGEFLOW_QUALITY_MIN_COMPLETION_RATIO", "0.6"),
                ),
                max_stage_duration_ms=int(
                    os.getenv("STAGEFLOW_QUALITY_MAX_STAGE_DURATION_MS", "600000"),
                ),
            ),
            cache=CacheSettings(
                enabled=_env_bool("STAGEFLOW_CACHE_ENABLED", default=False),
                ttl_seconds=float(os.getenv("STAGEFLOW_CACHE_TTL_SECONDS", "3600")),
            ),
            checkpoint_path=checkpoint_path or (Path(raw_checkpoint) if raw_checkpoint else None),
            cost_pricing=os.getenv("STAGEFLOW_COST_PRICING", ""),
            log_level=os.getenv("STAGEFLOW_LOG_LEVEL", "WARNING").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.rate_limit.max_requests <= 0:
            raise ValueError("STAGEFLOW_RATE_LIMIT_MAX_REQUESTS must be > 0.")
        if self.rate_limit.window_seconds <= 0:
            raise ValueError("STAGEFLOW_RATE_LIMIT_WINDOW_SECONDS must be > 0.")
        if self.retry.retry_base_seconds < 0:
            raise ValueError("STAGEFLOW_RETRY_BASE_SECONDS must be >= 0.")
        if self.budget.cap_units <= 0:
            raise ValueError("STAGEFLOW_BUDGET_CAP_UNITS must be > 0.")
        if not 0 < self.budget.warning_ratio <= 1:
            raise ValueError("STAGEFLOW_BUDGET_WARNING_RATIO must be within (0, 1].")
        if self.context.per_entry_max_bytes < MIN_PER_ENTRY_MAX_BYTES:
            raise ValueError(
                f"STAGEFLOW_CONTEXT_PER_ENTRY_MAX_BYTES must be >= {MIN_PER_ENTRY_MAX_BYTES}.",
            )
        if (
            self.context.aggregate_max_bytes
            < self.context.per_entry_max_bytes + SNAPSHOT_OVERHEAD_BYTES
        ):
            raise ValueError(
                "STAGEFLOW_CONTEXT_AGGREGATE_MAX_BYTES must be >= "
                f"STAGEFLOW_CONTEXT_PER_ENTRY_MAX_BYTES + {SNAPSHOT_OVERHEAD_BYTES}.",
            )
        if not 0 <= self.quality.pass_threshold <= 10:
            raise ValueError("STAGEFLOW_QUALITY_PASS_THRESHOLD must be within [0, 10].")
        if not 0 <= self.quality.min_completion_ratio <= 1:
            raise ValueError("STAGEFLOW_QUALITY_MIN_COMPLETION_RATIO must be within [0, 1].")
        if self.quality.max_stage_duration_ms <= 0:
            raise ValueError("STAGEFLOW_QUALITY_MAX_STAGE_DURATION_MS must be > 0.")
        if self.cache.ttl_seconds <= 0:
            raise ValueError("STAGEFLOW_CACHE_TTL_SECONDS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"STAGEFLOW_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}: "
                f"{self.log_level!r}",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
