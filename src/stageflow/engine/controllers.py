"""Controllers for engine CLI commands."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from stageflow.config import Settings
from stageflow.engine.context_store import ContextStore
from stageflow.engine.demo import DemoBackend, build_demo_registry, build_demo_stages
from stageflow.engine.metrics import build_run_metrics, render_run_lines
from stageflow.engine.models import RunStatus
from stageflow.engine.pipeline import PipelineEngine


@dataclass(slots=True)
class DemoCommand:
    """CLI input for the synthetic demo pipeline."""

    checkpoint_path: Path | None = None
    resume: bool = False
    retry_base_seconds: float | None = None
    budget_cap_units: float | None = None
    show_progress: bool = True


@dataclass(slots=True)
class DemoResult:
    """Demo outcome: report lines plus the overall run status."""

    status: RunStatus
    lines: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status != RunStatus.FAILED


@dataclass(slots=True)
class ContextShowCommand:
    """CLI input for rendering a saved context checkpoint."""

    path: Path
    rendered: bool = True


class EngineCliController:
    """Builds engines from settings and turns their results into CLI lines."""

    def run_demo(self, command: DemoCommand) -> DemoResult:
        settings = Settings.from_env(checkpoint_path=command.checkpoint_path)
        if command.retry_base_seconds is not None:
            settings.retry.retry_base_seconds = command.retry_base_seconds
        if command.budget_cap_units is not None:
            settings.budget.cap_units = command.budget_cap_units
        settings.validate()

        progress: list[str] = []
        engine = PipelineEngine.from_settings(
            settings,
            build_demo_registry(DemoBackend()),
            resume=command.resume,
            on_progress=progress.append if command.show_progress else None,
        )
        run = asyncio.run(engine.orchestrate(build_demo_stages()))

        lines = [*progress]
        if progress:
            lines.append("")
        lines.extend(render_run_lines(run, build_run_metrics(run)))
        if settings.checkpoint_path is not None:
            lines.append(f"Checkpoint: {settings.checkpoint_path}")
        return DemoResult(status=run.overall_status, lines=lines)

    def show_context(self, command: ContextShowCommand) -> list[str]:
        settings = Settings.from_env()
        settings.validate()
        if not command.path.exists():
            raise ValueError(f"Context checkpoint not found: {command.path}")

        store = ContextStore(
            per_entry_max_bytes=settings.context.per_entry_max_bytes,
            aggregate_max_bytes=settings.context.aggregate_max_bytes,
        )
        store.load(command.path)
        summary = store.summary()
        lines = [
            f"Context checkpoint: {command.path}",
            (
                f"Stages: {summary.stages} entries={summary.entries} "
                f"stored_bytes={summary.stored_bytes} truncated={summary.truncated_entries}"
            ),
        ]
        for stage_name in store.stage_names():
            lines.append(f"  {stage_name}")
        if command.rendered:
            snapshot = store.snapshot()
            lines.append("")
            lines.extend((snapshot.render() or "(empty)").splitlines())
        return lines
