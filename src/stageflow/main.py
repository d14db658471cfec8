"""CLI entrypoint for stageflow."""

import logging
import os
from pathlib import Path

import rich_click as click

from stageflow import __version__
from stageflow.engine.controllers import ContextShowCommand, DemoCommand, EngineCliController

click.rich_click.USE_MARKDOWN = True
ENGINE_CONTROLLER = EngineCliController()


@click.group()
@click.version_option(version=__version__, prog_name="stageflow")
def stageflow() -> None:
    """Staged task execution engine CLI."""

    logging.basicConfig(
        level=os.getenv("STAGEFLOW_LOG_LEVEL", "WARNING").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@stageflow.command("demo")
@click.option(
    "--checkpoint",
    "checkpoint_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Write the context store here after every recorded stage.",
)
@click.option(
    "--resume",
    is_flag=True,
    default=False,
    help="Load the checkpoint first and skip stages it already holds.",
)
@click.option(
    "--retry-base-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Override the backoff base (STAGEFLOW_RETRY_BASE_SECONDS).",
)
@click.option(
    "--budget-cap-units",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override the cost cap (STAGEFLOW_BUDGET_CAP_UNITS).",
)
@click.option("--quiet", is_flag=True, default=False, help="Print only the final report.")
def demo(
    checkpoint_path: Path | None,
    resume: bool,
    retry_base_seconds: float | None,
    budget_cap_units: float | None,
    quiet: bool,
) -> None:
    """Run a synthetic three-stage pipeline with deterministic failure cases."""

    if resume and checkpoint_path is None:
        raise click.UsageError("--resume requires --checkpoint.")
    try:
        result = ENGINE_CONTROLLER.run_demo(
            DemoCommand(
                checkpoint_path=checkpoint_path,
                resume=resume,
                retry_base_seconds=retry_base_seconds,
                budget_cap_units=budget_cap_units,
                show_progress=not quiet,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Pipeline failed.")


@stageflow.group()
def context() -> None:
    """Context checkpoint commands."""


@context.command("show")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--summary-only", is_flag=True, default=False, help="Skip the rendered snapshot.")
def context_show(path: Path, summary_only: bool) -> None:
    """Render a saved context checkpoint as the next stage would see it."""

    try:
        lines = ENGINE_CONTROLLER.show_context(
            ContextShowCommand(path=path, rendered=not summary_only),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    stageflow()
