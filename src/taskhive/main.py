"""CLI entrypoint for taskhive."""

import logging
from pathlib import Path

import rich_click as click
from rich.console import Console
from rich.logging import RichHandler

from taskhive import __version__
from taskhive.config import Settings
from taskhive.scheduler.controllers import (
    RunPlanCommand,
    SchedulerCliController,
    ValidatePlanCommand,
)

click.rich_click.USE_MARKDOWN = True
SCHEDULER_CONTROLLER = SchedulerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="taskhive")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Diagnostics level; defaults to `TASKHIVE_LOG_LEVEL` or WARNING.",
)
def taskhive(log_level: str | None) -> None:
    """Hierarchical task delegation scheduler.

    Runs a plan (one goal split into 3-7 tasks) through bounded-concurrency
    delegation queues and prints one consolidated report.
    """

    _configure_logging(log_level)


@taskhive.command("run")
@click.argument("plan_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Report output format.",
)
@click.option(
    "--events/--no-events",
    "include_events",
    default=False,
    show_default=True,
    help="Include the per-task event trail in the report.",
)
def run_plan(plan_path: Path, output_format: str, include_events: bool) -> None:  # noqa: FBT001
    """Run a plan file to completion and print the consolidated report.

    Exits non-zero when any task ended blocked or cancelled.
    """

    try:
        result = SCHEDULER_CONTROLLER.run_plan(
            RunPlanCommand(
                plan_path=plan_path,
                output_format=output_format,
                include_events=include_events,
            ),
        )
    except (ValueError, TypeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"Plan finished with status={result.report.status.value}.")


@taskhive.command("validate")
@click.argument("plan_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def validate_plan(plan_path: Path) -> None:
    """Check a plan file's structure and decomposition without dispatching."""

    try:
        lines = SCHEDULER_CONTROLLER.validate_plan(ValidatePlanCommand(plan_path=plan_path))
    except (ValueError, TypeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@taskhive.command("config")
def show_config() -> None:
    """Print effective settings resolved from `TASKHIVE_*` environment variables."""

    try:
        lines = SCHEDULER_CONTROLLER.show_config()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _configure_logging(log_level: str | None) -> None:
    if log_level is None:
        try:
            log_level = Settings.from_env().log_level
        except ValueError:
            log_level = "WARNING"
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskhive()
