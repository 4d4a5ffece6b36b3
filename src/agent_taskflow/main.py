"""CLI entrypoint for agent-taskflow."""

import logging
from pathlib import Path

import rich_click as click

from agent_taskflow import __version__
from agent_taskflow.runner.controllers import (
    InitCommand,
    QueueResetCommand,
    QueueRunCommand,
    QueueStatusCommand,
    TaskflowCliController,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskflowCliController()
LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="agent-taskflow")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def agent_taskflow(verbose: bool) -> None:
    """Run coding-agent task queues until each task is **done**."""

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


@agent_taskflow.command("init")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Project directory that receives the `.flow` layout.",
)
def init_command(root: Path) -> None:
    """Create `.flow/`, the report directory, `.env.example` and a sample `task.json`."""

    _emit_lines(CONTROLLER.init(InitCommand(root=root)))


@agent_taskflow.command(
    "run",
    context_settings={"ignore_unknown_options": True},
)
@click.option("--task-file", type=click.Path(path_type=Path), default=None, help="Queue file.")
@click.option(
    "--report-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for per-task Markdown reports.",
)
@click.option("--model", default=None, help="Agent model name.")
@click.option("--judge-model", default=None, help="Model used to judge completion.")
@click.option(
    "--retry",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum attempts per task (initial run plus resumes).",
)
@click.option(
    "--timeout",
    "timeout_minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Per-invocation timeout in minutes.",
)
@click.argument("agent_args", nargs=-1, type=click.UNPROCESSED)
def run_command(  # noqa: PLR0913
    task_file: Path | None,
    report_dir: Path | None,
    model: str | None,
    judge_model: str | None,
    retry: int | None,
    timeout_minutes: int | None,
    agent_args: tuple[str, ...],
) -> None:
    """Process every pending task. Arguments after `--` are passed to the agent."""

    try:
        outcome = CONTROLLER.run(
            QueueRunCommand(
                task_file=task_file,
                report_dir=report_dir,
                model=model,
                judge_model=judge_model,
                retry=retry,
                timeout_minutes=timeout_minutes,
                passthrough_args=agent_args,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException("Some tasks ended with errors.")


@agent_taskflow.command("reset")
@click.option("--task-file", type=click.Path(path_type=Path), default=None, help="Queue file.")
@click.option(
    "--errors-only",
    is_flag=True,
    help="Only reset tasks whose status is `error`.",
)
def reset_command(task_file: Path | None, errors_only: bool) -> None:
    """Set tasks back to `pending`, clearing error messages and report paths."""

    try:
        lines = CONTROLLER.reset(QueueResetCommand(task_file=task_file, errors_only=errors_only))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_taskflow.command("status")
@click.option("--task-file", type=click.Path(path_type=Path), default=None, help="Queue file.")
def status_command(task_file: Path | None) -> None:
    """List tasks with their status, error message and report path."""

    try:
        lines = CONTROLLER.status(QueueStatusCommand(task_file=task_file))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_taskflow()
