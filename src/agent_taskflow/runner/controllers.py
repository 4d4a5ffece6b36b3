"""Controllers for task runner CLI commands."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from agent_taskflow.config import Settings
from agent_taskflow.runner.backend import CliAgentBackend
from agent_taskflow.runner.judge import JudgeClient
from agent_taskflow.runner.models import FinalStatus, Task
from agent_taskflow.runner.queue_store import TaskQueueStore
from agent_taskflow.runner.services import (
    QueueRunService,
    QueueRunSummary,
    init_workspace,
    reset_queue,
)
from agent_taskflow.runner.telemetry import TelemetryClient


@dataclass(slots=True)
class InitCommand:
    """CLI input for workspace scaffolding."""

    root: Path


@dataclass(slots=True)
class QueueRunCommand:
    """CLI input for processing pending tasks."""

    task_file: Path | None
    report_dir: Path | None
    model: str | None
    judge_model: str | None
    retry: int | None
    timeout_minutes: int | None
    passthrough_args: tuple[str, ...] = ()


@dataclass(slots=True)
class QueueResetCommand:
    """CLI input for returning tasks to pending."""

    task_file: Path | None
    errors_only: bool


@dataclass(slots=True)
class QueueStatusCommand:
    """CLI input for listing task states."""

    task_file: Path | None


@dataclass(slots=True)
class RunOutcome:
    """Printable result of a queue run."""

    lines: list[str]
    success: bool


class TaskflowCliController:
    """Coordinates init, run, reset and status CLI operations."""

    def init(self, command: InitCommand) -> list[str]:
        lines: list[str] = []
        for entry in init_workspace(command.root):
            verb = "Created" if entry.created else "Exists, skipped"
            lines.append(f"{verb}: {_display_path(entry.path, command.root)}")
        lines.append("Next: copy .flow/.env.example to .flow/.env and fill in the judge settings.")
        return lines

    def run(self, command: QueueRunCommand) -> RunOutcome:
        settings = Settings.from_env()
        _apply_overrides(settings, command)
        settings.validate_for_run()
        summary = asyncio.run(
            _run_queue(settings=settings, passthrough_args=command.passthrough_args),
        )
        return RunOutcome(lines=_summary_lines(summary), success=summary.errored == 0)

    def reset(self, command: QueueResetCommand) -> list[str]:
        settings = Settings.from_env()
        task_file = command.task_file or settings.task_file
        changed = asyncio.run(
            _reset_queue(
                settings=settings,
                task_file=task_file,
                errors_only=command.errors_only,
            ),
        )
        scope = "error tasks" if command.errors_only else "tasks"
        lines = [f"Reset {len(changed)} {scope} to pending in {task_file}"]
        lines.extend(f"  - {task.name} (id={task.id})" for task in changed)
        return lines

    def status(self, command: QueueStatusCommand) -> list[str]:
        settings = Settings.from_env()
        task_file = command.task_file or settings.task_file
        queue = TaskQueueStore(task_file).load(check_files=False)
        lines = [f"Queue: {task_file} ({len(queue.tasks)} tasks)"]
        for task in queue.tasks:
            line = f"[{task.status_value}] {task.name} (id={task.id})"
            if task.error_message:
                line += f" error={task.error_message}"
            if task.report_path:
                line += f" report={task.report_path}"
            lines.append(line)
        return lines


def _apply_overrides(settings: Settings, command: QueueRunCommand) -> None:
    if command.task_file is not None:
        settings.task_file = command.task_file
    if command.report_dir is not None:
        settings.report_dir = command.report_dir
    if command.model is not None:
        settings.agent.model = command.model
    if command.judge_model is not None:
        settings.judge.model = command.judge_model
    if command.retry is not None:
        settings.agent.retry = command.retry
    if command.timeout_minutes is not None:
        settings.agent.timeout_minutes = command.timeout_minutes


async def _run_queue(*, settings: Settings, passthrough_args: tuple[str, ...]) -> QueueRunSummary:
    backend = CliAgentBackend(
        command=settings.agent.command,
        prompt_arg_max_bytes=settings.agent.prompt_arg_max_bytes,
        stream_partial_output=settings.agent.stream_partial_output,
    )
    telemetry = _telemetry(settings, settings.task_file)
    try:
        async with JudgeClient(
            api_key=settings.judge.api_key,
            base_url=settings.judge.base_url,
            max_excerpt_chars=settings.judge.max_excerpt_chars,
            timeout_seconds=settings.judge.timeout_seconds,
        ) as judge:
            service = QueueRunService(
                store=TaskQueueStore(settings.task_file),
                backend=backend,
                judge=judge,
                settings=settings,
                passthrough_args=passthrough_args,
                telemetry=telemetry,
            )
            return await service.run()
    finally:
        if telemetry is not None:
            await telemetry.aclose()


async def _reset_queue(*, settings: Settings, task_file: Path, errors_only: bool) -> list[Task]:
    telemetry = _telemetry(settings, task_file)
    try:
        return await reset_queue(
            store=TaskQueueStore(task_file),
            errors_only=errors_only,
            telemetry=telemetry,
        )
    finally:
        if telemetry is not None:
            await telemetry.aclose()


def _telemetry(settings: Settings, task_file: Path) -> TelemetryClient | None:
    if not settings.telemetry.active:
        return None
    return TelemetryClient(
        url=settings.telemetry.url,
        api_key=settings.telemetry.api_key,
        queue_file=task_file,
    )


def _summary_lines(summary: QueueRunSummary) -> list[str]:
    lines = [
        "Queue run summary: "
        f"total={summary.total} completed={summary.completed} partial={summary.partial} "
        f"errored={summary.errored} skipped={summary.skipped}",
    ]
    for result in summary.results:
        line = (
            f"[{result.final_status.value}] {result.name} "
            f"(id={result.task_id}, attempts={result.attempts})"
        )
        if result.final_status is FinalStatus.ERROR and result.error_message:
            line += f" error={result.error_message}"
        if result.report_path:
            line += f" report={result.report_path}"
        lines.append(line)
    return lines


def _display_path(path: Path, root: Path) -> str:
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)
