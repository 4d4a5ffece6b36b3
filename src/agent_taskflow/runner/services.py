"""Use-case services: queue runs, resets and workspace scaffolding."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from agent_taskflow.config import Settings
from agent_taskflow.runner.backend.base import AgentBackend
from agent_taskflow.runner.controller import Judge, RetryController, utc_now
from agent_taskflow.runner.models import ExecutionReport, FinalStatus, Task, TaskQueue, TaskStatus
from agent_taskflow.runner.prompts import build_task_prompt
from agent_taskflow.runner.queue_store import TaskQueueStore
from agent_taskflow.runner.report import ReportContext, write_report
from agent_taskflow.runner.sanitization import short_error_message
from agent_taskflow.runner.telemetry import NullTelemetry, TelemetrySink

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TaskRunResult:
    """Outcome of one task within a queue run."""

    task_id: str
    name: str
    status: TaskStatus
    final_status: FinalStatus
    attempts: int
    error_message: str | None
    report_path: str | None


@dataclass(slots=True)
class QueueRunSummary:
    """Counts for one pass over the queue."""

    total: int = 0
    completed: int = 0
    partial: int = 0
    errored: int = 0
    skipped: int = 0
    results: list[TaskRunResult] = field(default_factory=list)


class QueueRunService:
    """Run every pending task of a queue, one after another."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskQueueStore,
        backend: AgentBackend,
        judge: Judge,
        settings: Settings,
        passthrough_args: Sequence[str] = (),
        telemetry: TelemetrySink | None = None,
    ) -> None:
        if settings.judge.model is None:
            raise ValueError("Judge model is required.")
        self.store = store
        self.backend = backend
        self.judge = judge
        self.settings = settings
        self.judge_model = settings.judge.model
        self.passthrough_args = tuple(passthrough_args)
        self.telemetry: TelemetrySink = telemetry or NullTelemetry()

    async def run(self) -> QueueRunSummary:
        """Validate the whole queue, then process pending tasks sequentially."""

        queue = self.store.load()
        summary = QueueRunSummary(total=len(queue.tasks))
        await self.telemetry.submit_queue(queue)

        for task in queue.tasks:
            if task.status != TaskStatus.PENDING:
                if task.status not in (TaskStatus.DONE, TaskStatus.ERROR):
                    logger.warning(
                        "Skipping task %s with unknown status %r",
                        task.name,
                        task.status_value,
                    )
                else:
                    logger.info("Skipping task %s (%s)", task.name, task.status_value)
                summary.skipped += 1
                continue

            result = await self._run_task(queue, task)
            summary.results.append(result)
            if result.final_status is FinalStatus.DONE:
                summary.completed += 1
            elif result.final_status is FinalStatus.PARTIAL:
                summary.partial += 1
            else:
                summary.errored += 1

        logger.info(
            "Queue run finished: completed=%s partial=%s errored=%s skipped=%s",
            summary.completed,
            summary.partial,
            summary.errored,
            summary.skipped,
        )
        return summary

    async def _run_task(self, queue: TaskQueue, task: Task) -> TaskRunResult:
        logger.info("Running task %s (id=%s)", task.name, task.id)
        try:
            prompt = build_task_prompt(
                shared_prompt_files=queue.prompts,
                spec_files=task.spec_files,
                task_prompt=task.prompt,
                base_dir=self.store.base_dir,
            )
            controller = RetryController(
                backend=self.backend,
                judge=self.judge,
                model=self.settings.agent.model,
                judge_model=self.judge_model,
                retry_ceiling=self.settings.agent.retry,
                timeout_seconds=self.settings.agent.timeout_minutes * 60,
                passthrough_args=self.passthrough_args,
                telemetry=self.telemetry,
            )
            report = await controller.execute(prompt=prompt, task_id=task.id)
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s failed before any attempt completed", task.name)
            now = utc_now()
            report = ExecutionReport(
                success=False,
                attempts=0,
                final_status=FinalStatus.ERROR,
                error_message=f"{error.__class__.__name__}: {error}",
                started_at=now,
                ended_at=now,
            )

        # Partial runs are stored as done so the next run does not pick them up again.
        status = TaskStatus.ERROR if report.final_status is FinalStatus.ERROR else TaskStatus.DONE
        error_message = short_error_message(report.error_message) or None
        report_path = self._write_report(task, report)
        self.store.update_task(
            queue,
            task.id,
            status=status,
            error_message=error_message,
            report_path=report_path,
        )
        await self.telemetry.update_status(task_id=task.id, status=status)
        logger.info(
            "Task %s finished: %s (%s attempts)",
            task.name,
            report.final_status.value,
            report.attempts,
        )
        return TaskRunResult(
            task_id=task.id,
            name=task.name,
            status=status,
            final_status=report.final_status,
            attempts=report.attempts,
            error_message=error_message,
            report_path=report_path,
        )

    def _write_report(self, task: Task, report: ExecutionReport) -> str | None:
        try:
            return write_report(
                report_dir=self.settings.report_dir,
                task=task,
                report=report,
                context=ReportContext(
                    model=self.settings.agent.model,
                    judge_model=self.judge_model,
                    retry=self.settings.agent.retry,
                    timeout_minutes=self.settings.agent.timeout_minutes,
                ),
                detailed_error=report.error_message,
                relative_to=self.store.base_dir,
            )
        except OSError as error:
            logger.warning("Could not write report for task %s: %s", task.name, error)
            return None


async def reset_queue(
    *,
    store: TaskQueueStore,
    errors_only: bool,
    telemetry: TelemetrySink | None = None,
) -> list[Task]:
    """Reset tasks to pending and publish the refreshed queue."""

    queue = store.load(check_files=False)
    changed = store.reset(queue, errors_only=errors_only)
    if telemetry is not None:
        await telemetry.submit_queue(queue)
    return changed


ENV_EXAMPLE = """\
# Agent invocation
AGENT_TASKFLOW_AGENT_COMMAND=cursor-agent
AGENT_TASKFLOW_MODEL=composer-1
AGENT_TASKFLOW_RETRY=3
AGENT_TASKFLOW_TIMEOUT_MINUTES=30
AGENT_TASKFLOW_STREAM_PARTIAL_OUTPUT=true

# Completion judge (OpenAI-compatible endpoint)
AGENT_TASKFLOW_JUDGE_MODEL=
OPENAI_API_KEY=
OPENAI_API_BASE=https://api.openai.com/v1

# Telemetry sink (optional)
AGENT_TASKFLOW_TELEMETRY_ENABLED=false
AGENT_TASKFLOW_TELEMETRY_URL=http://localhost:3000
AGENT_TASKFLOW_TELEMETRY_API_KEY=
"""

SAMPLE_QUEUE: dict[str, object] = {
    "prompts": [],
    "tasks": [
        {
            "id": "1",
            "name": "hello-world",
            "description": "Prompt-only task",
            "prompt": "Create a hello world script in hello.py.",
            "status": "pending",
        },
        {
            "id": "2",
            "name": "add-tests",
            "description": "Tasks can also list spec_file entries (a path or an array of paths)",
            "prompt": "Add a pytest test for hello.py.",
            "status": "pending",
        },
    ],
}


@dataclass(slots=True, frozen=True)
class InitEntry:
    """One scaffolded path and whether it was created."""

    path: Path
    created: bool


def init_workspace(root: Path) -> list[InitEntry]:
    """Create the ``.flow`` layout; existing files are left untouched."""

    flow_dir = root / ".flow"
    entries: list[InitEntry] = []
    for directory in (flow_dir, flow_dir / "tasks" / "report"):
        existed = directory.is_dir()
        directory.mkdir(parents=True, exist_ok=True)
        entries.append(InitEntry(path=directory, created=not existed))

    files = (
        (flow_dir / ".env.example", ENV_EXAMPLE),
        (flow_dir / "task.json", json.dumps(SAMPLE_QUEUE, indent=2, ensure_ascii=False) + "\n"),
    )
    for path, content in files:
        if path.exists():
            entries.append(InitEntry(path=path, created=False))
            continue
        path.write_text(content, encoding="utf-8")
        entries.append(InitEntry(path=path, created=True))
    return entries
