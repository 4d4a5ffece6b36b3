"""Markdown execution report per task."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from agent_taskflow.runner.models import ExecutionReport, Task

_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.\-]+")


@dataclass(slots=True, frozen=True)
class ReportContext:
    """Run configuration shown in the report header."""

    model: str
    judge_model: str
    retry: int
    timeout_minutes: int


def report_filename(task: Task, *, now: datetime | None = None) -> str:
    timestamp = (now or datetime.now(tz=UTC)).strftime("%Y-%m-%dT%H-%M-%S")
    safe_name = _UNSAFE_FILENAME_CHARS.sub("_", task.name).strip("_") or "task"
    return f"{safe_name}_{timestamp}.md"


def render_report(
    *,
    task: Task,
    report: ExecutionReport,
    context: ReportContext,
    detailed_error: str | None = None,
) -> str:
    """Render the Markdown body for one finished task."""

    spec_display = ", ".join(task.spec_files) if task.spec_files else "none"
    lines = [
        "# Task execution report",
        "",
        "## Task",
        "",
        f"- **Name**: {task.name}",
        f"- **Id**: {task.id}",
    ]
    description = task.extra.get("description")
    if isinstance(description, str) and description:
        lines.append(f"- **Description**: {description}")
    lines.extend(
        [
            f"- **Spec files**: {spec_display}",
            f"- **Model**: {context.model}",
            f"- **Judge model**: {context.judge_model}",
            f"- **Timeout**: {context.timeout_minutes} min",
            f"- **Retry ceiling**: {context.retry}",
            "",
            "## Summary",
            "",
            f"- **Started**: {_iso(report.started_at)}",
            f"- **Ended**: {_iso(report.ended_at)}",
            f"- **Attempts**: {report.attempts}",
            f"- **Final status**: {report.final_status.value}",
            "",
            "## Attempts",
        ],
    )
    for attempt in report.attempt_log:
        lines.extend(
            [
                "",
                f"### Attempt {attempt.index}",
                "",
                f"- **Duration**: {attempt.duration_ms / 1000:.2f} s",
                f"- **Conclusion**: {attempt.conclusion.value}",
            ],
        )
        if attempt.session_id:
            lines.append(f"- **Session**: {attempt.session_id}")
        if attempt.notes:
            lines.append("- **Notes**:")
            lines.extend(f"  - {note}" for note in attempt.notes)

    lines.extend(["", "## Result", "", f"Final status: **{report.final_status.value}**"])
    if detailed_error:
        lines.extend(["", "### Error detail", "", "```", detailed_error, "```"])
    return "\n".join(lines) + "\n"


def write_report(  # noqa: PLR0913
    *,
    report_dir: Path,
    task: Task,
    report: ExecutionReport,
    context: ReportContext,
    detailed_error: str | None = None,
    relative_to: Path | None = None,
) -> str:
    """Write the report and return its path, relative to ``relative_to`` when possible."""

    report_dir.mkdir(parents=True, exist_ok=True)
    path = report_dir / report_filename(task, now=report.ended_at)
    path.write_text(
        render_report(task=task, report=report, context=context, detailed_error=detailed_error),
        encoding="utf-8",
    )
    root = (relative_to or Path.cwd()).resolve()
    try:
        return os.path.relpath(path.resolve(), root)
    except ValueError:
        return str(path.resolve())


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"
