"""JSON task queue persistence with validation and atomic writes."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from agent_taskflow.runner.models import Task, TaskQueue, TaskStatus

logger = logging.getLogger(__name__)

MAX_TASK_ID_LENGTH = 255

_TASK_KEYS = ("id", "name", "prompt", "spec_file", "status", "error_message", "report")
_QUEUE_KEYS = ("prompts", "tasks")


class QueueValidationError(ValueError):
    """Queue file cannot be used; nothing has been executed."""


class TaskQueueStore:
    """Load, validate and atomically persist one queue file."""

    def __init__(self, path: Path, *, base_dir: Path | None = None) -> None:
        self.path = path
        self.base_dir = base_dir or Path.cwd()

    def load(self, *, check_files: bool = True) -> TaskQueue:
        """Parse and validate the whole queue, or raise ``QueueValidationError``.

        ``check_files=False`` skips the spec file existence check, so ``status``
        and ``reset`` still work after files referenced by the queue are gone.
        """

        try:
            raw_text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as error:
            raise QueueValidationError(f"Task file not found: {self.path}") from error
        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as error:
            raise QueueValidationError(f"Task file is not valid JSON: {error}") from error
        queue = parse_queue(payload, path=self.path)
        validate_queue(queue, base_dir=self.base_dir, check_files=check_files)
        logger.debug("Loaded %s tasks from %s", len(queue.tasks), self.path)
        return queue

    def save(self, queue: TaskQueue) -> None:
        """Write the queue to a sibling temp file, fsync it, then rename it over the original."""

        content = json.dumps(serialize_queue(queue), indent=2, ensure_ascii=False) + "\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def update_task(
        self,
        queue: TaskQueue,
        task_id: str,
        *,
        status: TaskStatus,
        error_message: str | None = None,
        report_path: str | None = None,
    ) -> Task:
        """Set one task's status and persist the queue immediately."""

        task = queue.find(task_id)
        if task is None:
            raise KeyError(f"Unknown task id: {task_id}")
        task.status = status
        if error_message:
            task.error_message = error_message
        elif status is not TaskStatus.ERROR:
            task.error_message = None
        if report_path:
            task.report_path = report_path
        self.save(queue)
        return task

    def reset(self, queue: TaskQueue, *, errors_only: bool = False) -> list[Task]:
        """Return tasks to ``pending`` and clear their error and report; persist once."""

        changed: list[Task] = []
        for task in queue.tasks:
            if task.status == TaskStatus.PENDING:
                continue
            if errors_only and task.status != TaskStatus.ERROR:
                continue
            task.status = TaskStatus.PENDING
            task.error_message = None
            task.report_path = None
            changed.append(task)
        self.save(queue)
        return changed


def parse_queue(payload: object, *, path: Path) -> TaskQueue:
    """Map the decoded JSON document onto ``TaskQueue`` without checking cross-task rules."""

    if not isinstance(payload, dict):
        raise QueueValidationError("Task file must contain a JSON object.")
    raw_tasks = payload.get("tasks")
    if not isinstance(raw_tasks, list):
        raise QueueValidationError("Task file is missing the 'tasks' array.")
    raw_prompts = payload.get("prompts", [])
    if not isinstance(raw_prompts, list) or not all(isinstance(p, str) for p in raw_prompts):
        raise QueueValidationError("'prompts' must be an array of file paths.")

    tasks = [_parse_task(raw, position=position) for position, raw in enumerate(raw_tasks, 1)]
    return TaskQueue(
        path=path,
        prompts=list(raw_prompts),
        tasks=tasks,
        extra={key: value for key, value in payload.items() if key not in _QUEUE_KEYS},
    )


def _parse_task(raw: object, *, position: int) -> Task:  # noqa: C901
    if not isinstance(raw, dict):
        raise QueueValidationError(f"Task #{position} must be a JSON object.")

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise QueueValidationError(f"Task #{position} is missing the 'name' field.")

    raw_id = raw.get("id")
    if raw_id is None or isinstance(raw_id, bool) or not isinstance(raw_id, str | int):
        raise QueueValidationError(f'Task "{name}" is missing the required \'id\' field.')
    task_id = str(raw_id).strip()

    prompt = raw.get("prompt")
    if prompt is not None and not isinstance(prompt, str):
        raise QueueValidationError(f'Task "{name}": \'prompt\' must be a string.')

    spec_file = raw.get("spec_file")
    spec_file_is_list = isinstance(spec_file, list)
    if spec_file is None:
        spec_files: tuple[str, ...] = ()
    elif isinstance(spec_file, str):
        spec_files = (spec_file,)
    elif spec_file_is_list and all(isinstance(item, str) for item in spec_file):
        if not spec_file:
            raise QueueValidationError(f'Task "{name}": \'spec_file\' array must not be empty.')
        spec_files = tuple(spec_file)
    else:
        raise QueueValidationError(
            f'Task "{name}": \'spec_file\' must be a string or an array of strings.',
        )

    raw_status = raw.get("status") or TaskStatus.PENDING.value
    if not isinstance(raw_status, str):
        raise QueueValidationError(f'Task "{name}": \'status\' must be a string.')
    try:
        status: TaskStatus | str = TaskStatus(raw_status)
    except ValueError:
        status = raw_status

    error_message = raw.get("error_message")
    report = raw.get("report")
    return Task(
        id=task_id,
        name=name,
        prompt=prompt,
        spec_files=spec_files,
        status=status,
        error_message=error_message if isinstance(error_message, str) else None,
        report_path=report if isinstance(report, str) else None,
        spec_file_is_list=spec_file_is_list,
        extra={key: value for key, value in raw.items() if key not in _TASK_KEYS},
    )


def validate_queue(queue: TaskQueue, *, base_dir: Path, check_files: bool = True) -> None:
    """Check ids, names and prompt sources across the whole queue.

    Spec files must exist only for ``pending`` tasks; finished tasks never
    read them again.
    """

    ids: set[str] = set()
    names: set[str] = set()
    for task in queue.tasks:
        if task.name in names:
            raise QueueValidationError(f"Duplicate task name: {task.name}")
        names.add(task.name)

        if not task.id:
            raise QueueValidationError(f'Task "{task.name}": \'id\' must not be empty.')
        if len(task.id) > MAX_TASK_ID_LENGTH:
            raise QueueValidationError(
                f'Task "{task.name}": \'id\' must be at most {MAX_TASK_ID_LENGTH} characters.',
            )
        if task.id in ids:
            raise QueueValidationError(f"Duplicate task id: {task.id} (task: {task.name})")
        ids.add(task.id)

        has_prompt = bool(task.prompt and task.prompt.strip())
        if not has_prompt and not task.spec_files:
            raise QueueValidationError(
                f'Task "{task.name}" must provide a prompt or at least one spec_file.',
            )
        if not check_files or task.status != TaskStatus.PENDING:
            continue
        for spec_file in task.spec_files:
            path = Path(spec_file)
            if not path.is_absolute():
                path = base_dir / path
            if not path.is_file():
                raise QueueValidationError(
                    f'Task "{task.name}": spec_file does not exist: {spec_file}',
                )


def serialize_queue(queue: TaskQueue) -> dict[str, Any]:
    return {
        "prompts": list(queue.prompts),
        **queue.extra,
        "tasks": [serialize_task(task) for task in queue.tasks],
    }


def serialize_task(task: Task) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": task.id, "name": task.name, **task.extra}
    if task.prompt is not None:
        payload["prompt"] = task.prompt
    if task.spec_files:
        payload["spec_file"] = (
            list(task.spec_files) if task.spec_file_is_list else task.spec_files[0]
        )
    payload["status"] = task.status_value
    if task.error_message:
        payload["error_message"] = task.error_message
    if task.report_path:
        payload["report"] = task.report_path
    return payload
