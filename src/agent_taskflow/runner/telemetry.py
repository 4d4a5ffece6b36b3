"""Optional remote progress sink for queue runs.

Every call is best-effort: failures are logged and never interrupt a run.
"""

from __future__ import annotations

import getpass
import json
import logging
import socket
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

import httpx

from agent_taskflow.runner.models import Task, TaskQueue, TaskStatus
from agent_taskflow.runner.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_ID_FILE = Path(".flow") / ".telemetry_project_id"
DEFAULT_TIMEOUT_SECONDS = 10.0
_MAX_MESSAGE_CHARS = 50_000


class TelemetrySink(Protocol):
    """Receiver of queue snapshots, conversation messages, logs and statuses."""

    async def submit_queue(self, queue: TaskQueue) -> None: ...

    async def add_message(
        self,
        *,
        task_id: str,
        role: str,
        content: str,
        session_id: str | None = None,
    ) -> None: ...

    async def add_log(self, *, task_id: str, content: str) -> None: ...

    async def update_status(self, *, task_id: str, status: TaskStatus) -> None: ...

    async def aclose(self) -> None: ...


class NullTelemetry:
    """Sink used when telemetry is disabled."""

    async def submit_queue(self, queue: TaskQueue) -> None:
        return None

    async def add_message(
        self,
        *,
        task_id: str,
        role: str,
        content: str,
        session_id: str | None = None,
    ) -> None:
        return None

    async def add_log(self, *, task_id: str, content: str) -> None:
        return None

    async def update_status(self, *, task_id: str, status: TaskStatus) -> None:
        return None

    async def aclose(self) -> None:
        return None


class TelemetryClient:
    """HTTP telemetry sink keyed by a persisted project id and the queue file name."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        url: str,
        api_key: str,
        queue_file: Path,
        project_root: Path | None = None,
        project_id_file: Path | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = url.rstrip("/")
        self.queue_id = queue_file.name
        self.project_root = project_root or Path.cwd()
        self.project_id_file = project_id_file or self.project_root / DEFAULT_PROJECT_ID_FILE
        self._project_id: str | None = None
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"X-API-Key": api_key, "Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def project_id(self) -> str:
        if self._project_id is None:
            self._project_id = load_or_create_project_id(self.project_id_file)
        return self._project_id

    async def submit_queue(self, queue: TaskQueue) -> None:
        payload = {
            "project_id": self.project_id,
            "project_name": self.project_root.resolve().name,
            "clientInfo": client_info(self.project_root),
            "queue_id": self.queue_id,
            "queue_name": self.queue_id,
            "meta": {"prompts": list(queue.prompts)},
            "tasks": [_task_payload(task) for task in queue.tasks],
        }
        await self._send("POST", "/api/v1/submit", payload)

    async def add_message(
        self,
        *,
        task_id: str,
        role: str,
        content: str,
        session_id: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            **self._task_ref(task_id),
            "role": role.lower(),
            "content": sanitize_preview(content, max_chars=_MAX_MESSAGE_CHARS),
        }
        if session_id:
            payload["session_id"] = session_id
        await self._send("POST", "/api/v1/tasks/message", payload)

    async def add_log(self, *, task_id: str, content: str) -> None:
        payload = {**self._task_ref(task_id), "content": sanitize_preview(content)}
        await self._send("POST", "/api/v1/tasks/log", payload)

    async def update_status(self, *, task_id: str, status: TaskStatus) -> None:
        payload = {**self._task_ref(task_id), "status": status.value}
        await self._send("PATCH", "/api/v1/tasks/status", payload)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _task_ref(self, task_id: str) -> dict[str, str]:
        return {"project_id": self.project_id, "queue_id": self.queue_id, "task_id": task_id}

    async def _send(self, method: str, path: str, payload: dict[str, Any]) -> bool:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Telemetry %s %s failed: %s", method, path, exc)
            return False
        if not response.is_success:
            logger.warning(
                "Telemetry %s %s returned HTTP %s: %s",
                method,
                path,
                response.status_code,
                sanitize_preview(response.text, max_chars=200),
            )
            return False
        return True


def load_or_create_project_id(path: Path) -> str:
    """Read the persisted project id, creating one when missing or unreadable."""

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        payload = None
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable telemetry project id file %s: %s", path, exc)
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("project_id"), str):
        return payload["project_id"]

    project_id = str(uuid.uuid4())
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"project_id": project_id}, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not persist telemetry project id to %s: %s", path, exc)
    return project_id


def client_info(project_root: Path) -> dict[str, str]:
    try:
        username = getpass.getuser()
    except (KeyError, OSError):
        username = "unknown"
    return {
        "username": username,
        "hostname": socket.gethostname(),
        "project_path": _home_relative(project_root.resolve()),
    }


def _home_relative(path: Path) -> str:
    try:
        return str(Path("~") / path.relative_to(Path.home()))
    except (RuntimeError, ValueError):
        return str(path)


def _task_payload(task: Task) -> dict[str, Any]:
    spec_file: str | Sequence[str] | None = None
    if task.spec_files:
        spec_file = list(task.spec_files) if task.spec_file_is_list else task.spec_files[0]
    return {
        "id": task.id,
        "name": task.name,
        "prompt": task.prompt or "",
        "spec_file": spec_file,
        "status": task.status_value,
        "report": task.report_path,
        "messages": [],
        "logs": [],
    }
