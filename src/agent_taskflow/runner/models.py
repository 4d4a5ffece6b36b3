"""Domain models for agent task execution and the task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states stored in the queue file."""

    PENDING = "pending"
    DONE = "done"
    ERROR = "error"


class VerdictKind(str, Enum):
    """Three-way classifier outcome."""

    DONE = "done"
    RESUME = "resume"
    AUTO = "auto"


class AttemptConclusion(str, Enum):
    """How one invoke-then-judge cycle ended."""

    COMPLETED = "completed"
    NEEDS_CONTINUATION = "needs_continuation"
    SUGGESTED_CONTINUATION = "suggested_continuation"
    RUNTIME_ERROR = "runtime_error"
    EXECUTION_ERROR = "execution_error"


class FinalStatus(str, Enum):
    """Terminal outcome of one controller run."""

    DONE = "done"
    PARTIAL = "partial"
    ERROR = "error"


class FailureClass(str, Enum):
    """Normalized runtime failure classes."""

    TIMEOUT = "timeout"
    SPAWN_FAILED = "spawn_failed"
    NON_ZERO_EXIT = "non_zero_exit"
    ERROR_OUTPUT = "error_output"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    RATE_LIMITED = "rate_limited"
    BACKEND_TRANSIENT = "backend_transient"


@dataclass(slots=True, frozen=True)
class Verdict:
    """Classifier verdict with human-readable reasons."""

    kind: VerdictKind
    reasons: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Attempt:
    """One recorded attempt; never mutated after it is appended."""

    index: int
    duration_ms: int
    conclusion: AttemptConclusion
    session_id: str | None = None
    notes: tuple[str, ...] = ()


@dataclass(slots=True)
class ExecutionReport:
    """Terminal output of one controller run for one task."""

    success: bool
    attempts: int
    final_status: FinalStatus
    attempt_log: list[Attempt] = field(default_factory=list)
    error_message: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


@dataclass(slots=True)
class Task:
    """One queue entry.

    ``extra`` keeps keys the runner does not interpret (for example
    ``description``) so that saving the queue does not drop them.
    """

    id: str
    name: str
    prompt: str | None = None
    spec_files: tuple[str, ...] = ()
    status: TaskStatus | str = TaskStatus.PENDING
    error_message: str | None = None
    report_path: str | None = None
    spec_file_is_list: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def status_value(self) -> str:
        """Status as stored in the queue file; unknown statuses are kept verbatim."""

        return self.status.value if isinstance(self.status, TaskStatus) else self.status


@dataclass(slots=True)
class TaskQueue:
    """Ordered tasks plus shared prompt files, as stored in one queue file."""

    path: Path
    prompts: list[str] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def find(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None
