"""Backend interface for agent invocations."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol


class BackendRunError(RuntimeError):
    """Agent process could not be run to completion."""


class AgentTimeoutError(BackendRunError):
    """Agent process exceeded its wall-clock budget and was terminated."""

    def __init__(
        self,
        message: str,
        *,
        timeout_seconds: float,
        session_id: str | None = None,
        partial_transcript: str = "",
    ) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.session_id = session_id
        self.partial_transcript = partial_transcript


@dataclass(slots=True, frozen=True)
class InvocationResult:
    """Normalized outcome of one agent process run."""

    exit_code: int
    stderr: str
    transcript: str
    session_id: str | None
    duration_ms: int


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    async def invoke_initial(
        self,
        *,
        prompt: str,
        model: str,
        passthrough_args: Sequence[str] = (),
        timeout_seconds: float,
    ) -> InvocationResult:
        """Start a fresh agent session."""

    async def invoke_resume(
        self,
        *,
        model: str,
        session_id: str,
        instruction: str,
        timeout_seconds: float,
    ) -> InvocationResult:
        """Continue an existing agent session with a short instruction."""
