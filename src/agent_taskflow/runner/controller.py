"""Attempt/retry/resume state machine for one task."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from agent_taskflow.runner.backend.base import (
    AgentBackend,
    AgentTimeoutError,
    BackendRunError,
    InvocationResult,
)
from agent_taskflow.runner.failure_classifier import classify_runtime_failure
from agent_taskflow.runner.models import (
    Attempt,
    AttemptConclusion,
    ExecutionReport,
    FailureClass,
    FinalStatus,
    Verdict,
    VerdictKind,
)
from agent_taskflow.runner.prompts import instruction_for
from agent_taskflow.runner.sanitization import sanitize_preview
from agent_taskflow.runner.telemetry import NullTelemetry, TelemetrySink

logger = logging.getLogger(__name__)

_NOTE_PREVIEW_CHARS = 500


class ControllerState(str, Enum):
    """Lifecycle of one controller run."""

    INIT = "init"
    RUNNING = "running"
    DONE = "done"
    PARTIALLY_DONE = "partially_done"
    ERRORED = "errored"


class MissingContinuationError(RuntimeError):
    """A resume was required but no continuation handle is known."""


class Judge(Protocol):
    """Completion classifier used between attempts."""

    async def classify(self, *, judge_model: str, transcript: str) -> Verdict: ...


_CONCLUSION_BY_VERDICT: dict[VerdictKind, AttemptConclusion] = {
    VerdictKind.DONE: AttemptConclusion.COMPLETED,
    VerdictKind.RESUME: AttemptConclusion.NEEDS_CONTINUATION,
    VerdictKind.AUTO: AttemptConclusion.SUGGESTED_CONTINUATION,
}


@dataclass(slots=True)
class _StepOutcome:
    attempt: Attempt
    verdict: Verdict | None = None
    session_id: str | None = None
    error_message: str | None = None
    timed_out: bool = False


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class RetryController:
    """Drive one prompt to completion through initial and resumed invocations."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        judge: Judge,
        model: str,
        judge_model: str,
        retry_ceiling: int,
        timeout_seconds: float,
        passthrough_args: Sequence[str] = (),
        telemetry: TelemetrySink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if retry_ceiling < 1:
            raise ValueError("retry_ceiling must be >= 1")
        self.backend = backend
        self.judge = judge
        self.model = model
        self.judge_model = judge_model
        self.retry_ceiling = retry_ceiling
        self.timeout_seconds = timeout_seconds
        self.passthrough_args = tuple(passthrough_args)
        self.telemetry: TelemetrySink = telemetry or NullTelemetry()
        self.clock = clock
        self.state = ControllerState.INIT

    async def execute(self, *, prompt: str, task_id: str | None = None) -> ExecutionReport:
        """Run attempts until done, the retry ceiling, or an error. Never raises."""

        self.state = ControllerState.RUNNING
        report = ExecutionReport(
            success=False,
            attempts=0,
            final_status=FinalStatus.ERROR,
            started_at=self.clock(),
        )
        session_id: str | None = None
        verdict: Verdict | None = None

        for index in range(1, self.retry_ceiling + 1):
            logger.info("Attempt %s/%s started", index, self.retry_ceiling)
            outcome = await self._run_step(
                index=index,
                prompt=prompt,
                session_id=session_id,
                previous_verdict=verdict,
                task_id=task_id,
            )
            report.attempt_log.append(outcome.attempt)
            report.attempts = index
            await self._log(task_id, _describe_attempt(outcome.attempt))

            if outcome.timed_out:
                if index < self.retry_ceiling:
                    logger.warning(
                        "Attempt %s timed out; moving on to attempt %s",
                        index,
                        index + 1,
                    )
                    continue
                return self._finish(report, ControllerState.ERRORED, outcome.error_message)
            if outcome.error_message is not None:
                return self._finish(report, ControllerState.ERRORED, outcome.error_message)

            session_id = outcome.session_id or session_id
            verdict = outcome.verdict
            if verdict is not None and verdict.kind is VerdictKind.DONE:
                return self._finish(report, ControllerState.DONE)

        return self._finish(report, ControllerState.PARTIALLY_DONE)

    async def _run_step(
        self,
        *,
        index: int,
        prompt: str,
        session_id: str | None,
        previous_verdict: Verdict | None,
        task_id: str | None,
    ) -> _StepOutcome:
        started = time.monotonic()
        try:
            result = await self._invoke(
                index=index,
                prompt=prompt,
                session_id=session_id,
                previous_verdict=previous_verdict,
                task_id=task_id,
            )
        except AgentTimeoutError as error:
            notes = [f"failure_class={FailureClass.TIMEOUT.value}", str(error)]
            partial = sanitize_preview(error.partial_transcript, max_chars=_NOTE_PREVIEW_CHARS)
            if partial:
                notes.append(f"partial transcript: {partial}")
            # The handle seen before the kill is reported but not resumed from.
            return _StepOutcome(
                attempt=Attempt(
                    index=index,
                    duration_ms=_elapsed_ms(started),
                    conclusion=AttemptConclusion.RUNTIME_ERROR,
                    session_id=error.session_id or session_id,
                    notes=tuple(notes),
                ),
                session_id=session_id,
                error_message=str(error),
                timed_out=True,
            )
        except MissingContinuationError as error:
            logger.error("Attempt %s cannot resume: %s", index, error)
            return _execution_error(index=index, started=started, message=str(error))
        except BackendRunError as error:
            logger.error("Attempt %s could not run the agent: %s", index, error)
            return _StepOutcome(
                attempt=Attempt(
                    index=index,
                    duration_ms=_elapsed_ms(started),
                    conclusion=AttemptConclusion.RUNTIME_ERROR,
                    session_id=session_id,
                    notes=(f"failure_class={FailureClass.SPAWN_FAILED.value}", str(error)),
                ),
                error_message=str(error),
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Attempt %s failed unexpectedly", index)
            return _execution_error(
                index=index,
                started=started,
                message=f"Unexpected error: {error.__class__.__name__}: {error}",
            )

        if result.transcript:
            await self._message(task_id, "assistant", result.transcript, result.session_id)

        failure = classify_runtime_failure(
            exit_code=result.exit_code,
            stderr=result.stderr,
            stdout=result.transcript,
        )
        if failure is not None:
            detail = failure.describe(exit_code=result.exit_code)
            logger.error("Attempt %s ended with a runtime error: %s", index, detail)
            notes = [detail]
            if result.stderr:
                notes.append(sanitize_preview(result.stderr, max_chars=_NOTE_PREVIEW_CHARS))
            return _StepOutcome(
                attempt=Attempt(
                    index=index,
                    duration_ms=result.duration_ms,
                    conclusion=AttemptConclusion.RUNTIME_ERROR,
                    session_id=result.session_id,
                    notes=tuple(notes),
                ),
                session_id=result.session_id,
                error_message=_runtime_error_message(result),
            )

        try:
            verdict = await self.judge.classify(
                judge_model=self.judge_model,
                transcript=result.transcript,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Judge failed unexpectedly on attempt %s", index)
            return _execution_error(
                index=index,
                started=started,
                message=f"Judge error: {error.__class__.__name__}: {error}",
                session_id=result.session_id,
            )

        return _StepOutcome(
            attempt=Attempt(
                index=index,
                duration_ms=result.duration_ms,
                conclusion=_CONCLUSION_BY_VERDICT[verdict.kind],
                session_id=result.session_id,
                notes=(f"verdict={verdict.kind.value}", *verdict.reasons),
            ),
            verdict=verdict,
            session_id=result.session_id,
        )

    async def _invoke(
        self,
        *,
        index: int,
        prompt: str,
        session_id: str | None,
        previous_verdict: Verdict | None,
        task_id: str | None,
    ) -> InvocationResult:
        timeout = self.timeout_seconds
        if index == 1:
            await self._message(task_id, "user", prompt, None)
            return await self.backend.invoke_initial(
                prompt=prompt,
                model=self.model,
                passthrough_args=self.passthrough_args,
                timeout_seconds=timeout,
            )
        if not session_id:
            raise MissingContinuationError(
                f"Attempt {index} needs to resume, but no earlier attempt reported a session id.",
            )
        instruction = instruction_for(previous_verdict)
        logger.info("Resuming session %s with instruction %r", session_id, instruction)
        await self._message(task_id, "user", instruction, session_id)
        return await self.backend.invoke_resume(
            model=self.model,
            session_id=session_id,
            instruction=instruction,
            timeout_seconds=timeout,
        )

    def _finish(
        self,
        report: ExecutionReport,
        state: ControllerState,
        error_message: str | None = None,
    ) -> ExecutionReport:
        self.state = state
        report.ended_at = self.clock()
        if state is ControllerState.DONE:
            report.success = True
            report.final_status = FinalStatus.DONE
        elif state is ControllerState.PARTIALLY_DONE:
            report.final_status = FinalStatus.PARTIAL
        else:
            report.final_status = FinalStatus.ERROR
            report.error_message = error_message or "Task failed."
        logger.info(
            "Execution finished: status=%s attempts=%s",
            report.final_status.value,
            report.attempts,
        )
        return report

    async def _message(
        self,
        task_id: str | None,
        role: str,
        content: str,
        session_id: str | None,
    ) -> None:
        if task_id is None:
            return
        await self.telemetry.add_message(
            task_id=task_id,
            role=role,
            content=content,
            session_id=session_id,
        )

    async def _log(self, task_id: str | None, content: str) -> None:
        if task_id is None:
            return
        await self.telemetry.add_log(task_id=task_id, content=content)


def _execution_error(
    *,
    index: int,
    started: float,
    message: str,
    session_id: str | None = None,
) -> _StepOutcome:
    return _StepOutcome(
        attempt=Attempt(
            index=index,
            duration_ms=_elapsed_ms(started),
            conclusion=AttemptConclusion.EXECUTION_ERROR,
            session_id=session_id,
            notes=(message,),
        ),
        session_id=session_id,
        error_message=message,
    )


def _runtime_error_message(result: InvocationResult) -> str:
    stderr = sanitize_preview(result.stderr) or "no error output"
    return f"Runtime error: exit code {result.exit_code}\n{stderr}"


def _describe_attempt(attempt: Attempt) -> str:
    notes = "; ".join(attempt.notes)
    suffix = f" ({notes})" if notes else ""
    return (
        f"Attempt {attempt.index}: {attempt.conclusion.value} "
        f"in {attempt.duration_ms} ms{suffix}"
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
