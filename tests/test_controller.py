from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime

import allure
import pytest

from agent_taskflow.runner.backend import AgentTimeoutError, BackendRunError, InvocationResult
from agent_taskflow.runner.controller import ControllerState, RetryController
from agent_taskflow.runner.models import (
    AttemptConclusion,
    FinalStatus,
    Verdict,
    VerdictKind,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Retry Controller"),
]


def _result(
    transcript: str = "working on it",
    *,
    session_id: str | None = "s-1",
    exit_code: int = 0,
    stderr: str = "",
) -> InvocationResult:
    return InvocationResult(
        exit_code=exit_code,
        stderr=stderr,
        transcript=transcript,
        session_id=session_id,
        duration_ms=5,
    )


class ScriptedBackend:
    """Returns (or raises) the scripted outcomes in order and records every call."""

    def __init__(self, outcomes: Sequence[InvocationResult | Exception]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, dict[str, object]]] = []

    async def invoke_initial(self, *, prompt, model, passthrough_args=(), timeout_seconds):
        self.calls.append(
            (
                "initial",
                {"prompt": prompt, "model": model, "passthrough_args": tuple(passthrough_args)},
            ),
        )
        return self._next()

    async def invoke_resume(self, *, model, session_id, instruction, timeout_seconds):
        self.calls.append(("resume", {"session_id": session_id, "instruction": instruction}))
        return self._next()

    def _next(self) -> InvocationResult:
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ScriptedJudge:
    def __init__(self, *kinds: VerdictKind | Exception) -> None:
        self.kinds = list(kinds)
        self.transcripts: list[str] = []

    async def classify(self, *, judge_model: str, transcript: str) -> Verdict:
        self.transcripts.append(transcript)
        kind = self.kinds.pop(0)
        if isinstance(kind, Exception):
            raise kind
        return Verdict(kind=kind, reasons=(f"judged {kind.value}",))


class RecordingTelemetry:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str | None]] = []
        self.logs: list[str] = []

    async def add_message(self, *, task_id, role, content, session_id=None) -> None:
        self.messages.append((role, content, session_id))

    async def add_log(self, *, task_id, content) -> None:
        self.logs.append(content)


def _controller(backend, judge, *, retry_ceiling: int = 3, **kwargs) -> RetryController:
    return RetryController(
        backend=backend,
        judge=judge,
        model="composer-1",
        judge_model="judge-1",
        retry_ceiling=retry_ceiling,
        timeout_seconds=60,
        clock=lambda: datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
        **kwargs,
    )


def _timeout(session_id: str | None = None, partial: str = "") -> AgentTimeoutError:
    return AgentTimeoutError(
        "Agent timed out after 60s",
        timeout_seconds=60,
        session_id=session_id,
        partial_transcript=partial,
    )


def test_resume_then_done_finishes_on_second_attempt() -> None:
    backend = ScriptedBackend([_result("half way"), _result("All done.")])
    judge = ScriptedJudge(VerdictKind.RESUME, VerdictKind.DONE)
    controller = _controller(backend, judge, passthrough_args=("--force",))

    report = asyncio.run(controller.execute(prompt="Implement feature X"))

    assert report.success is True
    assert report.final_status is FinalStatus.DONE
    assert report.attempts == 2
    assert report.error_message is None
    assert [a.conclusion for a in report.attempt_log] == [
        AttemptConclusion.NEEDS_CONTINUATION,
        AttemptConclusion.COMPLETED,
    ]
    assert backend.calls == [
        (
            "initial",
            {
                "prompt": "Implement feature X",
                "model": "composer-1",
                "passthrough_args": ("--force",),
            },
        ),
        ("resume", {"session_id": "s-1", "instruction": "continue"}),
    ]
    assert judge.transcripts == ["half way", "All done."]
    assert controller.state is ControllerState.DONE
    assert report.started_at is not None and report.ended_at is not None


def test_never_done_stops_exactly_at_retry_ceiling() -> None:
    backend = ScriptedBackend([_result() for _ in range(5)])
    judge = ScriptedJudge(*[VerdictKind.RESUME] * 5)

    report = asyncio.run(_controller(backend, judge, retry_ceiling=3).execute(prompt="go"))

    assert report.attempts == 3
    assert len(backend.calls) == 3
    assert report.success is False
    assert report.final_status is FinalStatus.PARTIAL
    assert report.error_message is None


def test_auto_verdict_resumes_with_apply_suggestion() -> None:
    backend = ScriptedBackend([_result("Shall I add tests?"), _result("Tests added.")])
    judge = ScriptedJudge(VerdictKind.AUTO, VerdictKind.DONE)

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    assert report.success is True
    assert backend.calls[1] == (
        "resume",
        {"session_id": "s-1", "instruction": "apply your suggestion"},
    )
    assert report.attempt_log[0].conclusion is AttemptConclusion.SUGGESTED_CONTINUATION


def test_latest_session_id_is_used_for_resume() -> None:
    backend = ScriptedBackend(
        [
            _result(session_id="s-1"),
            _result(session_id="s-2"),
            _result(session_id=None),
            _result("done"),
        ],
    )
    judge = ScriptedJudge(*[VerdictKind.RESUME] * 3, VerdictKind.DONE)

    asyncio.run(_controller(backend, judge, retry_ceiling=4).execute(prompt="go"))

    assert [call[1]["session_id"] for call in backend.calls[1:]] == ["s-1", "s-2", "s-2"]


def test_runtime_error_short_circuits_without_judge() -> None:
    backend = ScriptedBackend([_result(exit_code=1, stderr="Error: model crashed")])
    judge = ScriptedJudge(VerdictKind.DONE)

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    assert judge.transcripts == []
    assert report.success is False
    assert report.final_status is FinalStatus.ERROR
    assert report.attempts == 1
    assert report.attempt_log[0].conclusion is AttemptConclusion.RUNTIME_ERROR
    assert report.error_message is not None
    assert report.error_message.startswith("Runtime error: exit code 1\n")
    assert "model crashed" in report.error_message


def test_error_marker_on_zero_exit_is_a_runtime_error() -> None:
    backend = ScriptedBackend([_result(stderr="error: tool failed")])
    judge = ScriptedJudge(VerdictKind.DONE)

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    assert judge.transcripts == []
    assert report.final_status is FinalStatus.ERROR
    assert report.error_message == "Runtime error: exit code 0\nerror: tool failed"


def test_missing_continuation_handle_is_an_execution_error() -> None:
    backend = ScriptedBackend([_result(session_id=None)])
    judge = ScriptedJudge(VerdictKind.RESUME)

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    assert report.final_status is FinalStatus.ERROR
    assert report.attempts == 2
    assert len(backend.calls) == 1
    assert report.attempt_log[-1].conclusion is AttemptConclusion.EXECUTION_ERROR
    assert "no earlier attempt reported a session id" in (report.error_message or "")


def test_timeout_moves_on_and_resumes_with_last_known_handle() -> None:
    backend = ScriptedBackend([_result(session_id="s-1"), _timeout("s-2"), _result("Finished.")])
    judge = ScriptedJudge(VerdictKind.RESUME, VerdictKind.DONE)

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    assert report.success is True
    assert report.attempts == 3
    assert report.attempt_log[1].conclusion is AttemptConclusion.RUNTIME_ERROR
    assert "failure_class=timeout" in report.attempt_log[1].notes
    assert backend.calls[2] == ("resume", {"session_id": "s-1", "instruction": "continue"})


def test_timeout_on_last_attempt_is_an_error() -> None:
    backend = ScriptedBackend([_timeout("s-1")])
    judge = ScriptedJudge()

    report = asyncio.run(_controller(backend, judge, retry_ceiling=1).execute(prompt="go"))

    assert report.final_status is FinalStatus.ERROR
    assert report.error_message == "Agent timed out after 60s"


def test_timeout_without_any_handle_ends_errored() -> None:
    backend = ScriptedBackend([_timeout()])
    judge = ScriptedJudge()

    report = asyncio.run(_controller(backend, judge, retry_ceiling=2).execute(prompt="go"))

    assert report.final_status is FinalStatus.ERROR
    assert report.attempts == 2
    assert report.attempt_log[-1].conclusion is AttemptConclusion.EXECUTION_ERROR


def test_spawn_failure_errors_immediately() -> None:
    backend = ScriptedBackend([BackendRunError("Agent command not found: cursor-agent")])
    judge = ScriptedJudge()

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    assert report.final_status is FinalStatus.ERROR
    assert report.attempts == 1
    assert report.attempt_log[0].notes[0] == "failure_class=spawn_failed"
    assert report.error_message == "Agent command not found: cursor-agent"


def test_unexpected_backend_exception_is_contained() -> None:
    backend = ScriptedBackend([KeyError("boom")])
    judge = ScriptedJudge()

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    assert report.final_status is FinalStatus.ERROR
    assert report.error_message == "Unexpected error: KeyError: 'boom'"
    assert report.attempt_log[0].conclusion is AttemptConclusion.EXECUTION_ERROR


def test_judge_exception_is_an_execution_error() -> None:
    backend = ScriptedBackend([_result()])
    judge = ScriptedJudge(RuntimeError("judge down"))

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    assert report.final_status is FinalStatus.ERROR
    assert report.error_message == "Judge error: RuntimeError: judge down"
    assert report.attempt_log[0].session_id == "s-1"


def test_telemetry_receives_conversation_and_attempt_logs() -> None:
    telemetry = RecordingTelemetry()
    backend = ScriptedBackend([_result("step one"), _result("done now")])
    judge = ScriptedJudge(VerdictKind.RESUME, VerdictKind.DONE)

    asyncio.run(
        _controller(backend, judge, telemetry=telemetry).execute(prompt="go", task_id="t-1"),
    )

    assert telemetry.messages == [
        ("user", "go", None),
        ("assistant", "step one", "s-1"),
        ("user", "continue", "s-1"),
        ("assistant", "done now", "s-1"),
    ]
    assert len(telemetry.logs) == 2
    assert telemetry.logs[0].startswith("Attempt 1: needs_continuation in 5 ms")


def test_retry_ceiling_must_be_positive() -> None:
    with pytest.raises(ValueError, match="retry_ceiling"):
        _controller(ScriptedBackend([]), ScriptedJudge(), retry_ceiling=0)


def test_timeout_attempt_records_session_and_partial_output() -> None:
    backend = ScriptedBackend(
        [_result(session_id="s-1"), _timeout("s-2", partial="Halfway through"), _result("ok")],
    )
    judge = ScriptedJudge(VerdictKind.RESUME, VerdictKind.DONE)

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    timed_out = report.attempt_log[1]
    assert timed_out.session_id == "s-2"
    assert "partial transcript: Halfway through" in timed_out.notes
    assert backend.calls[2][1]["session_id"] == "s-1"


def test_runtime_failure_class_is_read_from_the_transcript_too() -> None:
    backend = ScriptedBackend(
        [_result("429 Too Many Requests, giving up", exit_code=1, stderr="")],
    )
    judge = ScriptedJudge()

    report = asyncio.run(_controller(backend, judge).execute(prompt="go"))

    assert report.final_status is FinalStatus.ERROR
    assert report.attempt_log[0].notes[0].startswith(
        "runtime failure: class=rate_limited exit_code=1 rule=rate_limit",
    )
