"""Subprocess-based backend runner for stream-json coding agent CLIs."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable, Sequence

from agent_taskflow.runner.backend.base import (
    AgentTimeoutError,
    BackendRunError,
    InvocationResult,
)
from agent_taskflow.runner.stream import StreamExtractor

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND: tuple[str, ...] = ("cursor-agent",)
DEFAULT_BASE_ARGS: tuple[str, ...] = ("--print", "--force")
OUTPUT_FORMAT_FLAG = "--output-format"
STREAM_JSON_FORMAT = "stream-json"
STREAM_PARTIAL_FLAG = "--stream-partial-output"
RESUME_FLAG = "--resume"

_READ_CHUNK_BYTES = 64 * 1024
_PREVIEW_ARG_CHARS = 100


class CliAgentBackend:
    """Run the agent CLI once per call and reduce its stdout to a transcript."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        command: Sequence[str] = DEFAULT_AGENT_COMMAND,
        base_args: Sequence[str] = DEFAULT_BASE_ARGS,
        prompt_arg_max_bytes: int = 8_000,
        stream_partial_output: bool = True,
        terminate_grace_seconds: float = 2.0,
        env: dict[str, str] | None = None,
        on_text: Callable[[str], None] | None = None,
        on_session: Callable[[str], None] | None = None,
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty.")
        self.command = tuple(command)
        self.base_args = tuple(base_args)
        self.prompt_arg_max_bytes = prompt_arg_max_bytes
        self.stream_partial_output = stream_partial_output
        self.terminate_grace_seconds = terminate_grace_seconds
        self.env = env
        self.on_text = on_text
        self.on_session = on_session

    async def invoke_initial(
        self,
        *,
        prompt: str,
        model: str,
        passthrough_args: Sequence[str] = (),
        timeout_seconds: float,
    ) -> InvocationResult:
        argv, stdin_payload = _build_initial_args(
            command=self.command,
            base_args=self.base_args,
            model=model,
            prompt=prompt,
            passthrough_args=passthrough_args,
            prompt_arg_max_bytes=self.prompt_arg_max_bytes,
            stream_partial_output=self.stream_partial_output,
        )
        return await self._run(
            argv=argv,
            stdin_payload=stdin_payload,
            echo_prompt=prompt,
            model=model,
            timeout_seconds=timeout_seconds,
        )

    async def invoke_resume(
        self,
        *,
        model: str,
        session_id: str,
        instruction: str,
        timeout_seconds: float,
    ) -> InvocationResult:
        if not session_id:
            raise BackendRunError("Resume requested without a continuation handle.")
        argv, stdin_payload = _build_resume_args(
            command=self.command,
            base_args=self.base_args,
            model=model,
            session_id=session_id,
            instruction=instruction,
            prompt_arg_max_bytes=self.prompt_arg_max_bytes,
            stream_partial_output=self.stream_partial_output,
        )
        return await self._run(
            argv=argv,
            stdin_payload=stdin_payload,
            echo_prompt=instruction,
            model=model,
            timeout_seconds=timeout_seconds,
        )

    async def _run(
        self,
        *,
        argv: list[str],
        stdin_payload: str | None,
        echo_prompt: str,
        model: str,
        timeout_seconds: float,
    ) -> InvocationResult:
        extractor = StreamExtractor(
            prompt=echo_prompt,
            on_text=self.on_text,
            on_session=self.on_session,
        )
        env = dict(self.env) if self.env is not None else os.environ.copy()
        env["AGENT_TASKFLOW_MODEL"] = model

        logger.info(
            "Starting agent (prompt via %s): %s",
            "stdin" if stdin_payload is not None else "argument",
            format_command_preview(argv),
        )
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=(
                    asyncio.subprocess.PIPE
                    if stdin_payload is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as error:
            raise BackendRunError(f"Agent command not found: {argv[0]}") from error
        except OSError as error:
            raise BackendRunError(f"Agent failed to start: {error}") from error

        stderr_chunks: list[bytes] = []
        try:
            exit_code = await asyncio.wait_for(
                _communicate(
                    process=process,
                    extractor=extractor,
                    stderr_chunks=stderr_chunks,
                    stdin_payload=stdin_payload,
                ),
                timeout=timeout_seconds,
            )
        except TimeoutError as error:
            await _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
            raise AgentTimeoutError(
                f"Agent timed out after {timeout_seconds:g}s",
                timeout_seconds=timeout_seconds,
                session_id=extractor.session_id,
                partial_transcript=extractor.transcript,
            ) from error
        except asyncio.CancelledError:
            await _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
            raise

        extracted = extractor.finish()
        duration_ms = int((time.monotonic() - started) * 1000)
        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
        logger.info(
            "Agent exited: exit_code=%s duration_ms=%s transcript_chars=%s session_id=%s",
            exit_code,
            duration_ms,
            len(extracted.transcript),
            extracted.session_id or "-",
        )
        return InvocationResult(
            exit_code=exit_code,
            stderr=stderr_text,
            transcript=extracted.transcript,
            session_id=extracted.session_id,
            duration_ms=duration_ms,
        )


def _build_initial_args(  # noqa: PLR0913
    *,
    command: Sequence[str],
    base_args: Sequence[str],
    model: str,
    prompt: str,
    passthrough_args: Sequence[str],
    prompt_arg_max_bytes: int,
    stream_partial_output: bool,
) -> tuple[list[str], str | None]:
    if not prompt.strip():
        raise BackendRunError("Agent prompt is empty.")
    argv = [*command, *base_args, "--model", model]
    argv.extend(
        _stream_args(
            passthrough_args=passthrough_args,
            stream_partial_output=stream_partial_output,
        ),
    )
    argv.extend(passthrough_args)
    return _attach_prompt(argv, prompt, prompt_arg_max_bytes=prompt_arg_max_bytes)


def _build_resume_args(  # noqa: PLR0913
    *,
    command: Sequence[str],
    base_args: Sequence[str],
    model: str,
    session_id: str,
    instruction: str,
    prompt_arg_max_bytes: int,
    stream_partial_output: bool,
) -> tuple[list[str], str | None]:
    argv = [*command, *base_args, "--model", model]
    argv.extend(_stream_args(passthrough_args=(), stream_partial_output=stream_partial_output))
    argv.extend([RESUME_FLAG, session_id])
    return _attach_prompt(argv, instruction, prompt_arg_max_bytes=prompt_arg_max_bytes)


def _stream_args(*, passthrough_args: Sequence[str], stream_partial_output: bool) -> list[str]:
    args: list[str] = []
    if stream_partial_output and STREAM_PARTIAL_FLAG not in passthrough_args:
        args.append(STREAM_PARTIAL_FLAG)
    if not has_output_format(passthrough_args):
        args.extend([OUTPUT_FORMAT_FLAG, STREAM_JSON_FORMAT])
    return args


def has_output_format(args: Sequence[str]) -> bool:
    """Whether caller-supplied arguments already choose an output format."""

    return any(
        arg == OUTPUT_FORMAT_FLAG or arg.startswith(f"{OUTPUT_FORMAT_FLAG}=") for arg in args
    )


def use_stdin_transport(prompt: str, *, prompt_arg_max_bytes: int) -> bool:
    """Multiline or oversized prompts cannot travel safely as one argv entry."""

    if "\n" in prompt or "\r" in prompt:
        return True
    return len(prompt.encode("utf-8")) > prompt_arg_max_bytes


def _attach_prompt(
    argv: list[str],
    prompt: str,
    *,
    prompt_arg_max_bytes: int,
) -> tuple[list[str], str | None]:
    if use_stdin_transport(prompt, prompt_arg_max_bytes=prompt_arg_max_bytes):
        return argv, prompt if prompt.endswith("\n") else f"{prompt}\n"
    return [*argv, prompt], None


async def _communicate(
    *,
    process: asyncio.subprocess.Process,
    extractor: StreamExtractor,
    stderr_chunks: list[bytes],
    stdin_payload: str | None,
) -> int:
    async def write_stdin() -> None:
        if process.stdin is None:
            return
        try:
            if stdin_payload is not None:
                process.stdin.write(stdin_payload.encode("utf-8"))
                await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent closed stdin before the prompt was fully written")
        finally:
            process.stdin.close()

    async def pump_stdout() -> None:
        if process.stdout is None:
            return
        while True:
            chunk = await process.stdout.read(_READ_CHUNK_BYTES)
            if not chunk:
                return
            extractor.feed(chunk)

    async def pump_stderr() -> None:
        if process.stderr is None:
            return
        while True:
            chunk = await process.stderr.read(_READ_CHUNK_BYTES)
            if not chunk:
                return
            stderr_chunks.append(chunk)

    await asyncio.gather(write_stdin(), pump_stdout(), pump_stderr())
    return await process.wait()


async def _terminate_process(
    process: asyncio.subprocess.Process,
    *,
    grace_seconds: float,
) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def format_command_preview(argv: Sequence[str]) -> str:
    """Render argv for logs with long values shortened."""

    parts: list[str] = []
    for arg in argv:
        if len(arg) > _PREVIEW_ARG_CHARS:
            parts.append(f'"{arg[: _PREVIEW_ARG_CHARS - 3]}..."')
        elif " " in arg:
            parts.append(f'"{arg}"')
        else:
            parts.append(arg)
    return " ".join(parts)
