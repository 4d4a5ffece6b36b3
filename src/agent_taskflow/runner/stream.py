"""Incremental transcript extraction from agent ``stream-json`` output.

The agent writes one JSON event per line (NDJSON), sometimes wrapped in an
SSE-style ``data:`` line. Assistant events are cumulative: each one may
re-send the whole message so far, so the extractor diffs every candidate
against the last text it saw and only emits the new suffix.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

_LINE_BREAK = re.compile(r"\r?\n")
_FRAME_PREFIX = re.compile(r"^(?:data|event)\s*:\s*", re.IGNORECASE)
_SESSION_KEYS: tuple[str, ...] = ("session_id", "sessionId", "chat_id", "chatId")
_ROLE_ALIASES: dict[str, str] = {"token": "assistant"}


class EventRole(str, Enum):
    """Author of a decoded stream event."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    OTHER = "other"


@dataclass(slots=True, frozen=True)
class StreamEvent:
    """Decoded event that carries text or a continuation handle."""

    role: EventRole
    text: str
    session_id: str | None = None


@dataclass(slots=True, frozen=True)
class UnrecognizedEvent:
    """Well-formed event with no text for the transcript (tool calls, results, ...)."""

    event_type: str | None
    session_id: str | None = None


ParsedEvent = StreamEvent | UnrecognizedEvent


@dataclass(slots=True, frozen=True)
class ExtractionResult:
    """Final transcript and continuation handle of one agent invocation."""

    transcript: str
    session_id: str | None


def diff_cumulative(previous: str, current: str) -> str:
    """Return the part of ``current`` that has not been emitted yet.

    ``current`` extending ``previous`` yields the suffix, an identical text
    yields nothing, and an unrelated text is returned in full.
    """

    if current == previous:
        return ""
    if current.startswith(previous):
        return current[len(previous) :]
    return current


def extract_frame(line: str) -> str | None:
    """Return the JSON payload of one stream line, or ``None`` for non-frames."""

    stripped = line.strip()
    if not stripped:
        return None
    prefix = _FRAME_PREFIX.match(stripped)
    if prefix is not None:
        stripped = stripped[prefix.end() :].lstrip()
    if stripped.startswith(("{", "[")):
        return stripped
    return None


def decode_frame(frame: str) -> list[ParsedEvent]:
    """Decode one JSON frame into events; malformed frames decode to nothing."""

    try:
        payload = json.loads(frame)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream frame: %.200s", frame)
        return []
    if isinstance(payload, dict):
        return [decode_event(payload)]
    if isinstance(payload, list):
        return [decode_event(item) for item in payload if isinstance(item, dict)]
    return []


def decode_event(payload: dict[str, Any]) -> ParsedEvent:
    """Map one heterogeneous JSON event onto the ``ParsedEvent`` union."""

    raw_type = payload.get("type")
    event_type = raw_type if isinstance(raw_type, str) else None
    session_id = _session_id(payload)
    role = _role(payload, event_type)
    text = "" if role is EventRole.SYSTEM else _collect_text(payload)
    if role is EventRole.OTHER and not text:
        return UnrecognizedEvent(event_type=event_type, session_id=session_id)
    return StreamEvent(role=role, text=text, session_id=session_id)


def _session_id(payload: dict[str, Any]) -> str | None:
    for key in _SESSION_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _role(payload: dict[str, Any], event_type: str | None) -> EventRole:
    message = payload.get("message")
    candidates = (
        message.get("role") if isinstance(message, dict) else None,
        payload.get("role"),
        event_type,
    )
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        normalized = _ROLE_ALIASES.get(candidate.lower(), candidate.lower())
        try:
            return EventRole(normalized)
        except ValueError:
            continue
    return EventRole.OTHER


def _collect_text(payload: dict[str, Any]) -> str:  # noqa: C901
    fragments: list[str] = []
    seen: set[str] = set()

    def add(value: object) -> None:
        if isinstance(value, str) and value and value not in seen:
            seen.add(value)
            fragments.append(value)

    message = payload.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, list):
            for item in content:
                if isinstance(item, dict):
                    add(item.get("text"))
                    add(item.get("content"))
        else:
            add(content)

    add(payload.get("content"))
    data = payload.get("data")
    if isinstance(data, dict):
        add(data.get("content"))
        partial = data.get("partial")
        if isinstance(partial, dict):
            add(partial.get("content"))

    choices = payload.get("choices")
    if isinstance(choices, list):
        for choice in choices:
            delta = choice.get("delta") if isinstance(choice, dict) else None
            if isinstance(delta, dict):
                add(delta.get("content"))
    delta = payload.get("delta")
    if isinstance(delta, dict):
        add(delta.get("content"))

    add(payload.get("partial"))
    add(payload.get("token"))
    add(payload.get("text"))
    return "".join(fragments)


@dataclass(slots=True)
class TranscriptAccumulator:
    """Per-invocation diff state; never shared between invocations."""

    prompt: str = ""
    last_text: str = ""
    emitted: list[str] = field(default_factory=list)

    @property
    def transcript(self) -> str:
        return "".join(self.emitted)

    def accept(self, event: StreamEvent) -> str:
        """Fold one event into the transcript and return the newly emitted text."""

        if event.role not in (EventRole.ASSISTANT, EventRole.OTHER):
            return ""
        candidate = self._strip_prompt_echo(event.text)
        if not candidate:
            return ""
        delta = diff_cumulative(self.last_text, candidate)
        if not delta:
            return ""
        self.last_text = candidate
        self.emitted.append(delta)
        return delta

    def _strip_prompt_echo(self, text: str) -> str:
        # Heuristic: exact echoes are dropped and a leading copy of the prompt
        # is cut off. Paraphrased echoes pass through.
        prompt = self.prompt.strip()
        if not prompt:
            return text
        leading = text.lstrip()
        if leading.rstrip() == prompt:
            return ""
        if leading.startswith(prompt):
            return leading[len(prompt) :].lstrip()
        return text


class StreamExtractor:
    """Consume raw subprocess bytes and build the assistant transcript.

    ``feed`` may be called with arbitrary chunk boundaries, including ones that
    split a line or a multi-byte character. The continuation handle is
    reported through ``on_session`` as soon as it changes so callers can act
    on it before the stream ends.
    """

    def __init__(
        self,
        *,
        prompt: str = "",
        on_text: Callable[[str], None] | None = None,
        on_session: Callable[[str], None] | None = None,
        on_finish: Callable[[ExtractionResult], None] | None = None,
    ) -> None:
        self._accumulator = TranscriptAccumulator(prompt=prompt)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._session_id: str | None = None
        self._result: ExtractionResult | None = None
        self._on_text = on_text
        self._on_session = on_session
        self._on_finish = on_finish
        self.frames = 0

    @property
    def transcript(self) -> str:
        return self._accumulator.transcript

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def feed(self, chunk: bytes) -> str:
        """Process one chunk and return the text it added to the transcript."""

        if self._result is not None:
            raise RuntimeError("StreamExtractor.feed() called after finish().")
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = _LINE_BREAK.split(self._buffer)
        return "".join(self._process_line(line) for line in lines)

    def finish(self) -> ExtractionResult:
        """Flush the buffered tail and deliver the final transcript."""

        if self._result is not None:
            return self._result
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        for line in _LINE_BREAK.split(tail):
            self._process_line(line)
        self._result = ExtractionResult(
            transcript=self._accumulator.transcript,
            session_id=self._session_id,
        )
        if self._on_finish is not None:
            self._on_finish(self._result)
        return self._result

    def _process_line(self, line: str) -> str:
        frame = extract_frame(line)
        if frame is None:
            return ""
        self.frames += 1
        emitted: list[str] = []
        for event in decode_frame(frame):
            self._update_session(event.session_id)
            if not isinstance(event, StreamEvent):
                continue
            delta = self._accumulator.accept(event)
            if delta:
                emitted.append(delta)
                if self._on_text is not None:
                    self._on_text(delta)
        return "".join(emitted)

    def _update_session(self, session_id: str | None) -> None:
        if not session_id or session_id == self._session_id:
            return
        self._session_id = session_id
        if self._on_session is not None:
            self._on_session(session_id)
