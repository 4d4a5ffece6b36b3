from __future__ import annotations

import json

import allure
import pytest

from agent_taskflow.runner.stream import (
    EventRole,
    ExtractionResult,
    StreamEvent,
    StreamExtractor,
    UnrecognizedEvent,
    decode_event,
    decode_frame,
    diff_cumulative,
    extract_frame,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Stream Extraction"),
]


def _assistant(text: str, **extra: object) -> bytes:
    payload = {
        "type": "assistant",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        **extra,
    }
    return (json.dumps(payload) + "\n").encode("utf-8")


def test_diff_cumulative_returns_suffix_for_extension() -> None:
    assert diff_cumulative("Hello", "Hello world") == " world"


def test_diff_cumulative_returns_empty_for_repeat() -> None:
    assert diff_cumulative("Hello world", "Hello world") == ""


def test_diff_cumulative_returns_full_text_for_replacement() -> None:
    assert diff_cumulative("Hello world", "Goodbye") == "Goodbye"


def test_cumulative_prefix_sequence_yields_final_text_exactly_once() -> None:
    extractor = StreamExtractor()
    emitted = [
        extractor.feed(_assistant(text))
        for text in ("Wor", "Working", "Working on it", "Working on it.")
    ]

    assert emitted == ["Wor", "king", " on it", "."]
    assert extractor.feed(_assistant("Working on it.")) == ""
    assert extractor.finish().transcript == "Working on it."


def test_non_extending_replacement_emits_in_full_and_resets_diff_base() -> None:
    extractor = StreamExtractor()
    extractor.feed(_assistant("Step one done"))

    assert extractor.feed(_assistant("Now step two")) == "Now step two"
    assert extractor.feed(_assistant("Now step two and three")) == " and three"
    assert extractor.finish().transcript == "Step one doneNow step two and three"


def test_chunk_boundaries_inside_lines_and_characters_are_buffered() -> None:
    raw = _assistant("Grüße") + _assistant("Grüße, 世界")
    extractor = StreamExtractor()

    pieces = [extractor.feed(raw[index : index + 3]) for index in range(0, len(raw), 3)]

    assert "".join(pieces) == "Grüße, 世界"
    assert extractor.finish().transcript == "Grüße, 世界"


def test_finish_flushes_trailing_line_without_newline() -> None:
    extractor = StreamExtractor()
    extractor.feed(_assistant("partial").rstrip(b"\n"))

    assert extractor.transcript == ""
    assert extractor.finish().transcript == "partial"


def test_sse_wrapped_frames_and_noise_lines() -> None:
    extractor = StreamExtractor()
    payload = json.dumps({"type": "assistant", "text": "from sse"})
    chunk = f"event: message\n: keepalive\ndata: {payload}\r\nnot json at all\n".encode()

    assert extractor.feed(chunk) == "from sse"
    assert extractor.frames == 1


def test_malformed_json_frame_is_skipped() -> None:
    extractor = StreamExtractor()

    assert extractor.feed(b'{"type": "assistant", "text": \n') == ""
    assert extractor.feed(_assistant("still works")) == "still works"


def test_user_and_system_events_are_not_transcribed() -> None:
    extractor = StreamExtractor()
    extractor.feed(b'{"type": "system", "subtype": "init", "content": "boot"}\n')
    extractor.feed(b'{"type": "user", "message": {"role": "user", "content": "hi"}}\n')

    assert extractor.finish().transcript == ""


def test_exact_prompt_echo_is_dropped() -> None:
    # Heuristic: only byte-identical echoes (after trimming) are recognized.
    extractor = StreamExtractor(prompt="Fix the bug")
    extractor.feed(b'{"type": "token", "text": "  Fix the bug\\n"}\n')
    extractor.feed(_assistant("Fixed it."))

    assert extractor.finish().transcript == "Fixed it."


def test_leading_prompt_copy_is_stripped_but_paraphrase_passes() -> None:
    extractor = StreamExtractor(prompt="Fix the bug")

    assert extractor.feed(_assistant("Fix the bug\nDone.")) == "Done."

    paraphrased = StreamExtractor(prompt="Fix the bug")
    assert paraphrased.feed(_assistant("Please fix the bug")) == "Please fix the bug"


def test_session_id_is_reported_mid_stream_and_latest_wins() -> None:
    seen: list[str] = []
    extractor = StreamExtractor(on_session=seen.append)

    extractor.feed(b'{"type": "system", "session_id": "s-1"}\n')
    assert seen == ["s-1"]
    assert extractor.session_id == "s-1"

    extractor.feed(_assistant("ok", chatId="s-2"))
    extractor.feed(_assistant("ok", chatId="s-2"))

    assert seen == ["s-1", "s-2"]
    assert extractor.finish().session_id == "s-2"


def test_on_text_and_on_finish_callbacks() -> None:
    texts: list[str] = []
    finished: list[ExtractionResult] = []
    extractor = StreamExtractor(on_text=texts.append, on_finish=finished.append)
    extractor.feed(_assistant("a") + _assistant("ab"))

    result = extractor.finish()

    assert texts == ["a", "b"]
    assert finished == [result]
    assert extractor.finish() is result


def test_feed_after_finish_raises() -> None:
    extractor = StreamExtractor()
    extractor.finish()

    with pytest.raises(RuntimeError, match="after finish"):
        extractor.feed(b"{}\n")


def test_extract_frame_accepts_objects_arrays_and_prefixed_lines() -> None:
    assert extract_frame('  {"a": 1}  ') == '{"a": 1}'
    assert extract_frame("[1, 2]") == "[1, 2]"
    assert extract_frame('data: {"a": 1}') == '{"a": 1}'
    assert extract_frame("plain log line") is None
    assert extract_frame("   ") is None


def test_decode_frame_handles_arrays_of_events() -> None:
    events = decode_frame('[{"type": "assistant", "text": "x"}, 5, {"type": "tool_call"}]')

    assert events == [
        StreamEvent(role=EventRole.ASSISTANT, text="x"),
        UnrecognizedEvent(event_type="tool_call"),
    ]


def test_decode_event_collects_text_from_alternate_shapes() -> None:
    delta = decode_event({"choices": [{"delta": {"content": "chunk"}}]})
    partial = decode_event({"type": "assistant", "data": {"partial": {"content": "p"}}})
    token = decode_event({"type": "token", "token": "t", "sessionId": " abc "})

    assert delta == StreamEvent(role=EventRole.OTHER, text="chunk")
    assert partial == StreamEvent(role=EventRole.ASSISTANT, text="p")
    assert token == StreamEvent(role=EventRole.ASSISTANT, text="t", session_id="abc")


def test_duplicate_fragments_within_one_event_are_taken_once() -> None:
    event = decode_event(
        {
            "type": "assistant",
            "message": {"role": "assistant", "content": [{"text": "same"}]},
            "text": "same",
        },
    )

    assert event == StreamEvent(role=EventRole.ASSISTANT, text="same")
