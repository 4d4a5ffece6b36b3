"""Local stand-in for a stream-json agent CLI, used by invoker integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    """Print a deterministic stream-json conversation and exit."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--print", action="store_true")
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--stream-partial-output", action="store_true")
    parser.add_argument("--model", default="")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--resume", default=None)
    parser.add_argument("prompt", nargs="?", default=None)
    args, unknown = parser.parse_known_args(argv)

    prompt_via_stdin = args.prompt is None
    prompt = sys.stdin.read() if prompt_via_stdin else args.prompt
    session_id = args.resume or os.getenv("ECHO_AGENT_SESSION_ID", "echo-session")

    args_file = os.getenv("ECHO_AGENT_ARGS_FILE")
    if args_file:
        Path(args_file).write_text(
            json.dumps(
                {
                    "argv": list(sys.argv[1:] if argv is None else argv),
                    "unknown": unknown,
                    "prompt": prompt,
                    "prompt_via_stdin": prompt_via_stdin,
                    "model_env": os.getenv("AGENT_TASKFLOW_MODEL"),
                },
            ),
            encoding="utf-8",
        )

    _emit({"type": "system", "subtype": "init", "session_id": session_id, "model": args.model})
    _emit(
        {
            "type": "user",
            "message": {"role": "user", "content": [{"type": "text", "text": prompt}]},
            "session_id": session_id,
        },
    )

    sleep_seconds = float(os.getenv("ECHO_AGENT_SLEEP_SECONDS", "0"))
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
    if args.resume:
        default_reply = f"Resumed {args.resume}: {first_line}"
    else:
        default_reply = f"Echo: {first_line}"
    reply = os.getenv("ECHO_AGENT_REPLY", default_reply)

    middle = len(reply) // 2
    for cumulative in (reply[:middle], reply, reply):
        if not cumulative:
            continue
        _emit(
            {
                "type": "assistant",
                "message": {
                    "role": "assistant",
                    "content": [{"type": "text", "text": cumulative}],
                },
                "session_id": session_id,
            },
        )
    _emit({"type": "result", "subtype": "success", "result": reply, "session_id": session_id})

    stderr_text = os.getenv("ECHO_AGENT_STDERR")
    if stderr_text:
        sys.stderr.write(stderr_text + "\n")
        sys.stderr.flush()
    return int(os.getenv("ECHO_AGENT_EXIT_CODE", "0"))


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
