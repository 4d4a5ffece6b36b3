"""Three-way completion classifier backed by an OpenAI-compatible chat endpoint."""

from __future__ import annotations

import json
import logging
import re
from urllib.parse import urlparse, urlunparse

import httpx

from agent_taskflow.runner.models import Verdict, VerdictKind
from agent_taskflow.runner.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

DEFAULT_MAX_EXCERPT_CHARS = 12_000
DEFAULT_TIMEOUT_SECONDS = 60.0

JUDGE_SYSTEM_PROMPT = """\
You review the final message of an autonomous coding agent and decide whether
its task is finished. Answer with exactly one JSON object and nothing else:

{"result": "<token>", "reasons": ["<short reason>", ...]}

Use exactly one of these tokens:
- "done": the agent reports the task as complete and asks for nothing further.
- "resume": the agent stopped before finishing (ran out of budget, was cut off,
  or says it will continue) and should simply carry on.
- "auto": the agent stopped to propose a next step or ask for confirmation;
  it should go ahead and apply its own most recent suggestion.
"""

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


def chat_completions_url(base_url: str) -> str:
    """Normalize an API base so the path ends in ``/v1/chat/completions``."""

    parsed = urlparse(base_url.strip())
    path = parsed.path.rstrip("/")
    if not path.endswith("/v1"):
        path = f"{path}/v1"
    return urlunparse(parsed._replace(path=f"{path}/chat/completions"))


def parse_verdict(content: str) -> Verdict:
    """Parse classifier output, failing closed to ``resume``."""

    payload = _parse_json_payload(content.strip())
    if payload is None:
        return _fail_closed(f"judge response is not a JSON object: {content!r:.200}")

    token = payload.get("result")
    if not isinstance(token, str):
        return _fail_closed("judge response has no string 'result' field")
    try:
        kind = VerdictKind(token.strip().lower())
    except ValueError:
        return _fail_closed(f"judge returned unknown verdict token {token!r}")

    raw_reasons = payload.get("reasons", [])
    if isinstance(raw_reasons, str):
        raw_reasons = [raw_reasons]
    reasons = tuple(
        str(reason).strip()
        for reason in raw_reasons
        if isinstance(raw_reasons, list) and str(reason).strip()
    )
    return Verdict(kind=kind, reasons=reasons)


def _fail_closed(reason: str) -> Verdict:
    logger.warning("Judge verdict defaulted to resume: %s", reason)
    return Verdict(kind=VerdictKind.RESUME, reasons=(reason,))


def _parse_json_payload(text: str) -> dict[str, object] | None:
    if not text:
        return None
    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


class JudgeClient:
    """Ask a chat model whether a transcript is done, needs resume or auto-continue."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        max_excerpt_chars: int = DEFAULT_MAX_EXCERPT_CHARS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_excerpt_chars <= 0:
            raise ValueError("max_excerpt_chars must be > 0")
        self.endpoint = chat_completions_url(base_url)
        self.max_excerpt_chars = max_excerpt_chars
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def excerpt(self, transcript: str) -> str:
        return transcript[: self.max_excerpt_chars]

    async def classify(self, *, judge_model: str, transcript: str) -> Verdict:
        """Classify one transcript; never raises for transport or parse failures."""

        excerpt = self.excerpt(transcript)
        if not excerpt.strip():
            return _fail_closed("agent produced an empty transcript")

        body = {
            "model": judge_model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
                {"role": "user", "content": excerpt},
            ],
        }
        try:
            response = await self._client.post(self.endpoint, json=body)
        except httpx.TimeoutException:
            return _fail_closed("judge request timed out")
        except httpx.HTTPError as exc:
            return _fail_closed(f"judge request failed: {exc}")

        if not response.is_success:
            detail = sanitize_preview(response.text, max_chars=200)
            return _fail_closed(f"judge returned HTTP {response.status_code}: {detail}")

        try:
            payload = response.json()
        except ValueError:
            return _fail_closed("judge response body is not JSON")
        content = _message_content(payload)
        if content is None:
            return _fail_closed("judge response has no message content")

        verdict = parse_verdict(content)
        logger.info(
            "Judge verdict: %s (%s)",
            verdict.kind.value,
            "; ".join(verdict.reasons) or "no reasons",
        )
        return verdict

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> JudgeClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def _message_content(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else None
