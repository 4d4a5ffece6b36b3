"""Credential masking for agent diagnostics that leave the process.

Agent stderr, transcripts and judge errors end up in the queue file, the
Markdown report and the telemetry sink. Agents like to echo their own
environment and request headers, so credentials are masked before storage.
"""

from __future__ import annotations

import re

_MAX_PREVIEW_CHARS = 2_000
_MAX_SHORT_ERROR_CHARS = 100
_MASK = "[redacted]"

# Header lines: "Authorization: Bearer ..." or "X-API-Key: ...".
_AUTH_HEADER = re.compile(r"(?i)\b(authorization|x-api-key)(\s*:\s*)(?:bearer\s+)?\S+")
_BEARER_TOKEN = re.compile(r"(?i)\bbearer\s+[\w.~+/\-]{8,}=*")
# NAME=value for anything that looks like a key, token, secret or password.
_SECRET_ASSIGNMENT = re.compile(
    r"(?i)\b([a-z0-9_]*(?:api_key|apikey|token|secret|password))(\s*[:=]\s*)"
    r"(['\"]?)[^\s'\"&]+\3",
)
# OpenAI/Anthropic style "sk-..." keys and Cursor "key_<hex>" keys.
_PROVIDER_KEY = re.compile(r"\b(?:sk-[\w\-]{8,}|key_[0-9a-f]{32,})")
_URL_SECRET = re.compile(r"(?i)([?&](?:token|key|api_key|signature|auth)=)[^&\s#]+")


def redact_secrets(text: str) -> str:
    """Mask credentials in ``text``, keeping the names that carried them."""

    masked = _AUTH_HEADER.sub(lambda match: f"{match.group(1)}{match.group(2)}{_MASK}", text)
    masked = _BEARER_TOKEN.sub(f"Bearer {_MASK}", masked)
    masked = _SECRET_ASSIGNMENT.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_MASK}",
        masked,
    )
    masked = _PROVIDER_KEY.sub(_MASK, masked)
    return _URL_SECRET.sub(rf"\1{_MASK}", masked)


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Trimmed, credential-free text of at most ``max_chars`` characters."""

    trimmed = text.strip()
    if not trimmed:
        return ""
    return redact_secrets(trimmed)[:max_chars]


def short_error_message(detail: str | None, *, max_chars: int = _MAX_SHORT_ERROR_CHARS) -> str:
    """First line of ``detail``, ellipsized to ``max_chars`` for the queue file."""

    if not detail:
        return ""
    first_line = sanitize_preview(detail).split("\n", 1)[0]
    if len(first_line) <= max_chars:
        return first_line
    return first_line[: max_chars - 3] + "..."
