"""Deterministic runtime failure classification for agent invocations."""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_taskflow.runner.models import FailureClass

# An error stream only counts as a failure when it carries one of these markers;
# agents print progress and warnings on stderr too.
_ERROR_OUTPUT_MARKERS: tuple[re.Pattern[str], ...] = (
    re.compile(r"错误:"),
    re.compile(r"\berror:", re.IGNORECASE),
    re.compile(r"\bfailed\b", re.IGNORECASE),
    re.compile(r"cannot find", re.IGNORECASE),
    re.compile(r"not found", re.IGNORECASE),
    re.compile(r"ENOENT", re.IGNORECASE),
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True, frozen=True)
class RuntimeFailure:
    """Normalized runtime failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def describe(self, *, exit_code: int) -> str:
        pattern = f" pattern={self.matched_pattern!r}" if self.matched_pattern else ""
        return (
            f"runtime failure: class={self.failure_class.value} exit_code={exit_code} "
            f"rule={self.matched_rule}{pattern}"
        )


def is_runtime_error(exit_code: int, stderr: str) -> bool:
    """Non-zero exit, or an error stream carrying a known failure marker."""

    if exit_code != 0:
        return True
    return _first_marker(stderr) is not None


def classify_runtime_failure(
    *,
    exit_code: int,
    stderr: str,
    stdout: str = "",
) -> RuntimeFailure | None:
    """Classify a finished invocation; ``None`` means it ran cleanly."""

    if not is_runtime_error(exit_code, stderr):
        return None

    haystack = f"{stderr}\n{stdout}".lower()
    for failure_class, rule, patterns in (
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.RATE_LIMITED, "rate_limit", _RATE_LIMIT_PATTERNS),
        (FailureClass.BACKEND_TRANSIENT, "backend_transient", _TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return RuntimeFailure(
                failure_class=failure_class,
                reason_code=f"agent_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if exit_code != 0:
        return RuntimeFailure(
            failure_class=FailureClass.NON_ZERO_EXIT,
            reason_code="agent_non_zero_exit",
            matched_rule="non_zero_exit",
            matched_pattern=None,
        )

    return RuntimeFailure(
        failure_class=FailureClass.ERROR_OUTPUT,
        reason_code="agent_error_output",
        matched_rule="error_output_marker",
        matched_pattern=_first_marker(stderr),
    )


def _first_marker(stderr: str) -> str | None:
    for marker in _ERROR_OUTPUT_MARKERS:
        match = marker.search(stderr)
        if match is not None:
            return match.group(0)
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
