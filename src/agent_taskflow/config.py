"""Runtime configuration for agent task runs."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

DEFAULT_ENV_FILE = Path(".flow") / ".env"


@dataclass(slots=True)
class AgentSettings:
    """External coding-agent invocation settings."""

    command: tuple[str, ...] = ("cursor-agent",)
    model: str = "composer-1"
    retry: int = 3
    timeout_minutes: int = 30
    prompt_arg_max_bytes: int = 8_000
    stream_partial_output: bool = True


@dataclass(slots=True)
class JudgeSettings:
    """Completion classifier settings."""

    model: str | None = None
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    max_excerpt_chars: int = 12_000
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class TelemetrySettings:
    """Optional remote progress sink settings."""

    enabled: bool = False
    url: str = "http://localhost:3000"
    api_key: str = ""

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.api_key)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    task_file: Path = Path(".flow/task.json")
    report_dir: Path = Path(".flow/tasks/report")
    agent: AgentSettings = field(default_factory=AgentSettings)
    judge: JudgeSettings = field(default_factory=JudgeSettings)
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)

    @classmethod
    def from_env(cls, *, env_file: Path | None = DEFAULT_ENV_FILE) -> Settings:
        """Load settings from environment, reading ``.flow/.env`` first when present."""

        if env_file is not None and env_file.is_file():
            load_dotenv(env_file, override=False)

        command = shlex.split(os.getenv("AGENT_TASKFLOW_AGENT_COMMAND", "cursor-agent"))
        return cls(
            task_file=Path(os.getenv("AGENT_TASKFLOW_TASK_FILE", ".flow/task.json")),
            report_dir=Path(os.getenv("AGENT_TASKFLOW_REPORT_DIR", ".flow/tasks/report")),
            agent=AgentSettings(
                command=tuple(command) or ("cursor-agent",),
                model=os.getenv("AGENT_TASKFLOW_MODEL", "composer-1"),
                retry=int(os.getenv("AGENT_TASKFLOW_RETRY", "3")),
                timeout_minutes=int(os.getenv("AGENT_TASKFLOW_TIMEOUT_MINUTES", "30")),
                prompt_arg_max_bytes=int(
                    os.getenv("AGENT_TASKFLOW_PROMPT_ARG_MAX_BYTES", "8000"),
                ),
                stream_partial_output=_env_bool(
                    "AGENT_TASKFLOW_STREAM_PARTIAL_OUTPUT",
                    default=True,
                ),
            ),
            judge=JudgeSettings(
                model=os.getenv("AGENT_TASKFLOW_JUDGE_MODEL") or None,
                api_key=os.getenv("OPENAI_API_KEY", ""),
                base_url=os.getenv("OPENAI_API_BASE", "https://api.openai.com/v1"),
                max_excerpt_chars=int(os.getenv("AGENT_TASKFLOW_JUDGE_MAX_CHARS", "12000")),
                timeout_seconds=float(
                    os.getenv("AGENT_TASKFLOW_JUDGE_TIMEOUT_SECONDS", "60"),
                ),
            ),
            telemetry=TelemetrySettings(
                enabled=_env_bool("AGENT_TASKFLOW_TELEMETRY_ENABLED", default=False),
                url=os.getenv("AGENT_TASKFLOW_TELEMETRY_URL", "http://localhost:3000"),
                api_key=os.getenv("AGENT_TASKFLOW_TELEMETRY_API_KEY", ""),
            ),
        )

    def validate_for_run(self) -> None:
        """Raise configuration error if a queue run cannot start."""

        if not self.agent.command:
            raise ValueError("AGENT_TASKFLOW_AGENT_COMMAND must not be empty.")
        if not self.agent.model.strip():
            raise ValueError("Agent model must not be empty.")
        if self.agent.retry < 1:
            raise ValueError("Retry count must be >= 1.")
        if self.agent.timeout_minutes < 1:
            raise ValueError("Timeout must be >= 1 minute.")
        if self.agent.prompt_arg_max_bytes < 1:
            raise ValueError("AGENT_TASKFLOW_PROMPT_ARG_MAX_BYTES must be > 0.")
        if not self.judge.model:
            raise ValueError(
                "Judge model is required. "
                "Pass --judge-model or set AGENT_TASKFLOW_JUDGE_MODEL.",
            )
        if not self.judge.api_key:
            raise ValueError("Judge API key is required. Set OPENAI_API_KEY.")
        if self.judge.max_excerpt_chars <= 0:
            raise ValueError("AGENT_TASKFLOW_JUDGE_MAX_CHARS must be > 0.")
        _validate_http_url(self.judge.base_url, name="OPENAI_API_BASE")
        if self.telemetry.active:
            _validate_http_url(self.telemetry.url, name="AGENT_TASKFLOW_TELEMETRY_URL")


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
