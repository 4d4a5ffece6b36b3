from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_taskflow.config import AgentSettings, JudgeSettings, Settings, TelemetrySettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def _runnable(**overrides: object) -> Settings:
    settings = Settings(judge=JudgeSettings(model="judge-1", api_key="sk-test"))
    for name, value in overrides.items():
        setattr(settings, name, value)
    return settings


def test_defaults_without_environment(clean_env: Path) -> None:
    settings = Settings.from_env()

    assert settings.task_file == Path(".flow/task.json")
    assert settings.report_dir == Path(".flow/tasks/report")
    assert settings.agent.command == ("cursor-agent",)
    assert settings.agent.model == "composer-1"
    assert settings.agent.retry == 3
    assert settings.agent.timeout_minutes == 30
    assert settings.judge.model is None
    assert settings.judge.base_url == "https://api.openai.com/v1"
    assert settings.telemetry.active is False


def test_environment_overrides(clean_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TASKFLOW_AGENT_COMMAND", "my-agent --profile 'work laptop'")
    monkeypatch.setenv("AGENT_TASKFLOW_RETRY", "5")
    monkeypatch.setenv("AGENT_TASKFLOW_JUDGE_MODEL", "gpt-4o-mini")
    monkeypatch.setenv("AGENT_TASKFLOW_STREAM_PARTIAL_OUTPUT", "off")
    monkeypatch.setenv("AGENT_TASKFLOW_TELEMETRY_ENABLED", "yes")
    monkeypatch.setenv("AGENT_TASKFLOW_TELEMETRY_API_KEY", "tk")

    settings = Settings.from_env()

    assert settings.agent.command == ("my-agent", "--profile", "work laptop")
    assert settings.agent.retry == 5
    assert settings.agent.stream_partial_output is False
    assert settings.judge.model == "gpt-4o-mini"
    assert settings.telemetry.active is True


def test_dotenv_file_fills_missing_values_only(clean_env: Path, monkeypatch) -> None:
    # Register the keys so values loaded from the file are removed after the test.
    for name in ("AGENT_TASKFLOW_MODEL", "OPENAI_API_KEY"):
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    monkeypatch.setenv("AGENT_TASKFLOW_MODEL", "from-shell")
    env_file = clean_env / ".flow" / ".env"
    env_file.parent.mkdir()
    env_file.write_text(
        "AGENT_TASKFLOW_MODEL=from-file\nOPENAI_API_KEY=sk-from-file\n",
        encoding="utf-8",
    )

    settings = Settings.from_env()

    assert settings.agent.model == "from-shell"
    assert settings.judge.api_key == "sk-from-file"


def test_invalid_boolean_is_rejected(clean_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TASKFLOW_TELEMETRY_ENABLED", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_validate_for_run_accepts_complete_settings() -> None:
    _runnable().validate_for_run()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(judge=JudgeSettings(api_key="sk-test")), "Judge model is required"),
        (Settings(judge=JudgeSettings(model="judge-1")), "Judge API key is required"),
        (_runnable(agent=AgentSettings(retry=0)), "Retry count"),
        (_runnable(agent=AgentSettings(timeout_minutes=0)), "Timeout"),
        (_runnable(agent=AgentSettings(model=" ")), "Agent model"),
        (_runnable(agent=AgentSettings(command=())), "AGENT_TASKFLOW_AGENT_COMMAND"),
        (
            Settings(
                judge=JudgeSettings(model="judge-1", api_key="sk-test", base_url="api.local"),
            ),
            "Invalid OPENAI_API_BASE",
        ),
        (
            _runnable(telemetry=TelemetrySettings(enabled=True, url="ftp://x", api_key="k")),
            "Invalid AGENT_TASKFLOW_TELEMETRY_URL",
        ),
    ],
)
def test_validate_for_run_rejects_bad_settings(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate_for_run()


def test_inactive_telemetry_url_is_not_validated() -> None:
    settings = _runnable(telemetry=TelemetrySettings(enabled=True, url="ftp://x", api_key=""))

    settings.validate_for_run()
